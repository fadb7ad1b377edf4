"""
Shared utilities for the MFA service.
"""
from .locks import KeyedLock
from .secrets import get_secret, mask_secret

__all__ = [
    "KeyedLock",
    "get_secret",
    "mask_secret",
]
