"""
Identity Gateway: the remote user-management service.
"""
from .base import IdentityGateway, UserRecord
from .client import HTTPIdentityGateway

__all__ = [
    "IdentityGateway",
    "UserRecord",
    "HTTPIdentityGateway",
]
