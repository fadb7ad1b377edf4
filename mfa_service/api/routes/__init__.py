"""
API Routes for MFA Gate.
"""
from .mfa import router as mfa_router
from .first_login import router as first_login_router
from .health import router as health_router

__all__ = [
    "mfa_router",
    "first_login_router",
    "health_router",
]
