"""
MFA Gate REST API.

FastAPI-based REST API for MFA enrollment, verification and first login.
"""
from .main import app, create_app

__all__ = ["app", "create_app"]
