"""
FastAPI Dependencies for the MFA Gate API.

Provides:
- Configuration and component singletons
- Authentication dependencies (session and step-up bearer tokens)
"""
import logging
from typing import Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import MFAConfig
from ..errors import Unauthorized
from ..gateway import HTTPIdentityGateway, IdentityGateway
from ..auth.first_login import FirstLoginFlow
from ..auth.pending import create_pending_store
from ..auth.service import MFAService
from ..auth.tokens import SESSION_TOKEN, STEP_UP_SCOPE, STEP_UP_TOKEN, TokenIssuer

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


# ============================================
# Component Singletons
# ============================================

_config: Optional[MFAConfig] = None
_gateway: Optional[IdentityGateway] = None
_token_issuer: Optional[TokenIssuer] = None
_mfa_service: Optional[MFAService] = None
_first_login_flow: Optional[FirstLoginFlow] = None


def get_config() -> MFAConfig:
    """Get configuration singleton, built from the environment once."""
    global _config
    if _config is None:
        _config = MFAConfig.from_env()
    return _config


def get_gateway() -> IdentityGateway:
    """Get Identity Gateway client singleton."""
    global _gateway
    if _gateway is None:
        config = get_config()
        _gateway = HTTPIdentityGateway(config.identity_api_url, timeout=config.identity_api_timeout)
        logger.info(f"Identity Gateway configured: {config.identity_api_url}")
    return _gateway


def get_token_issuer() -> TokenIssuer:
    global _token_issuer
    if _token_issuer is None:
        config = get_config()
        _token_issuer = TokenIssuer(
            config.jwt_secret,
            algorithm=config.jwt_algorithm,
            session_ttl_seconds=config.session_ttl_seconds,
            step_up_ttl_seconds=config.step_up_ttl_seconds,
        )
    return _token_issuer


def get_mfa_service() -> MFAService:
    """Get MFA service singleton (Redis-backed pending store if configured)."""
    global _mfa_service
    if _mfa_service is None:
        config = get_config()
        _mfa_service = MFAService(config, get_gateway(), pending=create_pending_store(config))
    return _mfa_service


def get_first_login_flow() -> FirstLoginFlow:
    global _first_login_flow
    if _first_login_flow is None:
        _first_login_flow = FirstLoginFlow(
            get_config(),
            get_gateway(),
            get_token_issuer(),
            get_mfa_service(),
        )
    return _first_login_flow


# ============================================
# Authentication Dependencies
# ============================================

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """Raw bearer token, without validating it."""
    if credentials is None:
        raise _unauthorized("Authentication required")
    return credentials.credentials


def get_current_user(
    token: str = Depends(get_bearer_token),
    tokens: TokenIssuer = Depends(get_token_issuer),
) -> Dict:
    """
    Validate the session bearer token and return its claims as the user.

    Step-up tokens are refused here; they only work on the MFA
    verification endpoints (get_step_up_user).

    Raises:
        HTTPException: If token is missing, invalid, expired or not a session token.
    """
    try:
        claims = tokens.decode(token, expected_type=SESSION_TOKEN)
    except Unauthorized as e:
        raise _unauthorized(e.message)

    return {
        "user_id": str(claims["sub"]),
        "username": claims.get("username"),
        "role": claims.get("role"),
    }


def get_step_up_user(
    token: str = Depends(get_bearer_token),
    tokens: TokenIssuer = Depends(get_token_issuer),
) -> Dict:
    """
    Validate a step-up bearer token (password already checked) and return its subject.

    Only step-up tokens scoped to mfa:verify are accepted.
    """
    try:
        claims = tokens.decode(token, expected_type=STEP_UP_TOKEN)
    except Unauthorized as e:
        raise _unauthorized(e.message)
    if claims.get("scope") != STEP_UP_SCOPE:
        raise _unauthorized("Token is not valid for MFA verification")

    return {
        "user_id": str(claims["sub"]),
        "username": claims.get("username"),
    }


def require_admin(user: Dict = Depends(get_current_user)) -> Dict:
    """Require the admin role on the current session."""
    if user.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user


def require_self_or_admin(user_id: str, user: Dict) -> None:
    """Users may only act on their own MFA state unless they are admins."""
    if user["user_id"] != str(user_id) and user.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to access another user's MFA state",
        )
