"""
MFA Endpoints.

Enrollment, login-time verification, backup codes and administration.

Handlers are plain functions: the core blocks on gateway I/O and per-user
locks, so FastAPI runs them in its threadpool.
"""
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends

from ..models import (
    EnrollRequest,
    EnrollResponse,
    CodeRequest,
    EnrollConfirmResponse,
    VerifyLoginRequest,
    VerifyLoginResponse,
    BackupCodeRequest,
    BackupCodeResponse,
    BackupCodesResponse,
    MFAStatusResponse,
    MFAStatsResponse,
    MessageResponse,
    ErrorResponse,
)
from ..deps import (
    get_current_user,
    get_step_up_user,
    get_mfa_service,
    get_token_issuer,
    get_gateway,
    require_admin,
    require_self_or_admin,
)
from ...auth.service import MFAService
from ...auth.tokens import TokenIssuer
from ...errors import MFAError
from ...gateway import IdentityGateway

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/mfa", tags=["MFA"])


def _issue_session(user_id: str, gateway: IdentityGateway, tokens: TokenIssuer) -> str:
    user = gateway.get_user(user_id)
    token = tokens.issue_session_token(user.id, user.username, user.role)
    try:
        gateway.create_session(user.id, token)
    except MFAError as e:
        logger.warning(f"Could not record session for user {user.id}: {e.message}")
    return token


# ============================================
# Enrollment
# ============================================

@router.post(
    "/enroll",
    response_model=EnrollResponse,
    responses={
        404: {"model": ErrorResponse, "description": "User not found"},
        409: {"model": ErrorResponse, "description": "MFA already enabled"},
        423: {"model": ErrorResponse, "description": "MFA locked"},
    },
)
def enroll(
    request: Optional[EnrollRequest] = None,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Start MFA enrollment.

    Returns a QR code and secret for authenticator app setup. MFA is not
    active until confirmed with /mfa/enroll/confirm within 10 minutes.
    """
    label = request.label if request else None
    enrollment = service.enroll_begin(user["user_id"], label or user.get("username"))
    return EnrollResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        qr_code=enrollment.qr_code,
        expires_at=enrollment.expires_at,
    )


@router.post(
    "/enroll/confirm",
    response_model=EnrollConfirmResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed code"},
        401: {"model": ErrorResponse, "description": "Invalid verification code"},
        404: {"model": ErrorResponse, "description": "No pending enrollment"},
        410: {"model": ErrorResponse, "description": "Pending enrollment expired"},
    },
)
def enroll_confirm(
    verification: CodeRequest,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Confirm MFA enrollment and enable it.

    Returns backup codes for account recovery - store these securely!
    """
    result = service.enroll_confirm(user["user_id"], verification.code)
    return EnrollConfirmResponse(enabled=result.enabled, backup_codes=result.backup_codes)


# ============================================
# Login-time verification
# ============================================

@router.post(
    "/verify-login",
    response_model=VerifyLoginResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed code"},
        401: {"model": ErrorResponse, "description": "Missing or invalid step-up token"},
        404: {"model": ErrorResponse, "description": "MFA not enabled"},
        423: {"model": ErrorResponse, "description": "Too many failed attempts"},
    },
)
def verify_login(
    request: VerifyLoginRequest,
    user: Dict = Depends(get_step_up_user),
    service: MFAService = Depends(get_mfa_service),
    gateway: IdentityGateway = Depends(get_gateway),
    tokens: TokenIssuer = Depends(get_token_issuer),
):
    """
    Verify a TOTP code as the second login factor.

    Requires the step-up token issued once the password was checked.
    Returns a session token when the code is accepted.
    """
    if not service.verify_login(user["user_id"], request.code):
        return VerifyLoginResponse(verified=False)

    token = _issue_session(user["user_id"], gateway, tokens)
    return VerifyLoginResponse(
        verified=True,
        access_token=token,
        expires_in=tokens.session_ttl_seconds,
    )


@router.post(
    "/backup-codes/consume",
    response_model=BackupCodeResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid step-up token"},
        404: {"model": ErrorResponse, "description": "MFA not enabled"},
        423: {"model": ErrorResponse, "description": "Too many failed attempts"},
    },
)
def consume_backup_code(
    request: BackupCodeRequest,
    user: Dict = Depends(get_step_up_user),
    service: MFAService = Depends(get_mfa_service),
):
    """Use a one-time backup code in place of a TOTP code."""
    result = service.consume_backup_code(user["user_id"], request.code)
    return BackupCodeResponse(valid=result.valid, remaining=result.remaining)


@router.post("/backup-codes/regenerate", response_model=BackupCodesResponse)
def regenerate_backup_codes(
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """Replace all backup codes. Previous codes stop working immediately."""
    codes = service.regenerate_backup_codes(user["user_id"])
    return BackupCodesResponse(backup_codes=codes)


# ============================================
# Administration
# ============================================

@router.post("/disable", response_model=MessageResponse)
def disable_mfa(
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """Disable MFA for the current user."""
    service.disable(user["user_id"])
    return MessageResponse(message="MFA disabled")


@router.post("/unlock/{user_id}", response_model=MessageResponse)
def unlock_mfa(
    user_id: str,
    admin: Dict = Depends(require_admin),
    service: MFAService = Depends(get_mfa_service),
):
    """Unlock a user locked out by failed attempts (admin only)."""
    service.unlock(user_id)
    logger.info(f"MFA unlocked for user {user_id} by admin {admin['user_id']}")
    return MessageResponse(message=f"MFA unlocked for user {user_id}")


@router.get("/status/{user_id}", response_model=MFAStatusResponse)
def mfa_status(
    user_id: str,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    require_self_or_admin(user_id, user)
    return MFAStatusResponse(**service.get_status(user_id))


@router.get("/stats", response_model=MFAStatsResponse)
def mfa_stats(
    admin: Dict = Depends(require_admin),
    service: MFAService = Depends(get_mfa_service),
):
    return MFAStatsResponse(**service.stats())


@router.get("/info")
def mfa_info():
    """Service information and endpoint list."""
    return {
        "service": "MFA Gate",
        "totp": {"algorithm": "SHA1", "digits": 6, "period": 30},
        "endpoints": {
            "enroll": "POST /mfa/enroll",
            "enroll_confirm": "POST /mfa/enroll/confirm",
            "verify_login": "POST /mfa/verify-login",
            "consume_backup_code": "POST /mfa/backup-codes/consume",
            "regenerate_backup_codes": "POST /mfa/backup-codes/regenerate",
            "disable": "POST /mfa/disable",
            "unlock": "POST /mfa/unlock/{user_id}",
            "status": "GET /mfa/status/{user_id}",
            "stats": "GET /mfa/stats",
            "first_login_check": "POST /mfa/first-login/check",
            "first_login_change_password": "POST /mfa/first-login/change-password",
            "first_login_setup_mfa": "POST /mfa/first-login/setup-mfa",
            "first_login_complete": "POST /mfa/first-login/complete",
        },
    }
