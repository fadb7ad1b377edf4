"""
First-Login Endpoints.

Temporary password replacement and the MFA branch that follows it.
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends

from ..models import (
    FirstLoginCheckRequest,
    FirstLoginCheckResponse,
    ChangeTemporaryPasswordRequest,
    FirstLoginTokenResponse,
    SetupMFARequest,
    SetupMFAResponse,
    EnrollResponse,
    CompleteChallengeRequest,
    ErrorResponse,
)
from ..deps import get_bearer_token, get_current_user, get_first_login_flow
from ...auth.first_login import FirstLoginFlow, FirstLoginResult

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/mfa/first-login", tags=["First Login"])


def _token_response(result: FirstLoginResult) -> FirstLoginTokenResponse:
    return FirstLoginTokenResponse(
        requires_mfa=result.requires_mfa,
        access_token=result.token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        user=result.user,
    )


@router.post(
    "/check",
    response_model=FirstLoginCheckResponse,
    responses={404: {"model": ErrorResponse, "description": "User not found"}},
)
def check_first_login(
    request: FirstLoginCheckRequest,
    flow: FirstLoginFlow = Depends(get_first_login_flow),
):
    """Report which first-login step the user is at."""
    state = flow.check_first_login(request.user_id)
    return FirstLoginCheckResponse(
        user_id=state.user_id,
        is_first_login=state.is_first_login,
        requires_mfa=state.requires_mfa,
        next_step=state.next_step.value,
    )


@router.post(
    "/change-password",
    response_model=FirstLoginTokenResponse,
    responses={
        400: {"model": ErrorResponse, "description": "New password too short"},
        401: {"model": ErrorResponse, "description": "Temporary password incorrect"},
        404: {"model": ErrorResponse, "description": "User not found"},
        409: {"model": ErrorResponse, "description": "No temporary password active"},
        503: {"model": ErrorResponse, "description": "Identity service unavailable"},
    },
)
def change_temporary_password(
    request: ChangeTemporaryPasswordRequest,
    flow: FirstLoginFlow = Depends(get_first_login_flow),
):
    """
    Replace the temporary password.

    Returns a step-up token when MFA is already enabled (complete it at
    /mfa/first-login/complete), otherwise a session token.
    """
    result = flow.change_temporary_password(
        request.user_id,
        request.current_password,
        request.new_password,
    )
    return _token_response(result)


@router.post(
    "/setup-mfa",
    response_model=SetupMFAResponse,
    responses={409: {"model": ErrorResponse, "description": "MFA already enabled or password still temporary"}},
)
def setup_mfa_after_first_login(
    request: SetupMFARequest,
    user: Dict = Depends(get_current_user),
    flow: FirstLoginFlow = Depends(get_first_login_flow),
):
    """Accept or decline the MFA offer after the password change."""
    outcome = flow.setup_mfa_after_first_login(user["user_id"], request.enable_mfa)

    if "enrollment" in outcome:
        enrollment = outcome["enrollment"]
        return SetupMFAResponse(
            mfa_enabled=False,
            enrollment=EnrollResponse(
                secret=enrollment.secret,
                provisioning_uri=enrollment.provisioning_uri,
                qr_code=enrollment.qr_code,
                expires_at=enrollment.expires_at,
            ),
        )
    return SetupMFAResponse(mfa_enabled=False, session=_token_response(outcome["session"]))


@router.post(
    "/complete",
    response_model=FirstLoginTokenResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid token or MFA code"},
        423: {"model": ErrorResponse, "description": "Too many failed attempts"},
    },
)
def complete_mfa_challenge(
    request: CompleteChallengeRequest,
    step_up_token: str = Depends(get_bearer_token),
    flow: FirstLoginFlow = Depends(get_first_login_flow),
):
    """Exchange the step-up token and an MFA code for a session token."""
    result = flow.complete_mfa_challenge(
        step_up_token,
        code=request.code,
        backup_code=request.backup_code,
    )
    return _token_response(result)
