"""
Pydantic Models for the MFA Gate API.

Request and response models for all API endpoints.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict


# ============================================
# Enrollment Models
# ============================================

class EnrollRequest(BaseModel):
    """Start MFA enrollment. The label defaults to the username."""
    label: Optional[str] = Field(None, max_length=128, description="Account label shown in the authenticator app")


class EnrollResponse(BaseModel):
    """MFA enrollment response with QR code."""
    secret: str = Field(..., description="Base32 secret for manual entry")
    provisioning_uri: str = Field(..., description="otpauth:// URI for authenticator apps")
    qr_code: str = Field(..., description="PNG QR code as a data URI")
    expires_at: datetime = Field(..., description="Pending activation expiry")


class CodeRequest(BaseModel):
    """A 6-digit TOTP code."""
    code: str = Field(..., description="6-digit code from authenticator app")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "code": "123456"
            }
        }
    )


class EnrollConfirmResponse(BaseModel):
    """
    MFA enrollment confirmation.

    Backup codes are shown exactly once.
    """
    enabled: bool = True
    message: str = "MFA enabled successfully"
    backup_codes: List[str] = Field(..., description="One-time backup codes for account recovery (store securely!)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "enabled": True,
                "message": "MFA enabled successfully",
                "backup_codes": ["7KQ2M-X9PLA", "R4TZ8-N2WCB"]
            }
        }
    )


# ============================================
# Verification Models
# ============================================

class VerifyLoginRequest(BaseModel):
    """Login-time TOTP verification; the user comes from the step-up token."""
    code: str = Field(..., description="6-digit TOTP code")


class VerifyLoginResponse(BaseModel):
    verified: bool
    access_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None


class BackupCodeRequest(BaseModel):
    code: str = Field(..., description="One-time backup code (format: XXXXX-XXXXX)")


class BackupCodeResponse(BaseModel):
    valid: bool
    remaining: int = Field(..., description="Unused backup codes left")


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]
    message: str = "Backup codes regenerated. Previous codes are no longer valid."


# ============================================
# Status and Administration Models
# ============================================

class MFAStatusResponse(BaseModel):
    user_id: str
    mfa_enabled: bool
    has_secret: bool
    status: Optional[str] = Field(None, description="pending, active, locked or disabled")
    failed_attempts: int = 0
    locked_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    backup_codes_remaining: int = 0


class MFAStatsResponse(BaseModel):
    total_users: int
    active: int
    pending: int
    locked: int
    disabled: int
    total_failed_attempts: int
    recent_activity: List[Dict[str, Any]] = Field(default_factory=list)


class MessageResponse(BaseModel):
    success: bool = True
    message: str


# ============================================
# First-Login Models
# ============================================

class FirstLoginCheckRequest(BaseModel):
    user_id: str = Field(..., description="User identifier")


class FirstLoginCheckResponse(BaseModel):
    user_id: str
    is_first_login: bool
    requires_mfa: bool
    next_step: str = Field(..., description="change_password, verify_mfa or offer_mfa")


class ChangeTemporaryPasswordRequest(BaseModel):
    """
    Temporary password replacement.

    The new password must be at least 8 characters; the limit is enforced
    by the service so the error carries the service's own code.
    """
    user_id: str = Field(..., description="User identifier")
    current_password: str = Field(..., description="Temporary password")
    new_password: str = Field(..., description="New password (minimum 8 characters)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "user_id": "42",
                "current_password": "Temp-4821",
                "new_password": "a-much-better-passphrase"
            }
        }
    )


class FirstLoginTokenResponse(BaseModel):
    """
    Token issued after a first-login step.

    token_type is "step_up" when requires_mfa is true (only valid on
    /mfa/first-login/complete), "session" otherwise.
    """
    requires_mfa: bool
    access_token: str
    token_type: str
    expires_in: int = Field(..., description="Token expiration in seconds")
    user: Dict[str, Any] = Field(default_factory=dict)


class SetupMFARequest(BaseModel):
    enable_mfa: bool = Field(..., description="Accept (true) or decline (false) the MFA offer")


class SetupMFAResponse(BaseModel):
    mfa_enabled: bool = False
    enrollment: Optional[EnrollResponse] = None
    session: Optional[FirstLoginTokenResponse] = None


class CompleteChallengeRequest(BaseModel):
    """Provide either a TOTP code or a backup code."""
    code: Optional[str] = Field(None, description="6-digit TOTP code")
    backup_code: Optional[str] = Field(None, description="One-time backup code")


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
