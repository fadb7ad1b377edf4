"""
Multi-factor authentication for MFA Gate.

This package provides:
- TOTP secrets, provisioning URIs and verification
- Backup codes
- MFA session lifecycle with lockout
- Pending activations
- The first-login flow and JWT issuance
"""
from .totp import (
    generate_secret,
    build_provisioning_uri,
    verify_totp,
    current_code,
    provision,
)
from .backup_codes import BackupCodeVault, generate_backup_codes
from .sessions import MFASessionStore, MFAStatus
from .pending import PendingActivationStore, create_pending_store
from .tokens import TokenIssuer
from .service import MFAService, Enrollment, EnrollmentResult
from .first_login import FirstLoginFlow, FirstLoginResult, NextStep

__all__ = [
    "generate_secret",
    "build_provisioning_uri",
    "verify_totp",
    "current_code",
    "provision",
    "BackupCodeVault",
    "generate_backup_codes",
    "MFASessionStore",
    "MFAStatus",
    "PendingActivationStore",
    "create_pending_store",
    "TokenIssuer",
    "MFAService",
    "Enrollment",
    "EnrollmentResult",
    "FirstLoginFlow",
    "FirstLoginResult",
    "NextStep",
]
