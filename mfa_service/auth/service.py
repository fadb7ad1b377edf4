"""
MFA service: the operations exposed to request handlers.

Wires the TOTP engine, session store, pending activation store and backup
code vault together and talks to the Identity Gateway. Every user-scoped
operation runs under that user's lock, so concurrent requests for one user
are serialized while different users proceed in parallel.

Enrollment:
    enroll_begin  -> secret + provisioning URI + QR, held as pending
    enroll_confirm -> code checked against the exact pending secret,
                      gateway flag flipped, session active, backup codes issued

Login:
    verify_login / consume_backup_code -> lockout policy -> engine/vault
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..config import MFAConfig
from ..errors import InvalidState, Locked, NotFound, Unauthorized, ValidationError, Conflict
from ..gateway.base import IdentityGateway
from ..utils.locks import KeyedLock
from .backup_codes import BackupCodeResult, BackupCodeVault, normalize_backup_code
from .pending import InMemoryPendingActivationStore, PendingActivationStore
from .sessions import MFASession, MFASessionStore, MFAStatus
from .totp import is_valid_code_format, match_time_step, provision

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Enrollment:
    """Everything the user needs to add the account to an authenticator."""
    user_id: str
    secret: str
    provisioning_uri: str
    qr_code: str
    expires_at: datetime


@dataclass(frozen=True)
class EnrollmentResult:
    """
    Outcome of a successful confirmation. Truthy; the plaintext backup codes
    are returned only here.
    """
    enabled: bool
    backup_codes: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.enabled


def _require_code_format(code: str) -> None:
    if not is_valid_code_format(code):
        raise ValidationError("MFA code must be a 6-digit number")


class MFAService:
    """
    Example usage:
        service = MFAService(config, gateway)
        enrollment = service.enroll_begin(user_id, "user@example.com")
        result = service.enroll_confirm(user_id, "123456")
        ok = service.verify_login(user_id, "654321")
    """

    def __init__(
        self,
        config: MFAConfig,
        gateway: IdentityGateway,
        sessions: Optional[MFASessionStore] = None,
        pending: Optional[PendingActivationStore] = None,
        vault: Optional[BackupCodeVault] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.gateway = gateway
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.sessions = sessions or MFASessionStore(
            lockout_threshold=config.lockout_threshold,
            reject_replay=config.reject_replay,
            clock=self._clock,
        )
        self.pending = pending or InMemoryPendingActivationStore(
            ttl_seconds=config.pending_ttl_seconds,
            clock=self._clock,
        )
        self.vault = vault or BackupCodeVault(
            count=config.backup_code_count,
            length=config.backup_code_length,
            rounds=config.backup_code_bcrypt_rounds,
            clock=self._clock,
        )
        self._locks = KeyedLock()

    def _match_step(self, secret: str, code: str) -> Optional[int]:
        return match_time_step(secret, code, for_time=self._clock(), window=self.config.totp_window)

    def _ensure_session(self, user_id: str) -> MFASession:
        """
        Local session for user_id, recreated from the gateway record when
        the gateway reports MFA enabled but this process has no session.
        """
        session = self.sessions.find(user_id)
        if session is not None:
            return session

        user = self.gateway.get_user(user_id)
        if not user.has_mfa:
            raise NotFound("MFA is not enabled for this user")
        return self.sessions.restore_active(user_id, user.mfa_secret)

    # ==========================================
    # Enrollment
    # ==========================================

    def enroll_begin(self, user_id: str, label: Optional[str] = None) -> Enrollment:
        """
        Generate a candidate secret and hold it as a pending activation.

        Raises:
            NotFound: Unknown user.
            Conflict: MFA already enabled.
            Locked: The user's MFA session is locked.
        """
        with self._locks.hold(user_id):
            user = self.gateway.get_user(user_id)
            session = self.sessions.find(user_id)
            if session is not None and session.status == MFAStatus.LOCKED:
                raise Locked("MFA is locked due to too many failed attempts")
            if user.has_mfa:
                raise Conflict("MFA is already enabled. Disable it first to set up a new authenticator.")

            artifacts = provision(label or user.username, self.config.issuer)
            self.sessions.create_pending(user_id, artifacts.secret)
            activation = self.pending.create(user_id, artifacts)

        logger.info(f"MFA enrollment started for user {user_id}")
        return Enrollment(
            user_id=user_id,
            secret=activation.secret,
            provisioning_uri=activation.provisioning_uri,
            qr_code=activation.qr_code,
            expires_at=activation.expires_at,
        )

    def enroll_confirm(self, user_id: str, code: str) -> EnrollmentResult:
        """
        Confirm enrollment with a code from the authenticator.

        Raises:
            ValidationError: Malformed code.
            NotFound / Expired: No usable pending activation.
            Conflict: The MFA session is no longer pending on this secret.
            Unauthorized: Wrong code (pending attempt counter incremented).
            UpstreamUnavailable: Gateway failed; the activation stays pending.
        """
        _require_code_format(code)

        with self._locks.hold(user_id):
            activation = self.pending.fetch(user_id)
            session = self.sessions.find(user_id)
            if (
                session is None
                or session.status != MFAStatus.PENDING
                or session.secret != activation.secret
            ):
                raise Conflict("Pending activation no longer matches the MFA session state")

            matched: Dict[str, Optional[int]] = {}

            def verifier(secret: str, submitted: str) -> bool:
                matched["step"] = self._match_step(secret, submitted)
                return matched["step"] is not None

            if not self.pending.confirm(user_id, code, verifier):
                raise Unauthorized("Invalid verification code. Please try again.")

            # Gateway first: if it fails nothing local has changed
            self.gateway.set_mfa(user_id, activation.secret, True)
            self.sessions.activate(user_id, activation.secret, accepted_step=matched.get("step"))
            self.pending.delete(user_id)
            backup_codes = self.vault.regenerate(user_id)

        logger.info(f"MFA enabled for user {user_id}")
        return EnrollmentResult(enabled=True, backup_codes=backup_codes)

    # ==========================================
    # Login-time verification
    # ==========================================

    def verify_login(self, user_id: str, code: str) -> bool:
        """
        Verify a TOTP code at login under the lockout policy.

        Returns:
            True if accepted, False for a wrong or replayed code.

        Raises:
            ValidationError: Malformed code (not counted).
            NotFound: MFA not enabled for this user.
            Locked: Too many failures; the code is not checked.
            InvalidState: Session pending or disabled.
        """
        _require_code_format(code)

        with self._locks.hold(user_id):
            self._ensure_session(user_id)
            outcome = self.sessions.verify_code(user_id, code, self._match_step)

        if outcome.accepted:
            logger.info(f"MFA login verification succeeded for user {user_id}")
        return outcome.accepted

    def consume_backup_code(self, user_id: str, code: str) -> BackupCodeResult:
        """
        Use a backup code in place of a TOTP code. Goes through the same
        lockout policy; an invalid code counts as a failed attempt.
        """
        if not normalize_backup_code(code):
            raise ValidationError("Backup code must be alphanumeric")

        with self._locks.hold(user_id):
            self._ensure_session(user_id)
            results: List[BackupCodeResult] = []

            def check() -> bool:
                results.append(self.vault.consume(user_id, code))
                return results[-1].valid

            self.sessions.verify_with(user_id, check)

        return results[-1]

    def regenerate_backup_codes(self, user_id: str) -> List[str]:
        """Replace the user's backup codes. Requires active MFA."""
        with self._locks.hold(user_id):
            session = self._ensure_session(user_id)
            if session.status == MFAStatus.LOCKED:
                raise Locked("MFA is locked due to too many failed attempts")
            if session.status != MFAStatus.ACTIVE:
                raise InvalidState("MFA is not active for this user")
            codes = self.vault.regenerate(user_id)

        logger.info(f"Backup codes regenerated for user {user_id}")
        return codes

    # ==========================================
    # Administration
    # ==========================================

    def disable(self, user_id: str) -> None:
        """
        Turn MFA off: gateway flag cleared, session disabled, pending
        activation and backup codes dropped.
        """
        with self._locks.hold(user_id):
            self.gateway.set_mfa(user_id, None, False)
            if self.sessions.find(user_id) is not None:
                self.sessions.disable(user_id)
            self.pending.delete(user_id)
            self.vault.revoke(user_id)

        logger.info(f"MFA disabled for user {user_id}")

    def unlock(self, user_id: str) -> MFASession:
        """Administrative unlock of a locked session."""
        with self._locks.hold(user_id):
            return self.sessions.unlock(user_id)

    def get_status(self, user_id: str) -> Dict[str, Any]:
        user = self.gateway.get_user(user_id)
        session = self.sessions.find(user_id)
        return {
            "user_id": user_id,
            "mfa_enabled": user.mfa_enabled,
            "has_secret": bool(user.mfa_secret),
            "status": session.status.value if session else None,
            "failed_attempts": session.failed_attempts if session else 0,
            "locked_at": session.locked_at if session else None,
            "verified_at": session.verified_at if session else None,
            "backup_codes_remaining": self.vault.remaining(user_id),
        }

    def stats(self) -> Dict[str, Any]:
        summary = self.sessions.stats()
        summary["recent_activity"] = self.sessions.recent_activity()
        return summary

    def cleanup_expired(self) -> int:
        """Purge expired pending activations and stale sessions."""
        cleaned = self.pending.purge_expired()
        cleaned += self.sessions.purge_stale(timedelta(days=self.config.stale_session_days))
        if cleaned > 0:
            logger.info(f"Cleaned {cleaned} expired MFA records")
        return cleaned
