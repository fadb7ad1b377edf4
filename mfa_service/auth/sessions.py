"""
MFA session store.

Owns the per-user MFA lifecycle and routes every verification attempt through
the lockout policy:

    pending --confirm--> active --N failures--> locked
       |                   |                      |
       +-------------------+------disable---------+--> disabled

Callers only ever receive copies of session records; the backing map stays
private so it can be swapped for a persistent store without touching them.
"""
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..errors import Conflict, InvalidState, Locked, NotFound
from ..utils.locks import KeyedLock

logger = logging.getLogger(__name__)


class MFAStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    LOCKED = "locked"
    DISABLED = "disabled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MFASession:
    """One user's MFA lifecycle record."""
    user_id: str
    secret: Optional[str]
    status: MFAStatus = MFAStatus.PENDING
    failed_attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    last_accepted_step: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: f"mfa_{uuid.uuid4().hex[:16]}")


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one verification attempt after the lockout policy ran."""
    accepted: bool
    status: MFAStatus
    failed_attempts: int
    remaining_attempts: int


_PURGEABLE = (MFAStatus.PENDING, MFAStatus.DISABLED)

# Returns the accepted time step, or None when the code does not match.
StepVerifier = Callable[[str, str], Optional[int]]


class MFASessionStore:
    """
    In-memory, per-user serialized MFA session store.

    Example usage:
        store = MFASessionStore(lockout_threshold=5)
        store.create_pending(user_id, secret)
        store.activate(user_id, secret)
        outcome = store.verify_code(user_id, "123456", verifier)
    """

    def __init__(
        self,
        lockout_threshold: int = 5,
        reject_replay: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.lockout_threshold = lockout_threshold
        self.reject_replay = reject_replay
        self._clock = clock or _utcnow
        self._sessions: Dict[str, MFASession] = {}
        self._mutex = threading.Lock()
        self._locks = KeyedLock()

    # ==========================================
    # Internal helpers
    # ==========================================

    def _load(self, user_id: str) -> Optional[MFASession]:
        with self._mutex:
            return self._sessions.get(user_id)

    def _save(self, session: MFASession) -> None:
        session.updated_at = self._clock()
        with self._mutex:
            self._sessions[session.user_id] = session

    def _require(self, user_id: str) -> MFASession:
        session = self._load(user_id)
        if session is None:
            raise NotFound(f"No MFA session for user {user_id}")
        return session

    # ==========================================
    # Lifecycle
    # ==========================================

    def find(self, user_id: str) -> Optional[MFASession]:
        session = self._load(user_id)
        return replace(session) if session else None

    def get(self, user_id: str) -> MFASession:
        """Return a copy of the user's session; NotFound if absent."""
        return replace(self._require(user_id))

    def create_pending(self, user_id: str, secret: str) -> MFASession:
        """
        Start (or restart) enrollment with a new candidate secret.

        Allowed from no session, pending or disabled. An active session must
        be disabled first and a locked one cannot re-enroll until unlocked or
        disabled.
        """
        with self._locks.hold(user_id):
            existing = self._load(user_id)
            if existing is not None:
                if existing.status == MFAStatus.ACTIVE:
                    raise Conflict("MFA is already active. Disable it first to enroll a new authenticator.")
                if existing.status == MFAStatus.LOCKED:
                    raise Locked("MFA is locked due to too many failed attempts")

            now = self._clock()
            session = MFASession(user_id=user_id, secret=secret, created_at=now, updated_at=now)
            self._save(session)

        logger.info(f"MFA session created for user {user_id} (pending)")
        return replace(session)

    def activate(self, user_id: str, secret: str, accepted_step: Optional[int] = None) -> MFASession:
        """
        Promote pending -> active.

        The secret must be the exact candidate the pending session was
        created with. accepted_step is the time step of the confirming code,
        so that code cannot be replayed at login.
        """
        with self._locks.hold(user_id):
            session = self._require(user_id)
            if session.status != MFAStatus.PENDING:
                raise Conflict(f"MFA session is {session.status.value}, not pending")
            if session.secret != secret:
                raise Conflict("Confirmed secret does not match the pending enrollment")

            now = self._clock()
            session.status = MFAStatus.ACTIVE
            session.verified_at = now
            session.failed_attempts = 0
            session.last_accepted_step = accepted_step
            self._save(session)

        logger.info(f"MFA session activated for user {user_id}")
        return replace(session)

    def restore_active(self, user_id: str, secret: str) -> MFASession:
        """
        Recreate an active session for a user the gateway reports as enrolled.

        Existing records are left untouched so a lock is never erased.
        """
        with self._locks.hold(user_id):
            existing = self._load(user_id)
            if existing is not None:
                return replace(existing)

            now = self._clock()
            session = MFASession(
                user_id=user_id,
                secret=secret,
                status=MFAStatus.ACTIVE,
                created_at=now,
                updated_at=now,
            )
            self._save(session)

        logger.info(f"MFA session restored from identity record for user {user_id}")
        return replace(session)

    def disable(self, user_id: str) -> MFASession:
        """Any state -> disabled. The secret is dropped from the record."""
        with self._locks.hold(user_id):
            session = self._require(user_id)
            session.status = MFAStatus.DISABLED
            session.secret = None
            session.failed_attempts = 0
            session.last_accepted_step = None
            self._save(session)

        logger.info(f"MFA session disabled for user {user_id}")
        return replace(session)

    def unlock(self, user_id: str) -> MFASession:
        """Administrative exit from lockout: locked -> active, counters reset."""
        with self._locks.hold(user_id):
            session = self._require(user_id)
            if session.status != MFAStatus.LOCKED:
                raise InvalidState(f"MFA session is {session.status.value}, not locked")

            session.status = MFAStatus.ACTIVE
            session.failed_attempts = 0
            session.locked_at = None
            self._save(session)

        logger.warning(f"MFA lock cleared by administrator for user {user_id}")
        return replace(session)

    # ==========================================
    # Verification attempts
    # ==========================================

    def _attempt(self, user_id: str, check: Callable[[MFASession], bool]) -> AttemptOutcome:
        with self._locks.hold(user_id):
            session = self._require(user_id)

            # Fail fast: the verifier is never consulted while locked
            if session.status == MFAStatus.LOCKED:
                raise Locked("MFA is locked due to too many failed attempts")
            if session.status != MFAStatus.ACTIVE:
                raise InvalidState(f"MFA is not active for this user (status: {session.status.value})")

            accepted = bool(check(session))
            self._record(session, accepted)
            outcome = AttemptOutcome(
                accepted=accepted,
                status=session.status,
                failed_attempts=session.failed_attempts,
                remaining_attempts=max(0, self.lockout_threshold - session.failed_attempts),
            )
        return outcome

    def _record(self, session: MFASession, success: bool) -> None:
        now = self._clock()
        session.last_attempt_at = now

        if success:
            session.failed_attempts = 0
            session.verified_at = now
        else:
            session.failed_attempts += 1
            logger.warning(
                f"MFA verification failed for user {session.user_id} "
                f"({session.failed_attempts}/{self.lockout_threshold})"
            )
            if session.failed_attempts >= self.lockout_threshold:
                session.status = MFAStatus.LOCKED
                session.locked_at = now
                logger.warning(f"MFA locked for user {session.user_id}")

        self._save(session)

    def verify_code(self, user_id: str, code: str, verifier: StepVerifier) -> AttemptOutcome:
        """
        Verify a TOTP code under the lockout policy.

        verifier(secret, code) returns the matched time step or None. A code
        from a step not newer than the last accepted one is a replay and
        counts as a failure.
        """
        def check(session: MFASession) -> bool:
            step = verifier(session.secret, code)
            if step is None:
                return False
            if (
                self.reject_replay
                and session.last_accepted_step is not None
                and step <= session.last_accepted_step
            ):
                logger.warning(f"Replayed TOTP code rejected for user {session.user_id}")
                return False
            session.last_accepted_step = step
            return True

        return self._attempt(user_id, check)

    def verify_with(self, user_id: str, check: Callable[[], bool]) -> AttemptOutcome:
        """Run an arbitrary second-factor check (e.g. a backup code) under the lockout policy."""
        return self._attempt(user_id, lambda _session: check())

    # ==========================================
    # Statistics & maintenance
    # ==========================================

    def stats(self) -> Dict:
        with self._mutex:
            sessions = list(self._sessions.values())

        def count(status: MFAStatus) -> int:
            return sum(1 for s in sessions if s.status == status)

        return {
            "total_users": len(sessions),
            "active": count(MFAStatus.ACTIVE),
            "pending": count(MFAStatus.PENDING),
            "locked": count(MFAStatus.LOCKED),
            "disabled": count(MFAStatus.DISABLED),
            "total_failed_attempts": sum(s.failed_attempts for s in sessions),
            "generated_at": self._clock(),
        }

    def recent_activity(self, limit: int = 10) -> List[Dict]:
        with self._mutex:
            sessions = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

        return [
            {
                "user_id": s.user_id,
                "status": s.status.value,
                "last_activity": s.updated_at,
                "failed_attempts": s.failed_attempts,
            }
            for s in sessions[:limit]
        ]

    def purge_stale(self, max_age: timedelta) -> int:
        """Delete pending and disabled sessions not updated within max_age.

        Locked sessions are kept; dropping one would let the gateway record
        restore it as active.
        """
        cutoff = self._clock() - max_age
        with self._mutex:
            stale = [
                user_id for user_id, s in self._sessions.items()
                if s.status in _PURGEABLE and s.updated_at < cutoff
            ]

        purged = 0
        for user_id in stale:
            with self._locks.hold(user_id):
                session = self._load(user_id)
                if session and session.status in _PURGEABLE and session.updated_at < cutoff:
                    with self._mutex:
                        del self._sessions[user_id]
                    purged += 1
        return purged
