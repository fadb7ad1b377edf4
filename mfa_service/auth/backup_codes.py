"""
Backup code vault.

Single-use recovery codes that stand in for a TOTP code. Plaintext codes are
shown to the user exactly once; only bcrypt hashes are kept.
"""
import logging
import secrets
import string
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import bcrypt

from ..utils.locks import KeyedLock

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class BackupCodeResult:
    """Outcome of a consumption attempt."""
    valid: bool
    remaining: int


@dataclass
class BackupCode:
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class BackupCodeSet:
    """
    One user's ordered set of backup codes.

    A code is flagged used at most once and a used code never validates again.
    """
    user_id: str
    codes: List[BackupCode] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def remaining(self) -> int:
        return sum(1 for c in self.codes if not c.used)

    def consume(self, submitted: str, now: Optional[datetime] = None) -> BackupCodeResult:
        """
        Flag the first unused code matching submitted as used.

        Wrong or already-used codes leave the set untouched.
        """
        normalized = normalize_backup_code(submitted)
        if normalized:
            for entry in self.codes:
                if entry.used:
                    continue
                if _matches(normalized, entry.code_hash):
                    stamp = now or datetime.now(timezone.utc)
                    entry.used = True
                    entry.used_at = stamp
                    self.updated_at = stamp
                    return BackupCodeResult(valid=True, remaining=self.remaining())
        return BackupCodeResult(valid=False, remaining=self.remaining())


def generate_backup_codes(count: int = 8, length: int = 10) -> List[str]:
    """
    Generate backup codes for account recovery.

    Args:
        count: Number of backup codes to generate.
        length: Characters per code, excluding the separator.

    Returns:
        List of uppercase alphanumeric codes formatted XXXXX-XXXXX.
    """
    codes = []
    half = length // 2
    for _ in range(count):
        raw = ''.join(secrets.choice(ALPHABET) for _ in range(length))
        codes.append(f"{raw[:half]}-{raw[half:]}")
    return codes


def normalize_backup_code(code: Optional[str]) -> str:
    """Strip separators and whitespace, uppercase. Non-alphanumerics yield ''."""
    if not isinstance(code, str):
        return ""
    normalized = code.replace("-", "").replace(" ", "").strip().upper()
    if not normalized or any(ch not in ALPHABET for ch in normalized):
        return ""
    return normalized


def hash_backup_code(code: str, rounds: int = 10) -> str:
    """
    Hash a backup code for storage.

    Rounds sit slightly below the password cost; each login may check
    several hashes.
    """
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(normalize_backup_code(code).encode('utf-8'), salt).decode('utf-8')


def _matches(normalized: str, code_hash: str) -> bool:
    try:
        return bcrypt.checkpw(normalized.encode('utf-8'), code_hash.encode('utf-8'))
    except ValueError:
        return False


class BackupCodeVault:
    """
    Keyed store of backup code sets.

    Example usage:
        vault = BackupCodeVault(count=8)
        codes = vault.regenerate(user_id)       # show these once
        result = vault.consume(user_id, "ABCDE-12345")
    """

    def __init__(
        self,
        count: int = 8,
        length: int = 10,
        rounds: int = 10,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.count = count
        self.length = length
        self.rounds = rounds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sets: Dict[str, BackupCodeSet] = {}
        self._mutex = threading.Lock()
        self._locks = KeyedLock()

    def regenerate(self, user_id: str) -> List[str]:
        """
        Replace the user's whole set with fresh codes.

        Every previous code, used or not, is void once this returns.

        Returns:
            The new plaintext codes.
        """
        codes = generate_backup_codes(self.count, self.length)
        now = self._clock()
        new_set = BackupCodeSet(
            user_id=user_id,
            codes=[BackupCode(code_hash=hash_backup_code(c, self.rounds)) for c in codes],
            created_at=now,
            updated_at=now,
        )
        with self._locks.hold(user_id):
            with self._mutex:
                self._sets[user_id] = new_set

        logger.info(f"Issued {len(codes)} backup codes for user {user_id}")
        return codes

    def consume(self, user_id: str, submitted: str) -> BackupCodeResult:
        """Consume one code for user_id; unknown users get an invalid result."""
        with self._locks.hold(user_id):
            with self._mutex:
                code_set = self._sets.get(user_id)
            if code_set is None:
                return BackupCodeResult(valid=False, remaining=0)

            result = code_set.consume(submitted, now=self._clock())

        if result.valid:
            logger.info(f"Backup code used for user {user_id}, {result.remaining} remaining")
        return result

    def remaining(self, user_id: str) -> int:
        with self._mutex:
            code_set = self._sets.get(user_id)
        return code_set.remaining() if code_set else 0

    def revoke(self, user_id: str) -> bool:
        """Drop the user's set entirely."""
        with self._locks.hold(user_id):
            with self._mutex:
                removed = self._sets.pop(user_id, None) is not None
        if removed:
            logger.info(f"Backup codes revoked for user {user_id}")
        return removed
