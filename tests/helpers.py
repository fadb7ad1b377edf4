"""
Test doubles shared across the suite: a controllable clock and an
in-memory Identity Gateway.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from mfa_service.errors import NotFound, UpstreamUnavailable
from mfa_service.gateway.base import IdentityGateway, UserRecord
from mfa_service.auth.passwords import hash_password
from mfa_service.auth.totp import current_code, match_time_step


TEMP_PASSWORD = "Temp-4821"
NEW_PASSWORD = "correct-horse-battery"

# On a 30-second boundary so step arithmetic in tests stays obvious
START_TIME = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


def wrong_code(secret: str, when: datetime) -> str:
    """A well-formed code guaranteed not to match secret around when."""
    candidate = int(current_code(secret, for_time=when))
    while True:
        candidate = (candidate + 1) % 1_000_000
        code = f"{candidate:06d}"
        if match_time_step(secret, code, for_time=when, window=1) is None:
            return code


class FakeIdentityGateway(IdentityGateway):
    """
    In-memory Identity Gateway.

    Records every write so tests can assert on what was (not) sent.
    """

    def __init__(self):
        self.users: Dict[str, Dict[str, Any]] = {}
        self.updates: List[tuple] = []
        self.mfa_calls: List[tuple] = []
        self.sessions: List[tuple] = []
        self.fail_sessions = False
        self.unavailable = False

    def add_user(
        self,
        user_id: str,
        username: str = "user@example.com",
        password: str = TEMP_PASSWORD,
        temporary_password: bool = True,
        mfa_enabled: bool = False,
        mfa_secret: Optional[str] = None,
        role: str = "user",
    ) -> Dict[str, Any]:
        self.users[user_id] = {
            "id": user_id,
            "username": username,
            "password_hash": hash_password(password, rounds=4),
            "temporary_password": temporary_password,
            "mfa_enabled": mfa_enabled,
            "mfa_secret": mfa_secret,
            "full_name": "Test User",
            "role": role,
        }
        return self.users[user_id]

    def _check(self):
        if self.unavailable:
            raise UpstreamUnavailable("Identity service unavailable")

    def get_user(self, user_id: str) -> UserRecord:
        self._check()
        if user_id not in self.users:
            raise NotFound(f"User {user_id} not found")
        return UserRecord.from_payload(dict(self.users[user_id]))

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        self._check()
        if user_id not in self.users:
            raise NotFound(f"User {user_id} not found")
        self.updates.append((user_id, dict(fields)))
        self.users[user_id].update(fields)

    def set_mfa(self, user_id: str, secret: Optional[str], enabled: bool) -> None:
        self._check()
        if user_id not in self.users:
            raise NotFound(f"User {user_id} not found")
        self.mfa_calls.append((user_id, secret, enabled))
        self.users[user_id]["mfa_secret"] = secret if enabled else None
        self.users[user_id]["mfa_enabled"] = enabled

    def create_session(self, user_id: str, token: str) -> None:
        if self.fail_sessions or self.unavailable:
            raise UpstreamUnavailable("Identity service unavailable")
        self.sessions.append((user_id, token))

    def health_check(self) -> str:
        return "unhealthy: down" if self.unavailable else "healthy"
