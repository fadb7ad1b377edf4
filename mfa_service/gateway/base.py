"""
Identity Gateway contract.

The gateway is the source of truth for user records, password digests and
the durable "MFA enabled" flag. The MFA core decides when to ask it to flip
that flag; it never stores it long-term itself.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class UserRecord:
    """User as seen through the Identity Gateway."""
    id: str
    username: str
    password_hash: Optional[str] = None
    temporary_password: bool = False
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    full_name: Optional[str] = None
    role: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_mfa(self) -> bool:
        return bool(self.mfa_enabled and self.mfa_secret)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "UserRecord":
        """Build from an API payload, unwrapping a {"data": {...}} envelope."""
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        if not isinstance(data, dict) or data.get("id") is None:
            raise ValueError("User payload has no id")

        known = {
            "id", "username", "email", "password_hash", "temporary_password",
            "mfa_enabled", "mfa_secret", "full_name", "role",
        }
        return cls(
            id=str(data["id"]),
            username=data.get("username") or data.get("email") or str(data["id"]),
            password_hash=data.get("password_hash"),
            temporary_password=data.get("temporary_password") is True,
            mfa_enabled=data.get("mfa_enabled") is True,
            mfa_secret=data.get("mfa_secret") or None,
            full_name=data.get("full_name"),
            role=data.get("role"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def public_profile(self) -> Dict[str, Any]:
        """Fields safe to return to clients (no digest, no secret)."""
        return {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "role": self.role,
            "mfa_enabled": self.mfa_enabled,
        }


class IdentityGateway(ABC):
    """
    Remote user-management service.

    Implementations raise NotFound for missing users, Conflict when the
    service refuses a write, and UpstreamUnavailable for network failures
    or timeouts.
    """

    @abstractmethod
    def get_user(self, user_id: str) -> UserRecord:
        ...

    @abstractmethod
    def update_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        """Apply all fields in one atomic update."""

    @abstractmethod
    def set_mfa(self, user_id: str, secret: Optional[str], enabled: bool) -> None:
        ...

    @abstractmethod
    def create_session(self, user_id: str, token: str) -> None:
        """Record a login session. Callers treat failures as non-fatal."""

    def health_check(self) -> str:
        return "unknown"
