"""
Service configuration.

One immutable MFAConfig is built at startup and handed to every component's
constructor. Components never read the environment themselves.
"""
import os
import logging
from dataclasses import dataclass
from typing import Optional

from .utils.secrets import get_secret, mask_secret

logger = logging.getLogger(__name__)

DEV_JWT_SECRET = "dev-only-change-me"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class MFAConfig:
    """
    Settings shared by the TOTP engine, stores, token issuer and flows.

    Example usage:
        config = MFAConfig.from_env()
        service = MFAService(config, gateway)
    """
    issuer: str = "MFA Gate"
    lockout_threshold: int = 5
    totp_window: int = 1
    pending_ttl_seconds: int = 600
    step_up_ttl_seconds: int = 600
    session_ttl_seconds: int = 24 * 3600
    backup_code_count: int = 8
    backup_code_length: int = 10
    min_password_length: int = 8
    password_bcrypt_rounds: int = 12
    backup_code_bcrypt_rounds: int = 10
    jwt_secret: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"
    identity_api_url: str = "http://localhost:3000/api"
    identity_api_timeout: float = 10.0
    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    stale_session_days: int = 30
    reject_replay: bool = True

    def __post_init__(self):
        if self.lockout_threshold < 1:
            raise ValueError("lockout_threshold must be at least 1")
        if self.totp_window < 0:
            raise ValueError("totp_window must not be negative")
        if self.pending_ttl_seconds <= 0 or self.step_up_ttl_seconds <= 0:
            raise ValueError("TTL values must be positive")
        if self.backup_code_length < 6:
            raise ValueError("backup_code_length must be at least 6")
        if self.identity_api_timeout <= 0:
            raise ValueError("identity_api_timeout must be positive")
        if self.min_password_length < 8:
            raise ValueError("min_password_length must be at least 8")

    @classmethod
    def from_env(cls) -> "MFAConfig":
        """Build configuration from environment variables and secret files."""
        jwt_secret = get_secret("JWT_SECRET", default=DEV_JWT_SECRET)
        if jwt_secret == DEV_JWT_SECRET:
            logger.warning("JWT_SECRET not configured, using development signing key")
        else:
            logger.info(f"JWT signing key loaded ({mask_secret(jwt_secret)})")

        timeout_raw = os.getenv("IDENTITY_API_TIMEOUT", "10")
        try:
            timeout = float(timeout_raw)
        except ValueError:
            raise ValueError(f"IDENTITY_API_TIMEOUT must be a number, got {timeout_raw!r}")

        return cls(
            issuer=os.getenv("MFA_ISSUER", "MFA Gate"),
            lockout_threshold=_env_int("MFA_LOCKOUT_THRESHOLD", 5),
            totp_window=_env_int("MFA_TOTP_WINDOW", 1),
            pending_ttl_seconds=_env_int("MFA_PENDING_TTL", 600),
            step_up_ttl_seconds=_env_int("MFA_STEP_UP_TTL", 600),
            session_ttl_seconds=_env_int("JWT_EXPIRES_SECONDS", 24 * 3600),
            backup_code_count=_env_int("MFA_BACKUP_CODE_COUNT", 8),
            backup_code_length=_env_int("MFA_BACKUP_CODE_LENGTH", 10),
            min_password_length=_env_int("MFA_MIN_PASSWORD_LENGTH", 8),
            password_bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
            backup_code_bcrypt_rounds=_env_int("BACKUP_CODE_BCRYPT_ROUNDS", 10),
            jwt_secret=jwt_secret,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            identity_api_url=os.getenv("IDENTITY_API_URL", "http://localhost:3000/api"),
            identity_api_timeout=timeout,
            redis_host=os.getenv("REDIS_HOST") or None,
            redis_port=_env_int("REDIS_PORT", 6379),
            redis_db=_env_int("REDIS_DB", 0),
            redis_password=get_secret("REDIS_PASSWORD", default="") or None,
            stale_session_days=_env_int("MFA_STALE_SESSION_DAYS", 30),
            reject_replay=_env_bool("MFA_REJECT_REPLAY", True),
        )
