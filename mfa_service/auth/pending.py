"""
Pending activation store.

Holds a generated-but-unconfirmed secret for a short window (10 minutes by
default) until the user proves possession of the authenticator. One pending
activation per user; a new one overwrites the old.

Expiry is checked lazily on read. purge_expired() is the optional periodic
sweep.

Two backends:
- InMemoryPendingActivationStore (single process, default)
- RedisPendingActivationStore (SETEX with the TTL, in-memory fallback when
  Redis errors)
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import redis

from ..errors import Expired, NotFound
from ..utils.locks import KeyedLock
from .totp import ProvisioningArtifacts

logger = logging.getLogger(__name__)

# TTL for pending MFA secrets (10 minutes)
PENDING_TTL = 600


@dataclass
class PendingActivation:
    user_id: str
    secret: str
    provisioning_uri: str
    qr_code: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_json(self) -> str:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["expires_at"] = self.expires_at.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "PendingActivation":
        data = json.loads(raw)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["expires_at"] = datetime.fromisoformat(data["expires_at"])
        return cls(**data)


class PendingActivationStore(ABC):
    """
    Base store: lifecycle rules live here, backends only read and write.
    """

    def __init__(
        self,
        ttl_seconds: int = PENDING_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks = KeyedLock()

    @abstractmethod
    def _read(self, user_id: str) -> Optional[PendingActivation]:
        ...

    @abstractmethod
    def _write(self, activation: PendingActivation) -> None:
        ...

    @abstractmethod
    def _remove(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def _user_ids(self) -> List[str]:
        ...

    def create(self, user_id: str, artifacts: ProvisioningArtifacts) -> PendingActivation:
        """
        Hold a candidate secret for user_id, replacing any earlier one.
        """
        now = self._clock()
        activation = PendingActivation(
            user_id=user_id,
            secret=artifacts.secret,
            provisioning_uri=artifacts.provisioning_uri,
            qr_code=artifacts.qr_code,
            created_at=now,
            expires_at=now + self.ttl,
        )
        with self._locks.hold(user_id):
            self._write(activation)

        logger.info(f"Pending MFA activation saved for user {user_id}, expires {activation.expires_at}")
        return activation

    def fetch(self, user_id: str) -> PendingActivation:
        """
        Return the pending activation.

        Raises:
            NotFound: No activation for this user.
            Expired: The window passed; the record is deleted.
        """
        with self._locks.hold(user_id):
            activation = self._read(user_id)
            if activation is None:
                raise NotFound("No pending MFA activation found. Start enrollment first.")
            if activation.is_expired(self._clock()):
                self._remove(user_id)
                logger.info(f"Pending MFA activation expired for user {user_id}")
                raise Expired("The MFA activation window has expired. Start enrollment again.")
            return activation

    def record_failed_attempt(self, user_id: str) -> int:
        """Count a wrong confirmation code. Pending activations never lock."""
        with self._locks.hold(user_id):
            activation = self.fetch(user_id)
            activation.attempts += 1
            self._write(activation)
        return activation.attempts

    def confirm(self, user_id: str, code: str, verifier: Callable[[str, str], bool]) -> bool:
        """
        Check code against the exact pending secret.

        On success the caller promotes the MFA session and persists the
        secret; on failure the activation's own attempt counter goes up.
        """
        with self._locks.hold(user_id):
            activation = self.fetch(user_id)
            if verifier(activation.secret, code):
                return True
            attempts = self.record_failed_attempt(user_id)

        logger.info(f"Pending MFA confirmation failed for user {user_id} (attempt {attempts})")
        return False

    def delete(self, user_id: str) -> bool:
        with self._locks.hold(user_id):
            deleted = self._remove(user_id)
        if deleted:
            logger.info(f"Pending MFA activation deleted for user {user_id}")
        return deleted

    def purge_expired(self) -> int:
        """Proactively drop expired activations. Returns the number removed."""
        now = self._clock()
        purged = 0
        for user_id in self._user_ids():
            with self._locks.hold(user_id):
                activation = self._read(user_id)
                if activation is not None and activation.is_expired(now):
                    self._remove(user_id)
                    purged += 1
        return purged

    def health(self) -> str:
        return "healthy (memory)"


class InMemoryPendingActivationStore(PendingActivationStore):
    """Process-local backend."""

    def __init__(self, ttl_seconds: int = PENDING_TTL, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(ttl_seconds, clock)
        self._items: Dict[str, PendingActivation] = {}
        self._mutex = threading.Lock()

    def _read(self, user_id: str) -> Optional[PendingActivation]:
        with self._mutex:
            return self._items.get(user_id)

    def _write(self, activation: PendingActivation) -> None:
        with self._mutex:
            self._items[activation.user_id] = activation

    def _remove(self, user_id: str) -> bool:
        with self._mutex:
            return self._items.pop(user_id, None) is not None

    def _user_ids(self) -> List[str]:
        with self._mutex:
            return list(self._items)


class RedisPendingActivationStore(PendingActivationStore):
    """
    Redis backend. Keys expire on their own through SETEX; the lazy expiry
    check still applies so an injected clock stays authoritative.

    Falls back to an in-memory store if Redis errors.
    """

    KEY_PREFIX = "mfa:pending:"

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl_seconds: int = PENDING_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(ttl_seconds, clock)
        self.redis = redis_client
        self._fallback = InMemoryPendingActivationStore(ttl_seconds, clock)

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    def _read(self, user_id: str) -> Optional[PendingActivation]:
        try:
            raw = self.redis.get(self._key(user_id))
        except redis.RedisError as e:
            logger.warning(f"Redis error retrieving pending MFA activation: {e}")
            return self._fallback._read(user_id)
        if raw is None:
            return self._fallback._read(user_id)
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        return PendingActivation.from_json(raw)

    def _write(self, activation: PendingActivation) -> None:
        remaining = int((activation.expires_at - self._clock()).total_seconds())
        try:
            self.redis.setex(self._key(activation.user_id), max(1, remaining), activation.to_json())
        except redis.RedisError as e:
            logger.warning(f"Redis error storing pending MFA activation: {e}")
            self._fallback._write(activation)

    def _remove(self, user_id: str) -> bool:
        deleted = False
        try:
            deleted = bool(self.redis.delete(self._key(user_id)))
        except redis.RedisError as e:
            logger.warning(f"Redis error clearing pending MFA activation: {e}")
        # Also clear from memory fallback
        return self._fallback._remove(user_id) or deleted

    def _user_ids(self) -> List[str]:
        # Redis expires its own keys; only the fallback needs sweeping
        return self._fallback._user_ids()

    def health(self) -> str:
        try:
            self.redis.ping()
            return "healthy (redis)"
        except redis.RedisError as e:
            return f"degraded (redis unavailable, memory fallback): {e}"


def create_pending_store(config) -> PendingActivationStore:
    """
    Pick the backend from configuration: Redis when REDIS_HOST is set and
    reachable, otherwise in-memory.
    """
    if not config.redis_host:
        return InMemoryPendingActivationStore(config.pending_ttl_seconds)

    client = redis.Redis(
        host=config.redis_host,
        port=config.redis_port,
        password=config.redis_password,
        db=config.redis_db,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    try:
        client.ping()
    except redis.ConnectionError as e:
        logger.warning(f"Redis connection failed: {e}. Pending activations will use in-memory store.")
        return InMemoryPendingActivationStore(config.pending_ttl_seconds)

    logger.info(f"Redis connected: {config.redis_host}:{config.redis_port}")
    return RedisPendingActivationStore(client, config.pending_ttl_seconds)
