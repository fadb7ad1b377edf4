"""
Session and step-up tokens.

Two JWT flavours signed with python-jose:

- session: full access, TTL from configuration (24h default)
- step_up: "password verified, MFA still required"; scope mfa:verify only,
  10 minutes
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from jose import jwt, JWTError

from ..errors import Unauthorized

logger = logging.getLogger(__name__)

SESSION_TOKEN = "session"
STEP_UP_TOKEN = "step_up"
STEP_UP_SCOPE = "mfa:verify"


class TokenIssuer:
    """Issues and decodes the service's JWTs."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        session_ttl_seconds: int = 24 * 3600,
        step_up_ttl_seconds: int = 600,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._secret = secret
        self.algorithm = algorithm
        self.session_ttl = timedelta(seconds=session_ttl_seconds)
        self.step_up_ttl = timedelta(seconds=step_up_ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _sign(self, claims: Dict[str, Any], ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            **claims,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def issue_session_token(self, user_id: str, username: Optional[str] = None, role: Optional[str] = None) -> str:
        return self._sign(
            {"sub": str(user_id), "username": username, "role": role, "type": SESSION_TOKEN},
            self.session_ttl,
        )

    def issue_step_up_token(self, user_id: str, username: Optional[str] = None) -> str:
        return self._sign(
            {"sub": str(user_id), "username": username, "type": STEP_UP_TOKEN, "scope": STEP_UP_SCOPE},
            self.step_up_ttl,
        )

    def decode(self, token: str, expected_type: Optional[str] = None) -> Dict[str, Any]:
        """
        Validate signature, expiry and token type.

        Raises:
            Unauthorized: For any invalid, expired or mistyped token.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError as e:
            logger.debug(f"Token rejected: {e}")
            raise Unauthorized("Invalid token")

        # Expiry is checked against the injected clock, not the wall clock
        exp = claims.get("exp")
        if exp is None or self._clock().timestamp() >= exp:
            raise Unauthorized("Token has expired")
        if expected_type and claims.get("type") != expected_type:
            raise Unauthorized(f"Expected a {expected_type} token")
        if not claims.get("sub"):
            raise Unauthorized("Token has no subject")
        return claims

    @property
    def session_ttl_seconds(self) -> int:
        return int(self.session_ttl.total_seconds())

    @property
    def step_up_ttl_seconds(self) -> int:
        return int(self.step_up_ttl.total_seconds())
