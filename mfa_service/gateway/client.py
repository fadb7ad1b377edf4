"""
HTTP client for the Identity Gateway.

Thin requests wrapper. Every call carries a timeout; network failures,
timeouts and 5xx responses surface as UpstreamUnavailable so a caller may
retry with backoff. Nothing is retried here.
"""
import logging
from typing import Any, Dict, Optional

import requests

from ..errors import (
    Conflict,
    MFAError,
    NotFound,
    Unauthorized,
    UpstreamUnavailable,
    ValidationError,
)
from .base import IdentityGateway, UserRecord

logger = logging.getLogger(__name__)

_STATUS_ERRORS = {
    400: ValidationError,
    401: Unauthorized,
    403: Unauthorized,
    404: NotFound,
    409: Conflict,
}


class HTTPIdentityGateway(IdentityGateway):
    """
    Identity Gateway over REST.

    Usage:
        gateway = HTTPIdentityGateway("http://users:3000/api", timeout=10)
        user = gateway.get_user("42")
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update({"Content-Type": "application/json"})

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug(f"Identity API request: {method} {path}")

        try:
            response = self.http.request(method, url, json=json, timeout=self.timeout)
        except requests.Timeout as e:
            logger.error(f"Identity API timeout: {method} {path} after {self.timeout}s")
            raise UpstreamUnavailable("Identity service timed out") from e
        except requests.RequestException as e:
            logger.error(f"Identity API unreachable: {method} {path}: {e}")
            raise UpstreamUnavailable("Identity service unavailable") from e

        logger.debug(f"Identity API response: {response.status_code} {path}")

        if response.status_code >= 500:
            raise UpstreamUnavailable(f"Identity service error ({response.status_code})")
        if response.status_code >= 400:
            error_cls = _STATUS_ERRORS.get(response.status_code, MFAError)
            raise error_cls(_error_message(response))

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def get_user(self, user_id: str) -> UserRecord:
        try:
            payload = self._request("GET", f"/users/{user_id}")
        except NotFound:
            raise NotFound(f"User {user_id} not found")
        if isinstance(payload, dict) and payload.get("success") is False:
            raise NotFound(f"User {user_id} not found")
        try:
            return UserRecord.from_payload(payload or {})
        except ValueError:
            raise NotFound(f"User {user_id} not found")

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        payload = self._request("PUT", f"/users/{user_id}", json=fields)
        if isinstance(payload, dict) and payload.get("success") is False:
            raise Conflict(f"Identity service rejected update for user {user_id}")
        logger.info(f"Updated user {user_id}: {sorted(fields)}")

    def set_mfa(self, user_id: str, secret: Optional[str], enabled: bool) -> None:
        if enabled:
            self._request(
                "PATCH",
                f"/users/{user_id}/enable-mfa",
                json={"mfa_secret": secret, "mfa_enabled": True},
            )
        else:
            self._request("PATCH", f"/users/{user_id}/disable-mfa")
        logger.info(f"Updated MFA for user {user_id}: enabled={enabled}")

    def create_session(self, user_id: str, token: str) -> None:
        self._request("POST", "/sessions", json={"user_id": user_id, "token": token})
        logger.info(f"Session recorded for user {user_id}")

    def health_check(self) -> str:
        try:
            self._request("GET", "/health")
            return "healthy"
        except MFAError as e:
            return f"unhealthy: {e.message}"


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"Identity service returned {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body.get("error") or response.status_code)
    return f"Identity service returned {response.status_code}"
