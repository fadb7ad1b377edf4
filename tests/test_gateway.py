"""
Tests for the HTTP Identity Gateway client.

requests is mocked; no network access.
"""
from unittest.mock import MagicMock

import pytest
import requests

from mfa_service.errors import (
    Conflict,
    NotFound,
    Unauthorized,
    UpstreamUnavailable,
    ValidationError,
)
from mfa_service.gateway import HTTPIdentityGateway, UserRecord


def make_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.content = b"" if body is None else b"{}"
    if body is None:
        response.json.side_effect = ValueError("no body")
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def http():
    return MagicMock(spec=requests.Session, headers={})


@pytest.fixture
def client(http):
    return HTTPIdentityGateway("http://users:3000/api/", timeout=5, session=http)


USER_PAYLOAD = {
    "id": 42,
    "email": "alice@example.com",
    "password_hash": "$2b$12$abc",
    "temporary_password": True,
    "mfa_enabled": False,
    "mfa_secret": None,
    "role": "user",
    "department": "finance",
}


class TestUserRecord:

    def test_from_payload_unwraps_data(self):
        user = UserRecord.from_payload({"success": True, "data": USER_PAYLOAD})
        assert user.id == "42"
        assert user.username == "alice@example.com"
        assert user.temporary_password is True
        assert user.extra == {"department": "finance"}

    def test_has_mfa_needs_flag_and_secret(self):
        assert UserRecord(id="1", username="a", mfa_enabled=True).has_mfa is False
        assert UserRecord(id="1", username="a", mfa_enabled=True, mfa_secret="S").has_mfa is True

    def test_missing_id(self):
        with pytest.raises(ValueError):
            UserRecord.from_payload({"username": "a"})

    def test_public_profile_hides_secrets(self):
        profile = UserRecord.from_payload(USER_PAYLOAD).public_profile()
        assert "password_hash" not in profile
        assert "mfa_secret" not in profile


class TestHTTPIdentityGateway:
    """Test REST calls and error mapping."""

    def test_get_user(self, client, http):
        http.request.return_value = make_response(200, {"data": USER_PAYLOAD})
        user = client.get_user("42")

        assert user.id == "42"
        http.request.assert_called_once_with(
            "GET", "http://users:3000/api/users/42", json=None, timeout=5
        )

    def test_get_user_not_found(self, client, http):
        http.request.return_value = make_response(404, {"message": "User not found"})
        with pytest.raises(NotFound):
            client.get_user("42")

    def test_get_user_unsuccessful_envelope(self, client, http):
        http.request.return_value = make_response(200, {"success": False})
        with pytest.raises(NotFound):
            client.get_user("42")

    def test_update_user_single_request(self, client, http):
        http.request.return_value = make_response(200, {"success": True})
        client.update_user("42", {"password_hash": "$2b$...", "temporary_password": False})

        http.request.assert_called_once_with(
            "PUT",
            "http://users:3000/api/users/42",
            json={"password_hash": "$2b$...", "temporary_password": False},
            timeout=5,
        )

    def test_update_user_rejected_is_not_retryable(self, client, http):
        http.request.return_value = make_response(200, {"success": False})
        with pytest.raises(Conflict) as exc_info:
            client.update_user("42", {"temporary_password": False})
        assert exc_info.value.retryable is False

    def test_enable_mfa(self, client, http):
        http.request.return_value = make_response(200, {"success": True})
        client.set_mfa("42", "SECRET", True)
        http.request.assert_called_once_with(
            "PATCH",
            "http://users:3000/api/users/42/enable-mfa",
            json={"mfa_secret": "SECRET", "mfa_enabled": True},
            timeout=5,
        )

    def test_disable_mfa(self, client, http):
        http.request.return_value = make_response(204)
        client.set_mfa("42", None, False)
        http.request.assert_called_once_with(
            "PATCH", "http://users:3000/api/users/42/disable-mfa", json=None, timeout=5
        )

    def test_create_session(self, client, http):
        http.request.return_value = make_response(201, {"id": 1})
        client.create_session("42", "tok")
        http.request.assert_called_once_with(
            "POST",
            "http://users:3000/api/sessions",
            json={"user_id": "42", "token": "tok"},
            timeout=5,
        )

    def test_timeout_is_upstream_unavailable(self, client, http):
        http.request.side_effect = requests.Timeout("slow")
        with pytest.raises(UpstreamUnavailable) as exc_info:
            client.get_user("42")
        assert exc_info.value.retryable is True

    def test_connection_error_is_upstream_unavailable(self, client, http):
        http.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(UpstreamUnavailable):
            client.update_user("42", {"temporary_password": False})

    def test_server_error_is_upstream_unavailable(self, client, http):
        http.request.return_value = make_response(502, {"message": "bad gateway"})
        with pytest.raises(UpstreamUnavailable):
            client.set_mfa("42", "SECRET", True)

    @pytest.mark.parametrize("status_code,error", [
        (400, ValidationError),
        (401, Unauthorized),
        (403, Unauthorized),
        (409, Conflict),
    ])
    def test_client_errors(self, client, http, status_code, error):
        http.request.return_value = make_response(status_code, {"message": "nope"})
        with pytest.raises(error) as exc_info:
            client.update_user("42", {})
        assert exc_info.value.message == "nope"

    def test_health_check(self, client, http):
        http.request.return_value = make_response(200, {"status": "ok"})
        assert client.health_check() == "healthy"

        http.request.side_effect = requests.ConnectionError("refused")
        assert client.health_check().startswith("unhealthy")
