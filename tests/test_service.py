"""
Tests for the MFA service.

Covers:
- Enrollment begin/confirm
- Login verification with lockout and replay protection
- Backup codes through the lockout policy
- Disable, unlock, status and maintenance
- Gateway failures
"""
import threading

import pytest

from mfa_service.auth.sessions import MFAStatus
from mfa_service.auth.totp import current_code, generate_secret
from mfa_service.errors import (
    Conflict,
    Expired,
    InvalidState,
    Locked,
    NotFound,
    Unauthorized,
    UpstreamUnavailable,
    ValidationError,
)
from tests.helpers import wrong_code


def lock_out(service, user_id, secret, clock):
    for _ in range(5):
        service.verify_login(user_id, wrong_code(secret, clock()))


class TestEnrollment:
    """Test enrollment."""

    def test_begin_returns_artifacts(self, service, gateway):
        gateway.add_user("42", username="alice@example.com", temporary_password=False)
        enrollment = service.enroll_begin("42")

        assert enrollment.provisioning_uri.startswith("otpauth://totp/MFA%20Gate%20Test:alice@example.com?")
        assert enrollment.secret in enrollment.provisioning_uri
        assert enrollment.qr_code.startswith("data:image/png;base64,")
        assert service.sessions.get("42").status == MFAStatus.PENDING
        # Nothing durable changes until confirmation
        assert gateway.mfa_calls == []

    def test_begin_unknown_user(self, service):
        with pytest.raises(NotFound):
            service.enroll_begin("missing")

    def test_begin_when_enabled(self, service, enrolled_user):
        with pytest.raises(Conflict):
            service.enroll_begin("42")

    def test_confirm_enables_mfa(self, service, gateway, clock):
        gateway.add_user("42", temporary_password=False)
        enrollment = service.enroll_begin("42")

        result = service.enroll_confirm("42", current_code(enrollment.secret, for_time=clock()))

        assert result
        assert result.enabled is True
        assert len(result.backup_codes) == 8
        assert gateway.mfa_calls == [("42", enrollment.secret, True)]
        assert gateway.users["42"]["mfa_enabled"] is True
        assert service.sessions.get("42").status == MFAStatus.ACTIVE
        assert service.vault.remaining("42") == 8
        with pytest.raises(NotFound):
            service.pending.fetch("42")

    def test_confirm_wrong_code(self, service, gateway, clock):
        gateway.add_user("42", temporary_password=False)
        enrollment = service.enroll_begin("42")

        with pytest.raises(Unauthorized):
            service.enroll_confirm("42", wrong_code(enrollment.secret, clock()))

        assert service.pending.fetch("42").attempts == 1
        assert service.sessions.get("42").status == MFAStatus.PENDING
        assert gateway.mfa_calls == []

    def test_confirm_malformed(self, service, gateway):
        gateway.add_user("42", temporary_password=False)
        service.enroll_begin("42")
        with pytest.raises(ValidationError):
            service.enroll_confirm("42", "12ab56")
        assert service.pending.fetch("42").attempts == 0

    def test_confirm_without_begin(self, service, gateway):
        gateway.add_user("42", temporary_password=False)
        with pytest.raises(NotFound):
            service.enroll_confirm("42", "123456")

    def test_confirm_after_window(self, service, gateway, clock):
        gateway.add_user("42", temporary_password=False)
        enrollment = service.enroll_begin("42")
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(Expired):
            service.enroll_confirm("42", current_code(enrollment.secret, for_time=clock()))

    def test_confirm_uses_latest_secret(self, service, gateway, clock):
        gateway.add_user("42", temporary_password=False)
        first = service.enroll_begin("42")
        second = service.enroll_begin("42")

        stale = current_code(first.secret, for_time=clock())
        if stale != current_code(second.secret, for_time=clock()):
            with pytest.raises(Unauthorized):
                service.enroll_confirm("42", stale)
        assert service.enroll_confirm("42", current_code(second.secret, for_time=clock()))

    def test_gateway_failure_keeps_pending(self, service, gateway, clock):
        gateway.add_user("42", temporary_password=False)
        enrollment = service.enroll_begin("42")
        code = current_code(enrollment.secret, for_time=clock())

        gateway.unavailable = True
        with pytest.raises(UpstreamUnavailable):
            service.enroll_confirm("42", code)

        assert service.sessions.get("42").status == MFAStatus.PENDING
        assert service.pending.fetch("42").secret == enrollment.secret

        gateway.unavailable = False
        clock.advance(30)
        assert service.enroll_confirm("42", current_code(enrollment.secret, for_time=clock()))


class TestVerifyLogin:
    """Test login-time verification."""

    def test_valid_code(self, service, enrolled_user, clock):
        user_id, secret, _ = enrolled_user
        assert service.verify_login(user_id, current_code(secret, for_time=clock())) is True

    def test_enrollment_code_cannot_be_replayed(self, service, gateway, clock):
        gateway.add_user("42", temporary_password=False)
        enrollment = service.enroll_begin("42")
        code = current_code(enrollment.secret, for_time=clock())
        service.enroll_confirm("42", code)

        assert service.verify_login("42", code) is False

    def test_same_code_twice_in_one_step(self, service, enrolled_user, clock):
        user_id, secret, _ = enrolled_user
        code = current_code(secret, for_time=clock())
        assert service.verify_login(user_id, code) is True
        assert service.verify_login(user_id, code) is False
        assert service.sessions.get(user_id).failed_attempts == 1

    def test_lockout_after_five_failures(self, service, enrolled_user, clock):
        user_id, secret, _ = enrolled_user
        lock_out(service, user_id, secret, clock)

        assert service.sessions.get(user_id).status == MFAStatus.LOCKED
        with pytest.raises(Locked):
            service.verify_login(user_id, current_code(secret, for_time=clock()))

    def test_malformed_code_not_counted(self, service, enrolled_user):
        user_id, _, _ = enrolled_user
        with pytest.raises(ValidationError):
            service.verify_login(user_id, "abc")
        assert service.sessions.get(user_id).failed_attempts == 0

    def test_padded_code_is_malformed(self, service, enrolled_user, clock):
        user_id, secret, _ = enrolled_user
        with pytest.raises(ValidationError):
            service.verify_login(user_id, f" {current_code(secret, for_time=clock())} ")
        assert service.sessions.get(user_id).failed_attempts == 0

    def test_mfa_not_enabled(self, service, gateway):
        gateway.add_user("7", temporary_password=False)
        with pytest.raises(NotFound):
            service.verify_login("7", "123456")

    def test_session_hydrated_from_gateway(self, service, gateway, clock):
        secret = generate_secret("bob").base32
        gateway.add_user("9", temporary_password=False, mfa_enabled=True, mfa_secret=secret)

        assert service.verify_login("9", current_code(secret, for_time=clock())) is True
        assert service.sessions.get("9").status == MFAStatus.ACTIVE

    def test_concurrent_failures_cannot_bypass_lockout(self, service, enrolled_user, clock):
        user_id, secret, _ = enrolled_user
        bad = wrong_code(secret, clock())
        errors = []

        def attempt():
            try:
                service.verify_login(user_id, bad)
            except Locked:
                errors.append("locked")

        threads = [threading.Thread(target=attempt) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        session = service.sessions.get(user_id)
        assert session.status == MFAStatus.LOCKED
        assert session.failed_attempts == 5
        assert len(errors) == 15


class TestBackupCodes:
    """Test backup codes through the service."""

    def test_consume(self, service, enrolled_user):
        user_id, _, codes = enrolled_user
        result = service.consume_backup_code(user_id, codes[0])
        assert result.valid is True
        assert result.remaining == 7

        again = service.consume_backup_code(user_id, codes[0])
        assert again.valid is False
        assert service.sessions.get(user_id).failed_attempts == 1

    def test_backup_code_resets_counter(self, service, enrolled_user, clock):
        user_id, secret, codes = enrolled_user
        service.verify_login(user_id, wrong_code(secret, clock()))
        service.consume_backup_code(user_id, codes[1])
        assert service.sessions.get(user_id).failed_attempts == 0

    def test_locked_user_cannot_use_backup_code(self, service, enrolled_user, clock):
        user_id, secret, codes = enrolled_user
        lock_out(service, user_id, secret, clock)
        with pytest.raises(Locked):
            service.consume_backup_code(user_id, codes[0])
        assert service.vault.remaining(user_id) == 8

    def test_malformed_backup_code(self, service, enrolled_user):
        user_id, _, _ = enrolled_user
        with pytest.raises(ValidationError):
            service.consume_backup_code(user_id, "!!!")

    def test_regenerate(self, service, enrolled_user):
        user_id, _, old_codes = enrolled_user
        new_codes = service.regenerate_backup_codes(user_id)
        assert len(new_codes) == 8
        assert service.consume_backup_code(user_id, old_codes[0]).valid is False
        assert service.consume_backup_code(user_id, new_codes[0]).valid is True

    def test_regenerate_requires_active(self, service, gateway):
        gateway.add_user("42", temporary_password=False)
        service.enroll_begin("42")
        with pytest.raises(InvalidState):
            service.regenerate_backup_codes("42")

    def test_regenerate_when_locked(self, service, enrolled_user, clock):
        user_id, secret, _ = enrolled_user
        lock_out(service, user_id, secret, clock)
        with pytest.raises(Locked):
            service.regenerate_backup_codes(user_id)


class TestAdministration:
    """Test disable, unlock, status and cleanup."""

    def test_disable(self, service, gateway, enrolled_user):
        user_id, _, _ = enrolled_user
        service.disable(user_id)

        assert gateway.users[user_id]["mfa_enabled"] is False
        assert gateway.users[user_id]["mfa_secret"] is None
        assert service.sessions.get(user_id).status == MFAStatus.DISABLED
        assert service.vault.remaining(user_id) == 0

    def test_disable_then_reenroll(self, service, enrolled_user, clock):
        user_id, _, _ = enrolled_user
        service.disable(user_id)
        enrollment = service.enroll_begin(user_id)
        assert service.enroll_confirm(user_id, current_code(enrollment.secret, for_time=clock()))

    def test_disable_clears_lock(self, service, enrolled_user, clock):
        user_id, secret, _ = enrolled_user
        lock_out(service, user_id, secret, clock)
        service.disable(user_id)
        assert service.sessions.get(user_id).status == MFAStatus.DISABLED

    def test_unlock(self, service, enrolled_user, clock):
        user_id, secret, _ = enrolled_user
        lock_out(service, user_id, secret, clock)

        service.unlock(user_id)
        assert service.verify_login(user_id, current_code(secret, for_time=clock())) is True

    def test_status(self, service, enrolled_user, clock):
        user_id, secret, codes = enrolled_user
        service.verify_login(user_id, wrong_code(secret, clock()))
        service.consume_backup_code(user_id, codes[0])

        status = service.get_status(user_id)
        assert status["mfa_enabled"] is True
        assert status["has_secret"] is True
        assert status["status"] == "active"
        assert status["failed_attempts"] == 0
        assert status["backup_codes_remaining"] == 7

    def test_stats(self, service, enrolled_user):
        stats = service.stats()
        assert stats["active"] == 1
        assert stats["recent_activity"][0]["user_id"] == "42"

    def test_cleanup_expired(self, service, gateway, clock):
        gateway.add_user("1", temporary_password=False)
        service.enroll_begin("1")
        clock.advance(days=31)

        assert service.cleanup_expired() == 2
        assert service.sessions.find("1") is None
