"""
Pytest configuration and shared fixtures for MFA Gate tests.

This module provides common test fixtures for:
- A controllable clock
- A fast test configuration (low bcrypt cost)
- An in-memory Identity Gateway
- A mock Redis client
- Wired-up service, token issuer and first-login flow
"""
import pytest

from mfa_service.config import MFAConfig
from mfa_service.auth.service import MFAService
from mfa_service.auth.tokens import TokenIssuer
from mfa_service.auth.first_login import FirstLoginFlow
from mfa_service.auth.totp import current_code

from tests.helpers import FakeClock, FakeIdentityGateway


# ============================================
# Clock and Configuration
# ============================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Test configuration: minimum bcrypt cost, fixed signing key."""
    return MFAConfig(
        issuer="MFA Gate Test",
        password_bcrypt_rounds=4,
        backup_code_bcrypt_rounds=4,
        jwt_secret="test-signing-key",
    )


# ============================================
# Identity Gateway
# ============================================

@pytest.fixture
def gateway():
    return FakeIdentityGateway()


# ============================================
# Wired components
# ============================================

@pytest.fixture
def service(config, gateway, clock):
    return MFAService(config, gateway, clock=clock)


@pytest.fixture
def tokens(config, clock):
    return TokenIssuer(
        config.jwt_secret,
        session_ttl_seconds=config.session_ttl_seconds,
        step_up_ttl_seconds=config.step_up_ttl_seconds,
        clock=clock,
    )


@pytest.fixture
def flow(config, gateway, tokens, service):
    return FirstLoginFlow(config, gateway, tokens, service)


@pytest.fixture
def enrolled_user(service, gateway, clock):
    """
    A user with active MFA. Returns (user_id, secret, backup_codes).

    The clock is moved one step past enrollment so the confirming code's
    step is no longer current.
    """
    gateway.add_user("42", temporary_password=False)
    enrollment = service.enroll_begin("42")
    result = service.enroll_confirm("42", current_code(enrollment.secret, for_time=clock()))
    clock.advance(30)
    return "42", enrollment.secret, result.backup_codes


# ============================================
# Redis
# ============================================

@pytest.fixture
def mock_redis_client():
    """
    Mock Redis client for the pending activation store.
    Implements get/setex/delete/ping with an in-memory store.
    """
    class MockRedisClient:
        def __init__(self):
            self.store = {}
            self.expiry = {}

        def get(self, key):
            return self.store.get(key)

        def setex(self, key, seconds, value):
            self.store[key] = value
            self.expiry[key] = seconds
            return True

        def delete(self, key):
            existed = key in self.store
            self.store.pop(key, None)
            self.expiry.pop(key, None)
            return 1 if existed else 0

        def ping(self):
            return True

    return MockRedisClient()
