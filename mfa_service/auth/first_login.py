"""
First-login flow.

A user created with a temporary password must replace it before anything
else. After the change:

    MFA already enabled -> step-up token (10 min), then complete_mfa_challenge
    MFA not enabled     -> full session token, MFA offered as an option

The transition state is never stored; it is derived from the gateway's
temporary_password / mfa_enabled flags every time it is asked for.
"""
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

from ..config import MFAConfig
from ..errors import InvalidState, MFAError, Unauthorized, ValidationError
from ..gateway.base import IdentityGateway, UserRecord
from ..utils.locks import KeyedLock
from .passwords import hash_password, verify_password
from .service import Enrollment, MFAService
from .tokens import SESSION_TOKEN, STEP_UP_SCOPE, STEP_UP_TOKEN, TokenIssuer

logger = logging.getLogger(__name__)


class NextStep(str, Enum):
    CHANGE_PASSWORD = "change_password"
    VERIFY_MFA = "verify_mfa"
    OFFER_MFA = "offer_mfa"


@dataclass(frozen=True)
class FirstLoginState:
    user_id: str
    is_first_login: bool
    requires_mfa: bool
    next_step: NextStep


@dataclass
class FirstLoginResult:
    """
    Result of a first-login step.

    token is a step-up token when requires_mfa is True, a session token
    otherwise; token_type says which.
    """
    requires_mfa: bool
    token: str
    token_type: str
    expires_in: int
    user: Dict[str, Any] = field(default_factory=dict)


class FirstLoginFlow:
    """
    Orchestrates temporary-password replacement and the MFA branch after it.

    Usage:
        flow = FirstLoginFlow(config, gateway, tokens, mfa_service)
        result = flow.change_temporary_password("42", "Temp1234", "N3w-passw0rd")
        if result.requires_mfa:
            result = flow.complete_mfa_challenge(result.token, code="123456")
    """

    def __init__(
        self,
        config: MFAConfig,
        gateway: IdentityGateway,
        tokens: TokenIssuer,
        mfa: MFAService,
    ):
        self.config = config
        self.gateway = gateway
        self.tokens = tokens
        self.mfa = mfa
        self._locks = KeyedLock()

    def check_first_login(self, user_id: str) -> FirstLoginState:
        user = self.gateway.get_user(user_id)
        if user.temporary_password:
            next_step = NextStep.CHANGE_PASSWORD
        elif user.has_mfa:
            next_step = NextStep.VERIFY_MFA
        else:
            next_step = NextStep.OFFER_MFA
        return FirstLoginState(
            user_id=user.id,
            is_first_login=user.temporary_password,
            requires_mfa=user.has_mfa,
            next_step=next_step,
        )

    def change_temporary_password(self, user_id: str, current_password: str, new_password: str) -> FirstLoginResult:
        """
        Replace the temporary password and decide the next step.

        Raises:
            NotFound: Unknown user.
            InvalidState: No temporary password active (nothing is written).
            Unauthorized: Current password does not match.
            ValidationError: New password too short.
            Conflict: Gateway rejected the update.
            UpstreamUnavailable: Gateway failed before the update was written.
        """
        with self._locks.hold(user_id):
            user = self.gateway.get_user(user_id)

            if not user.temporary_password:
                raise InvalidState("No temporary password active")

            if not verify_password(current_password or "", user.password_hash or ""):
                logger.warning(f"Temporary password mismatch for user {user_id}")
                raise Unauthorized("Current password is incorrect")

            if len(new_password or "") < self.config.min_password_length:
                raise ValidationError(
                    f"New password must be at least {self.config.min_password_length} characters"
                )

            # Digest and flag go out in one update
            new_hash = hash_password(new_password, rounds=self.config.password_bcrypt_rounds)
            self.gateway.update_user(user_id, {"password_hash": new_hash, "temporary_password": False})

        # Branch on the pre-update record; the write already landed
        updated = replace(user, password_hash=new_hash, temporary_password=False)

        logger.info(f"Temporary password replaced for user {user_id}")

        if updated.has_mfa:
            return self._step_up(updated)
        return self._open_session(updated)

    def setup_mfa_after_first_login(self, user_id: str, enable_mfa: bool) -> Dict[str, Any]:
        """
        The user's answer to the MFA offer after changing the password.

        Declining returns a session; accepting starts enrollment.
        """
        user = self.gateway.get_user(user_id)
        if user.temporary_password:
            raise InvalidState("Temporary password must be changed first")

        if not enable_mfa:
            result = self._open_session(user)
            return {"mfa_enabled": False, "session": result}

        enrollment: Enrollment = self.mfa.enroll_begin(user_id, user.username)
        return {"mfa_enabled": False, "enrollment": enrollment}

    def complete_mfa_challenge(
        self,
        step_up_token: str,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> FirstLoginResult:
        """
        Exchange a step-up token plus a TOTP or backup code for a session.

        Raises:
            Unauthorized: Bad token, or the code was rejected.
            ValidationError: Neither code nor backup_code given.
            Locked: MFA locked for this user.
        """
        claims = self.tokens.decode(step_up_token, expected_type=STEP_UP_TOKEN)
        if claims.get("scope") != STEP_UP_SCOPE:
            raise Unauthorized("Token is not valid for MFA verification")
        user_id = claims["sub"]

        if code:
            accepted = self.mfa.verify_login(user_id, code)
        elif backup_code:
            accepted = self.mfa.consume_backup_code(user_id, backup_code).valid
        else:
            raise ValidationError("Provide either a TOTP code or a backup code")

        if not accepted:
            raise Unauthorized("Invalid MFA code")

        user = self.gateway.get_user(user_id)
        return self._open_session(user)

    def _step_up(self, user: UserRecord) -> FirstLoginResult:
        token = self.tokens.issue_step_up_token(user.id, user.username)
        logger.info(f"Step-up token issued for user {user.id}")
        return FirstLoginResult(
            requires_mfa=True,
            token=token,
            token_type=STEP_UP_TOKEN,
            expires_in=self.tokens.step_up_ttl_seconds,
            user=user.public_profile(),
        )

    def _open_session(self, user: UserRecord) -> FirstLoginResult:
        token = self.tokens.issue_session_token(user.id, user.username, user.role)
        try:
            self.gateway.create_session(user.id, token)
        except MFAError as e:
            logger.warning(f"Could not record session for user {user.id}: {e.message}")
        return FirstLoginResult(
            requires_mfa=False,
            token=token,
            token_type=SESSION_TOKEN,
            expires_in=self.tokens.session_ttl_seconds,
            user=user.public_profile(),
        )
