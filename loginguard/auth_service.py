from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from loginguard import mfa
from loginguard.audit import AuditTrailRecorder
from loginguard.errors import (
    AccountLocked,
    InvalidCode,
    InvalidCredentials,
    SecurityMismatch,
    TokenError,
    ValidationError,
)
from loginguard.lockout import LockoutPolicy, LockoutStatus, check_lockout, register_failure, register_success
from loginguard.models import Account
from loginguard.passwords import PasswordSettings, burn_verification, hash_password, verify_password
from loginguard.repository import AccountRepository
from loginguard.tokens import TokenIssuer
from loginguard.validation import (
    normalize_email,
    normalize_mfa_code,
    normalize_phone_number,
    password_strength_errors,
)

logger = logging.getLogger("loginguard.auth")


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: str


@dataclass(frozen=True)
class LoginResult:
    user: AuthenticatedUser
    token: str | None = None
    mfa_required: bool = False
    temp_token: str | None = None

    @property
    def session_issued(self) -> bool:
        return self.token is not None


@dataclass(frozen=True)
class RegistrationResult:
    user: AuthenticatedUser
    mfa_setup: mfa.MfaEnrollment


class AuthService:
    """Account security state machine: lockout gate, password check, MFA step-up, session minting."""

    def __init__(
        self,
        *,
        accounts: AccountRepository,
        audit: AuditTrailRecorder,
        tokens: TokenIssuer,
        lockout_policy: LockoutPolicy | None = None,
        password_settings: PasswordSettings | None = None,
        mfa_settings: mfa.MfaSettings | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._accounts = accounts
        self._audit = audit
        self._tokens = tokens
        self._lockout_policy = lockout_policy or LockoutPolicy()
        self._password_settings = password_settings or PasswordSettings()
        self._mfa_settings = mfa_settings or mfa.MfaSettings()
        self._clock = clock

    def register(
        self,
        email: str,
        password: str,
        phone_number: str | None,
        ip_address: str,
        user_agent: str | None,
    ) -> RegistrationResult:
        normalized_email = normalize_email(email)
        password_errors = password_strength_errors(password)
        if password_errors:
            raise ValidationError("; ".join(password_errors))
        normalized_phone = normalize_phone_number(phone_number)

        if self._accounts.get_account_by_email(normalized_email) is not None:
            self._audit.record(
                None,
                "REGISTER_ATTEMPT",
                "user",
                None,
                ip_address,
                user_agent,
                {"email": normalized_email, "reason": "User already exists"},
                400,
            )
            raise ValidationError("User already exists")

        password_hash = hash_password(password, rounds=self._password_settings.rounds)
        enrollment = mfa.enroll(normalized_email, self._mfa_settings)
        account = self._accounts.create_account(
            email=normalized_email,
            password_hash=password_hash,
            mfa_secret=enrollment.secret,
            phone_number=normalized_phone,
        )

        self._audit.record(account.id, "USER_REGISTERED", "user", account.id, ip_address, user_agent, None, 201)
        logger.info("user_registered user_id=%s", account.id)
        return RegistrationResult(user=AuthenticatedUser(id=account.id, email=account.email), mfa_setup=enrollment)

    def login(self, email: str, password: str, ip_address: str, user_agent: str | None) -> LoginResult:
        normalized_email = normalize_email(email)
        if not password:
            raise ValidationError("Password is required")

        account = self._accounts.get_account_by_email(normalized_email)
        if account is None:
            burn_verification(password, rounds=self._password_settings.rounds)
            self._audit.record(
                None,
                "LOGIN_ATTEMPT",
                "auth",
                None,
                ip_address,
                user_agent,
                {"email": normalized_email, "reason": "User not found"},
                401,
            )
            raise InvalidCredentials()

        now = self._clock()
        # Checked before hashing so a locked account never costs a bcrypt comparison.
        if check_lockout(account, now) is LockoutStatus.LOCKED:
            self._audit.record(
                account.id,
                "LOGIN_ATTEMPT_LOCKED",
                "auth",
                account.id,
                ip_address,
                user_agent,
                {"reason": "Account locked"},
                403,
            )
            raise AccountLocked(user_id=account.id)

        if not verify_password(password, account.password_hash):
            raise self._record_password_failure(account, now, ip_address, user_agent)

        update = register_success(now)
        self._accounts.update_login_state(
            user_id=account.id,
            failed_login_attempts=update.failed_login_attempts,
            account_locked_until=update.account_locked_until,
            last_login_at=update.last_login_at,
        )
        self._audit.record(account.id, "LOGIN_SUCCESS", "auth", account.id, ip_address, user_agent)

        user = AuthenticatedUser(id=account.id, email=account.email)
        if account.mfa_enabled:
            temp_token = self._tokens.issue_step_up_token(user_id=account.id, bound_ip=ip_address, now=now)
            logger.info("mfa_required user_id=%s", account.id)
            return LoginResult(user=user, mfa_required=True, temp_token=temp_token)

        token = self._tokens.issue_session_token(user_id=account.id, email=account.email, now=now)
        logger.info("login_succeeded user_id=%s", account.id)
        return LoginResult(user=user, token=token)

    def _record_password_failure(
        self,
        account: Account,
        now: datetime,
        ip_address: str,
        user_agent: str | None,
    ) -> InvalidCredentials:
        update = register_failure(account, now, self._lockout_policy)
        self._accounts.update_login_state(
            user_id=account.id,
            failed_login_attempts=update.failed_login_attempts,
            account_locked_until=update.account_locked_until,
        )
        self._audit.record(
            account.id,
            "LOGIN_FAILED",
            "auth",
            account.id,
            ip_address,
            user_agent,
            {"reason": "Invalid password", "failed_attempts": update.failed_login_attempts},
            401,
        )
        if update.locks_account:
            logger.warning(
                "account_locked user_id=%s failed_attempts=%s",
                account.id,
                update.failed_login_attempts,
            )
        return InvalidCredentials(user_id=account.id)

    def verify_mfa(self, temp_token: str, code: str, ip_address: str, user_agent: str | None) -> LoginResult:
        claims = self._tokens.verify_step_up_token(temp_token)

        if claims.bound_ip != ip_address:
            self._audit.record(
                claims.user_id,
                "SECURITY_MFA_IP_MISMATCH",
                "auth",
                claims.user_id,
                ip_address,
                user_agent,
                {"reason": "IP address mismatch", "bound_ip": claims.bound_ip},
                403,
            )
            logger.warning(
                "mfa_ip_mismatch user_id=%s bound_ip=%s request_ip=%s",
                claims.user_id,
                claims.bound_ip,
                ip_address,
            )
            raise SecurityMismatch(user_id=claims.user_id)

        account = self._accounts.get_account_by_id(claims.user_id)
        if account is None or not account.mfa_enabled:
            raise TokenError("Invalid or expired token", user_id=claims.user_id)

        now = self._clock()
        try:
            normalized_code = normalize_mfa_code(code)
        except ValidationError:
            normalized_code = ""
        if not normalized_code or not mfa.verify_code(account.mfa_secret, normalized_code, now=now):
            self._audit.record(
                account.id,
                "MFA_VERIFICATION_FAILED",
                "auth",
                account.id,
                ip_address,
                user_agent,
                {"reason": "Invalid MFA code"},
                401,
            )
            raise InvalidCode(user_id=account.id)

        token = self._tokens.issue_session_token(user_id=account.id, email=account.email, now=now)
        self._audit.record(account.id, "MFA_VERIFICATION_SUCCESS", "auth", account.id, ip_address, user_agent)
        logger.info("mfa_verified user_id=%s", account.id)
        return LoginResult(user=AuthenticatedUser(id=account.id, email=account.email), token=token)

    def get_profile(self, user_id: str) -> Account:
        account = self._accounts.get_account_by_id(user_id)
        if account is None:
            raise ValidationError("User not found")
        return account
