from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from loginguard.models import Account

DEFAULT_MAX_FAILED_ATTEMPTS = 5
DEFAULT_LOCKOUT_MINUTES = 30


class LockoutStatus(str, Enum):
    ALLOWED = "allowed"
    LOCKED = "locked"


@dataclass(frozen=True)
class LockoutPolicy:
    max_failed_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS
    lockout_minutes: int = DEFAULT_LOCKOUT_MINUTES

    def __post_init__(self) -> None:
        if self.max_failed_attempts <= 0:
            raise ValueError("LOCKOUT_MAX_ATTEMPTS must be greater than 0.")
        if self.lockout_minutes <= 0:
            raise ValueError("LOCKOUT_MINUTES must be greater than 0.")

    @property
    def lockout_window(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)

    @classmethod
    def from_env(cls) -> "LockoutPolicy":
        raw_attempts = os.getenv("LOCKOUT_MAX_ATTEMPTS", str(DEFAULT_MAX_FAILED_ATTEMPTS)).strip()
        raw_minutes = os.getenv("LOCKOUT_MINUTES", str(DEFAULT_LOCKOUT_MINUTES)).strip()
        try:
            max_failed_attempts = int(raw_attempts)
            lockout_minutes = int(raw_minutes)
        except ValueError as exc:
            raise ValueError("LOCKOUT_MAX_ATTEMPTS and LOCKOUT_MINUTES must be integer values.") from exc
        return cls(max_failed_attempts=max_failed_attempts, lockout_minutes=lockout_minutes)


@dataclass(frozen=True)
class LoginStateUpdate:
    failed_login_attempts: int
    account_locked_until: datetime | None
    last_login_at: datetime | None = None

    @property
    def locks_account(self) -> bool:
        return self.account_locked_until is not None


def check_lockout(account: Account, now: datetime) -> LockoutStatus:
    if account.account_locked_until is not None and account.account_locked_until > now:
        return LockoutStatus.LOCKED
    return LockoutStatus.ALLOWED


def register_failure(account: Account, now: datetime, policy: LockoutPolicy) -> LoginStateUpdate:
    failed_attempts = account.failed_login_attempts + 1
    locked_until = None
    if failed_attempts >= policy.max_failed_attempts:
        locked_until = now + policy.lockout_window
    return LoginStateUpdate(failed_login_attempts=failed_attempts, account_locked_until=locked_until)


def register_success(now: datetime) -> LoginStateUpdate:
    return LoginStateUpdate(failed_login_attempts=0, account_locked_until=None, last_login_at=now)
