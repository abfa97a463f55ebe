from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from loginguard.errors import TokenError

ALGORITHM = "HS256"
SESSION_PURPOSE = "session"
STEP_UP_PURPOSE = "mfa"
DEFAULT_SESSION_TTL_MINUTES = 24 * 60
DEFAULT_STEP_UP_TTL_SECONDS = 300


@dataclass(frozen=True)
class TokenSettings:
    secret: str
    session_ttl_minutes: int = DEFAULT_SESSION_TTL_MINUTES
    step_up_ttl_seconds: int = DEFAULT_STEP_UP_TTL_SECONDS

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("JWT_SECRET must not be empty.")
        if self.session_ttl_minutes <= 0:
            raise ValueError("JWT_EXPIRES_MINUTES must be greater than 0.")
        if self.step_up_ttl_seconds <= 0:
            raise ValueError("MFA_STEP_UP_TTL_SECONDS must be greater than 0.")

    @classmethod
    def from_env(cls) -> "TokenSettings":
        secret = os.getenv("JWT_SECRET", "").strip()
        raw_session_ttl = os.getenv("JWT_EXPIRES_MINUTES", str(DEFAULT_SESSION_TTL_MINUTES)).strip()
        raw_step_up_ttl = os.getenv("MFA_STEP_UP_TTL_SECONDS", str(DEFAULT_STEP_UP_TTL_SECONDS)).strip()
        try:
            session_ttl_minutes = int(raw_session_ttl)
            step_up_ttl_seconds = int(raw_step_up_ttl)
        except ValueError as exc:
            raise ValueError("JWT_EXPIRES_MINUTES and MFA_STEP_UP_TTL_SECONDS must be integer values.") from exc
        return cls(
            secret=secret,
            session_ttl_minutes=session_ttl_minutes,
            step_up_ttl_seconds=step_up_ttl_seconds,
        )


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class StepUpClaims:
    user_id: str
    bound_ip: str
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    """Mints and verifies signed bearer tokens. Verification never touches storage."""

    def __init__(self, settings: TokenSettings) -> None:
        self._settings = settings

    def _encode(self, claims: dict[str, Any], now: datetime | None, ttl: timedelta) -> str:
        issued_at = now or datetime.now(UTC)
        payload = {**claims, "iat": issued_at, "exp": issued_at + ttl}
        return jwt.encode(payload, self._settings.secret, algorithm=ALGORITHM)

    def _decode(self, token: str, expected_purpose: str) -> dict[str, Any]:
        if not token:
            raise TokenError("Access token required")
        try:
            payload = jwt.decode(
                token,
                self._settings.secret,
                algorithms=[ALGORITHM],
                options={"require": ["sub", "iat", "exp", "purpose"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenError("Token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenError("Invalid or expired token") from exc

        if payload.get("purpose") != expected_purpose:
            raise TokenError("Invalid or expired token")
        return payload

    def issue_session_token(self, *, user_id: str, email: str, now: datetime | None = None) -> str:
        return self._encode(
            {"sub": str(user_id), "email": email, "purpose": SESSION_PURPOSE},
            now,
            timedelta(minutes=self._settings.session_ttl_minutes),
        )

    def verify_session_token(self, token: str) -> SessionClaims:
        payload = self._decode(token, SESSION_PURPOSE)
        return SessionClaims(
            user_id=str(payload["sub"]),
            email=str(payload.get("email", "")),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=UTC),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=UTC),
        )

    def issue_step_up_token(self, *, user_id: str, bound_ip: str, now: datetime | None = None) -> str:
        return self._encode(
            {"sub": str(user_id), "purpose": STEP_UP_PURPOSE, "ip": bound_ip},
            now,
            timedelta(seconds=self._settings.step_up_ttl_seconds),
        )

    def verify_step_up_token(self, token: str) -> StepUpClaims:
        payload = self._decode(token, STEP_UP_PURPOSE)
        bound_ip = payload.get("ip")
        if not bound_ip:
            raise TokenError("Invalid or expired token")
        return StepUpClaims(
            user_id=str(payload["sub"]),
            bound_ip=str(bound_ip),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=UTC),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=UTC),
        )
