from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def parse_iso_datetime(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        normalized = value.replace("Z", "+00:00")
        parsed = datetime.fromisoformat(normalized)
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    raise ValueError("Datetime value is invalid.")


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


@dataclass(frozen=True)
class Account:
    id: str
    email: str
    password_hash: str
    mfa_secret: str | None = None
    failed_login_attempts: int = 0
    account_locked_until: datetime | None = None
    last_login_at: datetime | None = None
    phone_number: str | None = None
    created_at: datetime | None = None

    @property
    def mfa_enabled(self) -> bool:
        return bool(self.mfa_secret)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Account":
        return cls(
            id=str(row["id"]),
            email=str(row["email"]),
            password_hash=str(row["password_hash"]),
            mfa_secret=row.get("mfa_secret") or None,
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            account_locked_until=parse_iso_datetime(row.get("account_locked_until")),
            last_login_at=parse_iso_datetime(row.get("last_login_at")),
            phone_number=row.get("phone_number"),
            created_at=parse_iso_datetime(row.get("created_at")),
        )


@dataclass(frozen=True)
class GeoLocation:
    ip_address: str
    country_code: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    is_local: bool = False
    error: str | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def snapshot(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ip_address": self.ip_address,
            "country_code": self.country_code,
            "city": self.city,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "is_local": self.is_local,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class GeolocationProfile:
    id: str
    user_id: str
    country_code: str
    city: str | None
    latitude: float | None
    longitude: float | None
    is_trusted: bool
    login_count: int
    last_seen: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "GeolocationProfile":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            country_code=str(row["country_code"]),
            city=row.get("city"),
            latitude=_optional_float(row.get("latitude")),
            longitude=_optional_float(row.get("longitude")),
            is_trusted=bool(row.get("is_trusted", False)),
            login_count=int(row.get("login_count") or 0),
            last_seen=parse_iso_datetime(row.get("last_seen")),
        )


@dataclass(frozen=True)
class FraudFinding:
    reason: str
    severity: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 1 <= self.severity <= 5:
            raise ValueError("Fraud flag severity must be between 1 and 5.")
