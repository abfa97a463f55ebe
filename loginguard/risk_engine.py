from __future__ import annotations

import asyncio
import logging
import math
import os
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from loginguard.audit import AuditTrailRecorder
from loginguard.geolocation import GeolocationResolver
from loginguard.models import FraudFinding, GeoLocation, GeolocationProfile
from loginguard.repository import SecurityEventRepository

EARTH_RADIUS_KM = 6371.0

FAILED_ATTEMPT_WINDOW = timedelta(minutes=15)
FAILED_ATTEMPT_THRESHOLD = 3
MULTIPLE_IP_WINDOW = timedelta(hours=1)
MULTIPLE_IP_LIMIT = 2
RAPID_LOGIN_WINDOW = timedelta(minutes=5)
RAPID_LOGIN_LIMIT = 5
UNUSUAL_DISTANCE_KM = 1000.0
SEVERE_DISTANCE_KM = 5000.0
TRUST_PROMOTION_LOGIN_COUNT = 3

DEFAULT_CHECK_TIMEOUT_SECONDS = 10.0

T = TypeVar("T")
logger = logging.getLogger("loginguard.risk_engine")


@dataclass(frozen=True)
class FraudEngineSettings:
    check_timeout_seconds: float = DEFAULT_CHECK_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.check_timeout_seconds <= 0:
            raise ValueError("FRAUD_CHECK_TIMEOUT_SECONDS must be greater than 0.")

    @classmethod
    def from_env(cls) -> "FraudEngineSettings":
        raw_timeout = os.getenv("FRAUD_CHECK_TIMEOUT_SECONDS", str(DEFAULT_CHECK_TIMEOUT_SECONDS)).strip()
        try:
            timeout = float(raw_timeout)
        except ValueError as exc:
            raise ValueError("FRAUD_CHECK_TIMEOUT_SECONDS must be numeric.") from exc
        return cls(check_timeout_seconds=timeout)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    # Float rounding can push `a` just outside [0, 1] near antipodal points.
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def nearest_trusted_distance_km(location: GeoLocation, profiles: list[GeolocationProfile]) -> float | None:
    if not location.has_coordinates:
        return None
    distances = [
        haversine_km(location.latitude, location.longitude, profile.latitude, profile.longitude)
        for profile in profiles
        if profile.latitude is not None and profile.longitude is not None
    ]
    return min(distances) if distances else None


def matches_trusted_location(location: GeoLocation, profiles: list[GeolocationProfile]) -> bool:
    return any(
        profile.country_code == location.country_code and (not location.city or profile.city == location.city)
        for profile in profiles
    )


class FraudRiskEngine:
    """Best-effort heuristic scoring of login events.

    ``evaluate_login`` is meant to run after the client already has its
    response. Every storage, geolocation or check failure is logged and
    absorbed; nothing raised here reaches the login transaction.
    """

    def __init__(
        self,
        repository: SecurityEventRepository,
        geolocation: GeolocationResolver,
        audit: AuditTrailRecorder,
        settings: FraudEngineSettings | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._repository = repository
        self._geolocation = geolocation
        self._audit = audit
        self._settings = settings or FraudEngineSettings()
        self._clock = clock

    @staticmethod
    async def _run(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    async def evaluate_login(
        self,
        *,
        user_id: str | None,
        ip_address: str,
        user_agent: str | None,
        success: bool,
    ) -> list[FraudFinding]:
        try:
            return await self._evaluate(user_id, ip_address, user_agent, success)
        except Exception as exc:
            logger.exception("fraud_detection_error user_id=%s ip=%s success=%s", user_id, ip_address, success)
            await self._run(
                self._audit.record,
                user_id,
                "FRAUD_DETECTION_ERROR",
                "fraud",
                user_id,
                ip_address,
                user_agent,
                {"error": str(exc)},
                500,
            )
            return []

    async def _evaluate(
        self,
        user_id: str | None,
        ip_address: str,
        user_agent: str | None,
        success: bool,
    ) -> list[FraudFinding]:
        now = self._clock()
        location = await self._resolve_location(ip_address)
        await self._record_attempt(user_id, ip_address, user_agent, success, location, now)

        if user_id is None:
            return []

        if not success:
            finding = await self._guarded("failed_attempts", self._check_failed_attempts(user_id, now))
            findings = [finding] if finding else []
        else:
            findings = await self._run_success_checks(user_id, location, now)

        for finding in findings:
            await self._raise_flag(user_id, ip_address, finding, now)
        return findings

    async def _resolve_location(self, ip_address: str) -> GeoLocation:
        try:
            return await asyncio.wait_for(
                self._geolocation.resolve(ip_address),
                timeout=self._settings.check_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("geolocation_unavailable ip=%s error=%s", ip_address, str(exc) or type(exc).__name__)
            return GeoLocation(ip_address=ip_address, error=str(exc) or type(exc).__name__)

    async def _record_attempt(
        self,
        user_id: str | None,
        ip_address: str,
        user_agent: str | None,
        success: bool,
        location: GeoLocation,
        now: datetime,
    ) -> None:
        try:
            await self._run(
                self._repository.insert_login_attempt,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=success,
                location=location,
                timestamp=now,
            )
        except Exception:
            logger.exception("login_attempt_record_failed user_id=%s ip=%s success=%s", user_id, ip_address, success)

    async def _guarded(self, name: str, check: Coroutine[Any, Any, T]) -> T | None:
        try:
            return await asyncio.wait_for(check, timeout=self._settings.check_timeout_seconds)
        except Exception as exc:
            logger.warning("fraud_check_failed check=%s error=%s", name, str(exc) or type(exc).__name__)
            return None

    async def _run_success_checks(self, user_id: str, location: GeoLocation, now: datetime) -> list[FraudFinding]:
        trusted = None
        if location.country_code:
            # Both location decisions judge this login against trust as it stood before it.
            trusted = await self._guarded(
                "trusted_locations",
                self._run(self._repository.list_trusted_profiles, user_id),
            )

        checks: dict[str, Coroutine[Any, Any, FraudFinding | None]] = {
            "multiple_ips": self._check_multiple_ips(user_id, now),
        }
        if trusted is not None:
            checks["unusual_location"] = self._check_unusual_location(location, trusted)
        checks["rapid_logins"] = self._check_rapid_logins(user_id, now)
        if trusted is not None:
            checks["profile_update"] = self._update_geolocation_profile(user_id, location, trusted, now)

        results = await asyncio.gather(
            *(asyncio.wait_for(check, timeout=self._settings.check_timeout_seconds) for check in checks.values()),
            return_exceptions=True,
        )

        findings: list[FraudFinding] = []
        for name, result in zip(checks, results):
            if isinstance(result, Exception):
                logger.warning(
                    "fraud_check_failed check=%s user_id=%s error=%s",
                    name,
                    user_id,
                    str(result) or type(result).__name__,
                )
                continue
            if isinstance(result, FraudFinding):
                findings.append(result)
        return findings

    async def _check_failed_attempts(self, user_id: str, now: datetime) -> FraudFinding | None:
        count = await self._run(
            self._repository.count_login_attempts,
            user_id=user_id,
            success=False,
            since=now - FAILED_ATTEMPT_WINDOW,
        )
        if count < FAILED_ATTEMPT_THRESHOLD:
            return None
        return FraudFinding(
            reason="Multiple failed login attempts within 15 minutes",
            severity=3,
            metadata={"failed_attempts": count, "time_window": "15 minutes"},
        )

    async def _check_multiple_ips(self, user_id: str, now: datetime) -> FraudFinding | None:
        ip_addresses = await self._run(
            self._repository.list_successful_login_ips,
            user_id=user_id,
            since=now - MULTIPLE_IP_WINDOW,
        )
        if len(ip_addresses) <= MULTIPLE_IP_LIMIT:
            return None
        return FraudFinding(
            reason="Multiple IP addresses used in short time period",
            severity=2,
            metadata={"ip_count": len(ip_addresses), "time_window": "1 hour", "ip_addresses": ip_addresses},
        )

    async def _check_unusual_location(
        self,
        location: GeoLocation,
        trusted: list[GeolocationProfile],
    ) -> FraudFinding | None:
        # First known location; the profile update trusts it.
        if not trusted:
            return None
        if matches_trusted_location(location, trusted):
            return None

        distance = nearest_trusted_distance_km(location, trusted)
        if distance is not None and distance <= UNUSUAL_DISTANCE_KM:
            return None

        severity = 4 if distance is not None and distance > SEVERE_DISTANCE_KM else 2
        return FraudFinding(
            reason=f"Unusual geolocation: {location.city or 'Unknown'}, {location.country_code}",
            severity=severity,
            metadata={
                "country": location.country_code,
                "city": location.city,
                "distance": f"{distance:.2f} km" if distance is not None else "Unknown",
            },
        )

    async def _check_rapid_logins(self, user_id: str, now: datetime) -> FraudFinding | None:
        count = await self._run(
            self._repository.count_login_attempts,
            user_id=user_id,
            success=True,
            since=now - RAPID_LOGIN_WINDOW,
        )
        if count <= RAPID_LOGIN_LIMIT:
            return None
        return FraudFinding(
            reason="Rapid successive logins detected (potential automated attack)",
            severity=3,
            metadata={"login_count": count, "time_window": "5 minutes"},
        )

    async def _update_geolocation_profile(
        self,
        user_id: str,
        location: GeoLocation,
        trusted: list[GeolocationProfile],
        now: datetime,
    ) -> None:
        existing = await self._run(
            self._repository.get_profile,
            user_id=user_id,
            country_code=location.country_code,
            city=location.city,
        )
        if existing is not None:
            login_count = existing.login_count + 1
            is_trusted = existing.is_trusted or login_count >= TRUST_PROMOTION_LOGIN_COUNT or not trusted
            await self._run(
                self._repository.update_profile,
                profile_id=existing.id,
                login_count=login_count,
                is_trusted=is_trusted,
                seen_at=now,
            )
            return None

        await self._run(
            self._repository.insert_profile,
            user_id=user_id,
            location=location,
            is_trusted=not trusted,
            seen_at=now,
        )
        return None

    async def _raise_flag(self, user_id: str, ip_address: str, finding: FraudFinding, now: datetime) -> None:
        try:
            await self._run(
                self._repository.insert_fraud_flag,
                user_id=user_id,
                reason=finding.reason,
                severity=finding.severity,
                ip_address=ip_address,
                metadata=finding.metadata,
                detected_at=now,
            )
        except Exception:
            logger.exception("fraud_flag_write_failed user_id=%s reason=%s", user_id, finding.reason)
            return

        logger.warning(
            "fraud_flagged user_id=%s ip=%s severity=%s reason=%s",
            user_id,
            ip_address,
            finding.severity,
            finding.reason,
        )
        await self._run(
            self._audit.record,
            user_id,
            "FRAUD_FLAGGED",
            "fraud",
            user_id,
            ip_address,
            None,
            {"reason": finding.reason, "severity": finding.severity, "metadata": finding.metadata},
            200,
        )

    def get_fraud_alerts(self, user_id: str, limit: int = 10, offset: int = 0) -> list[dict[str, Any]]:
        return self._repository.list_fraud_flags(user_id=user_id, limit=limit, offset=offset)

    def get_login_history(self, user_id: str, limit: int = 10, offset: int = 0) -> list[dict[str, Any]]:
        return self._repository.list_login_history(user_id=user_id, limit=limit, offset=offset)
