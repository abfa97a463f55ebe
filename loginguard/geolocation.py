from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass

import httpx

from loginguard.models import GeoLocation

DEFAULT_GEOLOCATION_API_URL = "http://ip-api.com/json"
DEFAULT_GEOLOCATION_TIMEOUT_SECONDS = 5.0
GEOLOCATION_FIELDS = "status,countryCode,city,lat,lon"
logger = logging.getLogger("loginguard.geolocation")


@dataclass(frozen=True)
class GeolocationConfig:
    api_url: str = DEFAULT_GEOLOCATION_API_URL
    timeout_seconds: float = DEFAULT_GEOLOCATION_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("GEOLOCATION_TIMEOUT_SECONDS must be greater than 0.")

    @classmethod
    def from_env(cls) -> "GeolocationConfig":
        api_url = os.getenv("GEOLOCATION_API_URL", DEFAULT_GEOLOCATION_API_URL).strip().rstrip("/")
        raw_timeout = os.getenv("GEOLOCATION_TIMEOUT_SECONDS", str(DEFAULT_GEOLOCATION_TIMEOUT_SECONDS)).strip()
        try:
            timeout_seconds = float(raw_timeout)
        except ValueError as exc:
            raise ValueError("GEOLOCATION_TIMEOUT_SECONDS must be numeric.") from exc
        return cls(api_url=api_url or DEFAULT_GEOLOCATION_API_URL, timeout_seconds=timeout_seconds)


def is_local_address(ip_address: str) -> bool:
    try:
        parsed = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        return False
    # IPv4-mapped IPv6 (::ffff:10.0.0.1) is what dual-stack servers report.
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped is not None:
        parsed = parsed.ipv4_mapped
    return parsed.is_private or parsed.is_loopback or parsed.is_link_local


class GeolocationResolver:
    """Looks up coarse location for an IP; never raises, degrades to an empty result."""

    def __init__(self, config: GeolocationConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport

    async def resolve(self, ip_address: str) -> GeoLocation:
        if is_local_address(ip_address):
            return GeoLocation(ip_address=ip_address, is_local=True)

        url = f"{self._config.api_url}/{ip_address}"
        try:
            async with httpx.AsyncClient(timeout=self._config.timeout_seconds, transport=self._transport) as client:
                response = await client.get(url, params={"fields": GEOLOCATION_FIELDS})
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geolocation_lookup_failed ip=%s error=%s", ip_address, str(exc) or type(exc).__name__)
            return GeoLocation(ip_address=ip_address, error=str(exc) or type(exc).__name__)

        if not isinstance(data, dict) or data.get("status") != "success":
            return GeoLocation(ip_address=ip_address)

        return GeoLocation(
            ip_address=ip_address,
            country_code=data.get("countryCode") or None,
            city=data.get("city") or None,
            latitude=_coordinate(data.get("lat")),
            longitude=_coordinate(data.get("lon")),
        )


def _coordinate(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
