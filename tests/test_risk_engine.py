from __future__ import annotations

import unittest
from datetime import UTC, datetime
from unittest.mock import patch

from loginguard.audit import AuditTrailRecorder
from loginguard.models import GeoLocation, GeolocationProfile
from loginguard.risk_engine import (
    FraudEngineSettings,
    FraudRiskEngine,
    haversine_km,
    matches_trusted_location,
    nearest_trusted_distance_km,
)
from tests.fakes import (
    BERLIN,
    BOSTON,
    CHICAGO,
    LONDON,
    NEW_YORK,
    FakeGeolocationResolver,
    FakeSecurityEventRepository,
    MutableClock,
    located,
)

USER_ID = "user-1"


def _profile(place: dict, is_trusted: bool = True) -> GeolocationProfile:
    return GeolocationProfile(
        id=f"profile-{place['city']}",
        user_id=USER_ID,
        country_code=place["country_code"],
        city=place["city"],
        latitude=place["latitude"],
        longitude=place["longitude"],
        is_trusted=is_trusted,
        login_count=3,
        last_seen=None,
    )


class DistanceTests(unittest.TestCase):
    def test_haversine_known_distance(self) -> None:
        distance = haversine_km(NEW_YORK["latitude"], NEW_YORK["longitude"], LONDON["latitude"], LONDON["longitude"])
        self.assertAlmostEqual(distance, 5570, delta=15)

    def test_haversine_is_symmetric_and_zero_for_same_point(self) -> None:
        forward = haversine_km(52.52, 13.405, 40.7128, -74.006)
        backward = haversine_km(40.7128, -74.006, 52.52, 13.405)
        self.assertAlmostEqual(forward, backward, places=6)
        self.assertEqual(haversine_km(10.0, 20.0, 10.0, 20.0), 0.0)

    def test_antipodal_points_do_not_fail(self) -> None:
        distance = haversine_km(0.0, 0.0, 0.0, 180.0)
        self.assertAlmostEqual(distance, 20015, delta=5)

    def test_nearest_distance_ignores_profiles_without_coordinates(self) -> None:
        profiles = [
            _profile(NEW_YORK),
            GeolocationProfile(
                id="profile-x",
                user_id=USER_ID,
                country_code="DE",
                city=None,
                latitude=None,
                longitude=None,
                is_trusted=True,
                login_count=1,
                last_seen=None,
            ),
        ]
        distance = nearest_trusted_distance_km(located("81.2.69.142", BOSTON), profiles)
        self.assertAlmostEqual(distance, 306, delta=5)

    def test_nearest_distance_is_unknown_without_coordinates(self) -> None:
        location = GeoLocation(ip_address="81.2.69.142", country_code="FR", city="Paris")
        self.assertIsNone(nearest_trusted_distance_km(location, [_profile(NEW_YORK)]))

    def test_country_match_is_enough_when_city_unknown(self) -> None:
        location = GeoLocation(ip_address="81.2.69.142", country_code="US")
        self.assertTrue(matches_trusted_location(location, [_profile(NEW_YORK)]))
        self.assertFalse(matches_trusted_location(located("81.2.69.142", BOSTON), [_profile(NEW_YORK)]))


class FraudRiskEngineTests(unittest.IsolatedAsyncioTestCase):
    NYC_IP = "198.51.100.10"
    BOSTON_IP = "198.51.100.20"
    CHICAGO_IP = "198.51.100.30"
    BERLIN_IP = "81.2.69.142"

    def setUp(self) -> None:
        self.repository = FakeSecurityEventRepository()
        self.clock = MutableClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))
        self.geolocation = FakeGeolocationResolver(
            {
                self.NYC_IP: located(self.NYC_IP, NEW_YORK),
                self.BOSTON_IP: located(self.BOSTON_IP, BOSTON),
                self.CHICAGO_IP: located(self.CHICAGO_IP, CHICAGO),
                self.BERLIN_IP: located(self.BERLIN_IP, BERLIN),
            }
        )
        self.engine = self._engine()

    def _engine(self, timeout: float = 2.0) -> FraudRiskEngine:
        return FraudRiskEngine(
            self.repository,
            self.geolocation,
            AuditTrailRecorder(self.repository, clock=self.clock),
            settings=FraudEngineSettings(check_timeout_seconds=timeout),
            clock=self.clock,
        )

    async def _login(self, ip_address: str, success: bool = True, user_id: str | None = USER_ID):
        return await self.engine.evaluate_login(
            user_id=user_id,
            ip_address=ip_address,
            user_agent="pytest-agent",
            success=success,
        )

    async def test_first_login_seeds_trusted_profile_without_flags(self) -> None:
        findings = await self._login(self.NYC_IP)

        self.assertEqual(findings, [])
        self.assertEqual(len(self.repository.profiles), 1)
        self.assertTrue(self.repository.profiles[0]["is_trusted"])
        self.assertEqual(self.repository.profiles[0]["city"], "New York")
        self.assertEqual(self.repository.login_attempts[0]["geolocation_data"]["country_code"], "US")

    async def test_login_from_other_continent_is_flagged_severe(self) -> None:
        await self._login(self.NYC_IP)
        self.clock.advance(minutes=10)

        findings = await self._login(self.BERLIN_IP)

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].severity, 4)
        self.assertEqual(findings[0].reason, "Unusual geolocation: Berlin, DE")
        self.assertTrue(findings[0].metadata["distance"].endswith(" km"))
        self.assertEqual(len(self.repository.fraud_flags), 1)
        self.assertEqual(self.repository.fraud_flags[0]["ip_address"], self.BERLIN_IP)
        self.assertIn("FRAUD_FLAGGED", self.repository.actions())
        berlin = [row for row in self.repository.profiles if row["city"] == "Berlin"]
        self.assertFalse(berlin[0]["is_trusted"])

    async def test_moderately_distant_login_is_flagged_low(self) -> None:
        await self._login(self.NYC_IP)
        self.clock.advance(minutes=10)

        findings = await self._login(self.CHICAGO_IP)

        self.assertEqual([finding.severity for finding in findings], [2])

    async def test_nearby_city_is_not_flagged(self) -> None:
        await self._login(self.NYC_IP)
        self.clock.advance(minutes=10)

        self.assertEqual(await self._login(self.BOSTON_IP), [])

    async def test_unknown_distance_is_flagged_low(self) -> None:
        self.geolocation.locations["192.0.2.44"] = GeoLocation(ip_address="192.0.2.44", country_code="FR", city="Paris")
        await self._login(self.NYC_IP)
        self.clock.advance(minutes=10)

        findings = await self._login("192.0.2.44")

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].severity, 2)
        self.assertEqual(findings[0].metadata["distance"], "Unknown")

    async def test_third_distinct_ip_within_hour_is_flagged(self) -> None:
        self.assertEqual(await self._login("192.0.2.1"), [])
        self.clock.advance(minutes=10)
        self.assertEqual(await self._login("192.0.2.2"), [])
        self.clock.advance(minutes=10)

        findings = await self._login("192.0.2.3")

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].severity, 2)
        self.assertEqual(findings[0].metadata["ip_count"], 3)

    async def test_ips_outside_window_are_ignored(self) -> None:
        await self._login("192.0.2.1")
        await self._login("192.0.2.2")
        self.clock.advance(minutes=61)

        self.assertEqual(await self._login("192.0.2.3"), [])

    async def test_sixth_login_within_five_minutes_is_rapid(self) -> None:
        for _ in range(5):
            self.assertEqual(await self._login("192.0.2.1"), [])
            self.clock.advance(seconds=20)

        findings = await self._login("192.0.2.1")

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].severity, 3)
        self.assertEqual(findings[0].reason, "Rapid successive logins detected (potential automated attack)")

    async def test_third_failure_within_window_is_flagged(self) -> None:
        self.assertEqual(await self._login("192.0.2.1", success=False), [])
        self.assertEqual(await self._login("192.0.2.1", success=False), [])

        findings = await self._login("192.0.2.1", success=False)

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].severity, 3)
        self.assertEqual(findings[0].metadata["failed_attempts"], 3)

    async def test_old_failures_do_not_count(self) -> None:
        await self._login("192.0.2.1", success=False)
        await self._login("192.0.2.1", success=False)
        self.clock.advance(minutes=16)

        self.assertEqual(await self._login("192.0.2.1", success=False), [])

    async def test_unknown_account_is_recorded_without_analysis(self) -> None:
        findings = await self._login(self.BERLIN_IP, success=False, user_id=None)

        self.assertEqual(findings, [])
        self.assertEqual(len(self.repository.login_attempts), 1)
        self.assertIsNone(self.repository.login_attempts[0]["user_id"])
        self.assertEqual(self.repository.fraud_flags, [])

    async def test_repeated_location_is_promoted_to_trusted(self) -> None:
        await self._login(self.NYC_IP)
        for expected_count in (1, 2):
            self.clock.advance(minutes=30)
            await self._login(self.BOSTON_IP)
            boston = next(row for row in self.repository.profiles if row["city"] == "Boston")
            self.assertEqual(boston["login_count"], expected_count)
            self.assertFalse(boston["is_trusted"])

        self.clock.advance(minutes=30)
        await self._login(self.BOSTON_IP)

        boston = next(row for row in self.repository.profiles if row["city"] == "Boston")
        self.assertEqual(boston["login_count"], 3)
        self.assertTrue(boston["is_trusted"])

    async def test_distant_location_flags_until_promoted(self) -> None:
        await self._login(self.NYC_IP)
        severities = []
        for _ in range(4):
            self.clock.advance(minutes=30)
            findings = await self._login(self.BERLIN_IP)
            severities.append([finding.severity for finding in findings])

        # The third Berlin login promotes Berlin but was judged while it was untrusted.
        self.assertEqual(severities, [[4], [4], [4], []])
        berlin = next(row for row in self.repository.profiles if row["city"] == "Berlin")
        self.assertEqual(berlin["login_count"], 4)
        self.assertTrue(berlin["is_trusted"])

    async def test_promoting_login_is_judged_on_prior_trust_regardless_of_timing(self) -> None:
        await self._login(self.NYC_IP)
        for _ in range(2):
            self.clock.advance(minutes=30)
            await self._login(self.BERLIN_IP)

        self.repository.delays["list_trusted_profiles"] = 0.3
        self.clock.advance(minutes=30)
        findings = await self._login(self.BERLIN_IP)

        self.assertEqual([finding.severity for finding in findings], [4])
        berlin = next(row for row in self.repository.profiles if row["city"] == "Berlin")
        self.assertTrue(berlin["is_trusted"])

    async def test_unreadable_trusted_locations_skip_location_checks(self) -> None:
        await self._login(self.NYC_IP)
        self.clock.advance(minutes=10)
        self.repository.fail_on.add("list_trusted_profiles")

        findings = await self._login(self.BERLIN_IP)

        self.assertEqual(findings, [])
        self.assertEqual([row["city"] for row in self.repository.profiles], ["New York"])
        self.assertEqual(len(self.repository.login_attempts), 2)

    async def test_geolocation_timeout_does_not_block_recording(self) -> None:
        self.geolocation.delay = 1.0
        self.engine = self._engine(timeout=0.05)

        findings = await self._login(self.BERLIN_IP)

        self.assertEqual(findings, [])
        self.assertEqual(len(self.repository.login_attempts), 1)
        self.assertIsNotNone(self.repository.login_attempts[0]["geolocation_data"]["error"])
        self.assertEqual(self.repository.profiles, [])

    async def test_failing_check_does_not_suppress_others(self) -> None:
        await self._login(self.NYC_IP)
        self.clock.advance(minutes=10)
        self.repository.fail_on.add("list_successful_login_ips")

        findings = await self._login(self.BERLIN_IP)

        self.assertEqual([finding.severity for finding in findings], [4])

    async def test_slow_check_times_out_independently(self) -> None:
        await self._login(self.NYC_IP)
        self.clock.advance(minutes=10)
        self.repository.delays["count_login_attempts"] = 0.5
        self.engine = self._engine(timeout=0.2)

        findings = await self._login(self.BERLIN_IP)

        self.assertEqual([finding.severity for finding in findings], [4])

    async def test_attempt_write_failure_still_runs_checks(self) -> None:
        await self._login(self.NYC_IP)
        self.clock.advance(minutes=10)
        self.repository.fail_on.add("insert_login_attempt")

        findings = await self._login(self.BERLIN_IP)

        self.assertEqual(len(findings), 1)

    async def test_unexpected_error_is_audited_not_raised(self) -> None:
        with patch.object(self.engine, "_evaluate", side_effect=RuntimeError("boom")):
            findings = await self._login(self.NYC_IP)

        self.assertEqual(findings, [])
        self.assertEqual(self.repository.actions(), ["FRAUD_DETECTION_ERROR"])
        self.assertEqual(self.repository.audit_entries[0]["response_status"], 500)

    async def test_alerts_and_history_are_newest_first(self) -> None:
        await self._login(self.NYC_IP)
        self.clock.advance(minutes=10)
        await self._login(self.BERLIN_IP)

        alerts = self.engine.get_fraud_alerts(USER_ID, limit=10)
        history = self.engine.get_login_history(USER_ID, limit=1)

        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0]["severity"], 4)
        self.assertEqual([row["ip_address"] for row in history], [self.BERLIN_IP])


if __name__ == "__main__":
    unittest.main()
