from __future__ import annotations

import base64
import unittest
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

from loginguard import mfa


class MfaTests(unittest.TestCase):
    def test_enrollment_produces_secret_uri_and_qr(self) -> None:
        enrollment = mfa.enroll("user@example.com", mfa.MfaSettings(issuer="Secure Banking System"))

        base64.b32decode(enrollment.secret)
        uri = urlparse(enrollment.provisioning_uri)
        self.assertEqual(uri.scheme, "otpauth")
        self.assertEqual(uri.netloc, "totp")
        query = parse_qs(uri.query)
        self.assertEqual(query["secret"], [enrollment.secret])
        self.assertEqual(query["issuer"], ["Secure Banking System"])
        self.assertTrue(enrollment.qr_code.startswith("data:image/svg+xml;base64,"))
        svg = base64.b64decode(enrollment.qr_code.split(",", 1)[1])
        self.assertIn(b"<svg", svg)

    def test_code_accepted_within_one_step_window(self) -> None:
        secret = mfa.generate_secret()
        now = datetime(2026, 3, 1, 12, 0, 15, tzinfo=UTC)

        self.assertTrue(mfa.verify_code(secret, mfa.current_code(secret, now), now=now))
        previous_step = mfa.current_code(secret, now - timedelta(seconds=30))
        self.assertTrue(mfa.verify_code(secret, previous_step, now=now))

    def test_code_outside_window_is_rejected(self) -> None:
        secret = mfa.generate_secret()
        now = datetime(2026, 3, 1, 12, 0, 15, tzinfo=UTC)
        stale = mfa.current_code(secret, now - timedelta(seconds=90))

        self.assertFalse(mfa.verify_code(secret, stale, now=now))

    def test_malformed_codes_are_rejected(self) -> None:
        secret = mfa.generate_secret()
        for code in ("", "12345", "1234567", "12a456", None):
            self.assertFalse(mfa.verify_code(secret, code, now=datetime.now(UTC)))


if __name__ == "__main__":
    unittest.main()
