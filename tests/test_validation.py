from __future__ import annotations

import unittest

from loginguard.errors import ValidationError
from loginguard.rate_limit import InMemoryRateLimiter, RateLimitSettings
from loginguard.validation import (
    normalize_email,
    normalize_mfa_code,
    normalize_phone_number,
    password_strength_errors,
)


class ValidationTests(unittest.TestCase):
    def test_email_is_trimmed_and_lowercased(self) -> None:
        self.assertEqual(normalize_email("  User@Example.COM "), "user@example.com")

    def test_invalid_emails_are_rejected(self) -> None:
        for email in ("", None, "no-at-sign", "user@host", "a b@example.com"):
            with self.assertRaises(ValidationError):
                normalize_email(email)

    def test_password_policy(self) -> None:
        self.assertEqual(password_strength_errors("Str0ngPass"), [])
        self.assertEqual(password_strength_errors(""), ["Password is required"])
        errors = password_strength_errors("short")
        self.assertIn("Password must be at least 8 characters", errors)
        self.assertIn("Password must contain an uppercase letter", errors)
        self.assertIn("Password must contain a number", errors)

    def test_phone_number_is_optional_and_cleaned(self) -> None:
        self.assertIsNone(normalize_phone_number(None))
        self.assertIsNone(normalize_phone_number("   "))
        self.assertEqual(normalize_phone_number("+44 20 7946-0958"), "+442079460958")
        with self.assertRaises(ValidationError):
            normalize_phone_number("555-12")

    def test_mfa_code_must_be_six_digits(self) -> None:
        self.assertEqual(normalize_mfa_code(" 012345 "), "012345")
        for code in ("", "12345", "1234567", "12a456"):
            with self.assertRaises(ValidationError):
                normalize_mfa_code(code)


class InMemoryRateLimiterTests(unittest.TestCase):
    def test_limit_and_window_reset(self) -> None:
        now = [1000.0]
        limiter = InMemoryRateLimiter(RateLimitSettings(requests=2, window_seconds=60), clock=lambda: now[0])

        self.assertIsNone(limiter.hit("login:1.2.3.4"))
        self.assertIsNone(limiter.hit("login:1.2.3.4"))
        self.assertEqual(limiter.hit("login:1.2.3.4"), 60)
        self.assertIsNone(limiter.hit("login:5.6.7.8"))

        now[0] += 61
        self.assertIsNone(limiter.hit("login:1.2.3.4"))

    def test_idle_clients_are_forgotten(self) -> None:
        now = [1000.0]
        limiter = InMemoryRateLimiter(RateLimitSettings(requests=5, window_seconds=60), clock=lambda: now[0])
        for index in range(3):
            limiter.hit(f"login:10.0.0.{index}")
        self.assertEqual(limiter.tracked_keys, 3)

        now[0] += 30
        limiter.hit("login:10.0.0.9")
        self.assertEqual(limiter.tracked_keys, 4)

        now[0] += 45
        limiter.hit("login:10.0.0.9")
        self.assertEqual(limiter.tracked_keys, 1)


if __name__ == "__main__":
    unittest.main()
