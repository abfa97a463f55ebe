from __future__ import annotations

import re

from loginguard.errors import ValidationError

MAX_EMAIL_LENGTH = 255
MIN_PASSWORD_LENGTH = 8

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_PATTERN = re.compile(r"^\+?\d{8,15}$")
_PHONE_FORMATTING = re.compile(r"[\s\-()]")


def normalize_email(email: str | None) -> str:
    normalized = (email or "").strip().lower()
    if not normalized:
        raise ValidationError("Email is required")
    if len(normalized) > MAX_EMAIL_LENGTH or not _EMAIL_PATTERN.match(normalized):
        raise ValidationError("Invalid email format")
    return normalized


def password_strength_errors(password: str | None) -> list[str]:
    if not password:
        return ["Password is required"]
    errors = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain an uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain a lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain a number")
    return errors


def normalize_phone_number(phone_number: str | None) -> str | None:
    if phone_number is None or not phone_number.strip():
        return None
    cleaned = _PHONE_FORMATTING.sub("", phone_number.strip())
    if not _PHONE_PATTERN.match(cleaned):
        raise ValidationError("Invalid phone number format")
    return cleaned


def normalize_mfa_code(code: str | None) -> str:
    normalized = (code or "").strip()
    if len(normalized) != 6 or not normalized.isdigit():
        raise ValidationError("MFA code must be a 6-digit number")
    return normalized
