from __future__ import annotations

import base64
import io
import os
from dataclasses import dataclass
from datetime import datetime

import pyotp
import qrcode
from qrcode.image.svg import SvgPathImage

TOTP_INTERVAL_SECONDS = 30
TOTP_DIGITS = 6
TOTP_VALID_WINDOW = 1
DEFAULT_MFA_ISSUER = "Secure Banking System"


@dataclass(frozen=True)
class MfaSettings:
    issuer: str = DEFAULT_MFA_ISSUER

    @classmethod
    def from_env(cls) -> "MfaSettings":
        issuer = os.getenv("MFA_ISSUER", DEFAULT_MFA_ISSUER).strip() or DEFAULT_MFA_ISSUER
        return cls(issuer=issuer)


@dataclass(frozen=True)
class MfaEnrollment:
    secret: str
    provisioning_uri: str
    qr_code: str


def _totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL_SECONDS)


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, email: str, issuer: str = DEFAULT_MFA_ISSUER) -> str:
    return _totp(secret).provisioning_uri(name=email, issuer_name=issuer)


def render_qr_data_url(uri: str) -> str:
    """Encode the provisioning URI as an SVG QR code wrapped in a data URL."""
    image = qrcode.make(uri, image_factory=SvgPathImage)
    buffer = io.BytesIO()
    image.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def enroll(email: str, settings: MfaSettings) -> MfaEnrollment:
    secret = generate_secret()
    uri = provisioning_uri(secret, email, settings.issuer)
    return MfaEnrollment(secret=secret, provisioning_uri=uri, qr_code=render_qr_data_url(uri))


def current_code(secret: str, now: datetime | None = None) -> str:
    totp = _totp(secret)
    return totp.at(now) if now is not None else totp.now()


def verify_code(secret: str, code: str, now: datetime | None = None) -> bool:
    normalized = (code or "").strip()
    if len(normalized) != TOTP_DIGITS or not normalized.isdigit():
        return False
    return _totp(secret).verify(normalized, for_time=now, valid_window=TOTP_VALID_WINDOW)
