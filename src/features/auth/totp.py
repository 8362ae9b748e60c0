"""TOTP (RFC 6238) two-factor codes and enrollment."""

import base64
import hmac
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Protocol

import pyotp
import qrcode

from src.shared.clock import Clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TotpEnrollment:
    """Freshly generated secret and its otpauth:// provisioning URI."""

    secret: str
    provisioning_uri: str


class QrEncoder(Protocol):
    """Renders text as a QR code image URL."""

    def encode(self, data: str) -> str: ...


class PngQrEncoder:
    """QR encoder producing ``data:image/png;base64,...`` URLs."""

    def encode(self, data: str) -> str:
        img = qrcode.make(data)
        buf = BytesIO()
        img.save(buf)
        return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class TotpHandler:
    """Validates six-digit, 30 second, SHA-1 codes against a base32 secret.

    A code is accepted for time steps ``counter - window .. counter + window``
    where ``counter`` is derived from the injected clock.
    """

    def __init__(self, clock: Clock, issuer: str) -> None:
        self._clock = clock
        self._issuer = issuer

    def match_step(self, secret: str, code: str, window_steps: int = 1) -> int | None:
        """Return the time step ``code`` belongs to, or None if it matches none."""
        code = code.strip() if code else ""
        if len(code) != 6 or not code.isdigit():
            return None

        try:
            totp = pyotp.TOTP(secret)
            counter = totp.timecode(self._clock.now())
            for step in range(counter - window_steps, counter + window_steps + 1):
                if hmac.compare_digest(totp.generate_otp(step), code):
                    return step
        except (ValueError, TypeError):
            # Malformed base32 secret
            logger.error("Stored TOTP secret could not be decoded")

        return None

    def verify_code(self, secret: str, code: str, window_steps: int = 1) -> bool:
        """Check a code; never raises."""
        return self.match_step(secret, code, window_steps) is not None

    def generate_secret(self, account_name: str) -> TotpEnrollment:
        secret = pyotp.random_base32(length=32)
        uri = pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=self._issuer)
        return TotpEnrollment(secret=secret, provisioning_uri=uri)

    def current_code(self, secret: str) -> str:
        """Code for the current time step."""
        return pyotp.TOTP(secret).at(self._clock.now())
