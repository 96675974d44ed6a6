from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import secrets
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode

from nullpass.logging import get_logger

logger = get_logger(__name__)

STEP_SECONDS = 30
DIGITS = 6


@dataclass(frozen=True)
class EnrollmentSecret:
    secret: str
    provisioning_uri: str


def qr_data_url(text: str) -> str:
    """Render ``text`` as a PNG QR code wrapped in a data URL."""
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=8, border=4)
    qr.add_data(text)
    qr.make(fit=True)
    buffer = io.BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


class TOTPVerifier:
    """RFC 6238 codes (HMAC-SHA1, 6 digits, 30 s steps) as authenticator apps expect."""

    def __init__(self, issuer: str = "Nullpass", window_steps: int = 2) -> None:
        self.issuer = issuer
        self.window_steps = window_steps

    @staticmethod
    def _decode_secret(secret: str) -> Optional[bytes]:
        cleaned = (secret or "").replace(" ", "").upper()
        if not cleaned:
            return None
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            return base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return None

    def code_at(self, secret: str, at: float) -> str:
        key = self._decode_secret(secret)
        if key is None:
            return ""
        counter = int(at // STEP_SECONDS).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**DIGITS
        )
        return str(code_int).zfill(DIGITS)

    def verify(
        self,
        secret: str,
        code: Optional[str],
        window_steps: Optional[int] = None,
        *,
        at: Optional[float] = None,
    ) -> bool:
        submitted = (code or "").strip().replace(" ", "")
        if len(submitted) != DIGITS or not (submitted.isascii() and submitted.isdigit()):
            return False
        if self._decode_secret(secret) is None:
            return False
        window = self.window_steps if window_steps is None else window_steps
        now = at if at is not None else time.time()
        matched = False
        # no early exit on match
        for offset in range(-window, window + 1):
            generated = self.code_at(secret, now + offset * STEP_SECONDS)
            if generated and hmac.compare_digest(generated.encode(), submitted.encode()):
                matched = True
        return matched

    def generate_secret(self, account_name: str) -> EnrollmentSecret:
        # 160 bits, the RFC 4226 recommended key length
        secret = base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")
        return EnrollmentSecret(secret=secret, provisioning_uri=self.provisioning_uri(secret, account_name))

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}", safe=":@")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": DIGITS,
                "period": STEP_SECONDS,
            }
        )
        return f"otpauth://totp/{label}?{query}"
