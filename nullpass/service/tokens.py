from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional

from nullpass.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_duration(value: Optional[str]) -> int:
    """Parse ``<int><s|m|h|d>`` into seconds.

    Anything else (including zero) falls back to seven days.
    """
    match = _DURATION_RE.match((value or "").strip())
    if not match:
        logger.debug("token_ttl_fallback", value=value)
        return DEFAULT_TTL_SECONDS
    seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        logger.debug("token_ttl_fallback", value=value)
        return DEFAULT_TTL_SECONDS
    return seconds


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    email: str
    issued_at: int
    expires_at: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "email": self.email,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }


class TokenCodec:
    """Issues and verifies HS256 bearer tokens carrying ``{userId, email}``.

    ``verify`` never raises: every structural, cryptographic or expiry
    failure collapses to ``None`` so callers cannot tell the reasons apart.
    """

    def __init__(self, secret: str, expires_in: str = "7d") -> None:
        if not secret:
            raise ValueError("token secret is required")
        self._secret = secret.encode()
        self.ttl_seconds = parse_duration(expires_in)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, user_id: str, email: str, *, now: Optional[float] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            "userId": user_id,
            "email": email,
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
            # Distinguishes tokens minted for the same user within one second
            "jti": secrets.token_urlsafe(12),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: Optional[str], *, now: Optional[float] = None) -> Optional[TokenPayload]:
        if not token or not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.debug("token_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            return None
        if not isinstance(payload, dict):
            return None

        user_id = payload.get("userId")
        email = payload.get("email")
        if not isinstance(user_id, str) or not isinstance(email, str):
            return None
        try:
            issued_at = int(payload.get("iat", 0))
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        current = now if now is not None else time.time()
        if expires_at <= current:
            return None
        return TokenPayload(
            user_id=user_id, email=email, issued_at=issued_at, expires_at=expires_at
        )
