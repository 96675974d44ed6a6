from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from nullpass.logging import get_logger, log_auth_denial
from nullpass.service.tokens import TokenCodec, TokenPayload
from nullpass.storage.common import IdentityStore

logger = get_logger(__name__)


class DenyReason(str, Enum):
    """Internal denial reasons; logged, never returned to callers."""

    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    NO_SESSION = "no_session"
    SESSION_EXPIRED = "session_expired"
    USER_MISMATCH = "user_mismatch"
    STORE_ERROR = "store_error"


@dataclass(frozen=True)
class AuthDecision:
    allowed: bool
    status_code: int = 200
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    token: Optional[TokenPayload] = None
    reason: Optional[DenyReason] = None
    system: bool = False

    @classmethod
    def deny(cls, reason: DenyReason) -> "AuthDecision":
        status = 500 if reason is DenyReason.STORE_ERROR else 401
        return cls(allowed=False, status_code=status, reason=reason)


SYSTEM_PRINCIPAL = AuthDecision(allowed=True, system=True)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthorizationGuard:
    """Validates a bearer token against its backing session row.

    Every 401 outcome is indistinguishable to the caller; only a storage
    failure yields a different (500) decision.
    """

    def __init__(
        self,
        store: IdentityStore,
        codec: TokenCodec,
        *,
        internal_secret: Optional[str] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self._internal_secret = internal_secret or None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def is_internal(self, presented: Optional[str]) -> bool:
        """True when ``presented`` matches the configured internal secret."""
        if not self._internal_secret or not presented:
            return False
        return hmac.compare_digest(presented.encode(), self._internal_secret.encode())

    def authorize(self, authorization: Optional[str]) -> AuthDecision:
        token = extract_bearer(authorization)
        if token is None:
            return self._deny(DenyReason.MISSING_TOKEN)
        payload = self.codec.verify(token)
        if payload is None:
            return self._deny(DenyReason.INVALID_TOKEN)
        try:
            session = self.store.get_session_by_token(token)
        except Exception as exc:
            logger.error(
                "auth_session_lookup_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return AuthDecision.deny(DenyReason.STORE_ERROR)
        if session is None:
            return self._deny(DenyReason.NO_SESSION, user_id=payload.user_id)
        if session.expires_at < self._now():
            return self._deny(DenyReason.SESSION_EXPIRED, user_id=payload.user_id)
        if session.user_id != payload.user_id:
            return self._deny(
                DenyReason.USER_MISMATCH,
                user_id=payload.user_id,
                session_user_id=session.user_id,
            )
        return AuthDecision(
            allowed=True,
            user_id=session.user_id,
            session_id=session.id,
            token=payload,
        )

    def _deny(self, reason: DenyReason, **context) -> AuthDecision:
        log_auth_denial(reason.value, logger, **context)
        return AuthDecision.deny(reason)
