from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from nullpass.logging import get_logger
from nullpass.service.audit import AuditAction, AuditLog
from nullpass.service.tokens import TokenCodec
from nullpass.storage.common import IdentityStore
from nullpass.storage.models import Session, User

logger = get_logger(__name__)


@dataclass
class ReconcileResult:
    token: str
    session: Session
    created: bool
    rotated: bool


class SessionReconciler:
    """Turns a verified login into a usable bearer token.

    One live session is kept per (user, origin IP). A repeat login from the
    same IP reuses the stored token and only extends its expiry; a stored
    token that no longer decodes to the same user is replaced in place.
    """

    def __init__(
        self,
        store: IdentityStore,
        codec: TokenCodec,
        audit: AuditLog,
        *,
        session_days: int = 7,
    ) -> None:
        self.store = store
        self.codec = codec
        self.audit = audit
        self.session_days = session_days

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def reconcile(
        self,
        user: User,
        ip: Optional[str],
        *,
        action: AuditAction = AuditAction.USER_LOGIN,
        audit_data: Optional[dict] = None,
    ) -> ReconcileResult:
        now = self._now()
        expires_at = now + timedelta(days=self.session_days)
        existing = self.store.find_live_session(user.id, ip, now)

        if existing is None:
            token = self.codec.issue(user.id, user.email)
            session = self.store.create_session(
                Session.new(user.id, token, ttl_days=self.session_days, ip=ip)
            )
            result = ReconcileResult(token=token, session=session, created=True, rotated=False)
        else:
            payload = self.codec.verify(existing.token)
            if payload is not None and payload.user_id == user.id:
                session = self.store.update_session(existing.id, expires_at=expires_at)
                result = ReconcileResult(
                    token=existing.token, session=session, created=False, rotated=False
                )
            else:
                token = self.codec.issue(user.id, user.email)
                session = self.store.update_session(
                    existing.id, expires_at=expires_at, token=token
                )
                logger.info("session_token_rotated", user_id=user.id, session_id=existing.id)
                result = ReconcileResult(token=token, session=session, created=False, rotated=True)

        self.store.update_user(user.id)

        login_data = {"ip": ip or "unknown", **(audit_data or {})}
        self.audit.record(user.id, action, login_data)
        if result.created:
            self.audit.record(
                user.id,
                AuditAction.SESSION_CREATE,
                {"ip": ip or "unknown", "sessionId": result.session.id},
            )
        return result
