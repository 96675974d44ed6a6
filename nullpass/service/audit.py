from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from nullpass.logging import get_logger
from nullpass.service.ciphers import SecretCipher
from nullpass.service.errors import ValidationError
from nullpass.storage.common import IdentityStore

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


class AuditAction(str, Enum):
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    USER_REGISTER = "USER_REGISTER"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    TWO_FACTOR_ENABLE = "TWO_FACTOR_ENABLE"
    TWO_FACTOR_DISABLE = "TWO_FACTOR_DISABLE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    SESSION_CREATE = "SESSION_CREATE"
    SESSION_DELETE = "SESSION_DELETE"
    SERVICE_ACCESS_GRANT = "SERVICE_ACCESS_GRANT"
    SERVICE_ACCESS_REVOKE = "SERVICE_ACCESS_REVOKE"
    SERVICE_TIER_CHANGE = "SERVICE_TIER_CHANGE"
    SUBSCRIPTION_CREATE = "SUBSCRIPTION_CREATE"
    SUBSCRIPTION_UPDATE = "SUBSCRIPTION_UPDATE"
    SUBSCRIPTION_CANCEL = "SUBSCRIPTION_CANCEL"
    SUBSCRIPTION_REVOKE = "SUBSCRIPTION_REVOKE"
    USER_BAN = "USER_BAN"
    USER_DISABLE = "USER_DISABLE"
    SERVICE_ENTITLEMENT_DISCONNECT = "SERVICE_ENTITLEMENT_DISCONNECT"
    SERVICE_ENTITLEMENT_CONNECT = "SERVICE_ENTITLEMENT_CONNECT"
    UNKNOWN = "UNKNOWN"


class AuditLog:
    """Append-only audit trail.

    Writes are best-effort: a failing store is logged and never surfaces to
    the operation being audited. IP addresses are encrypted with a key bound
    to the owning user, so only that user's listing shows them in clear.
    """

    def __init__(self, store: IdentityStore, cipher: SecretCipher) -> None:
        self.store = store
        self.cipher = cipher

    def record(
        self, user_id: str, action: AuditAction, data: Optional[Dict[str, Any]] = None
    ) -> None:
        payload = dict(data or {})
        try:
            if isinstance(payload.get("ip"), str):
                payload["ip"] = self.cipher.for_subject(user_id).encrypt(payload["ip"])
            self.store.append_audit(user_id, AuditAction(action).value, payload)
        except Exception as exc:
            logger.warning(
                "audit_write_failed",
                user_id=user_id,
                action=str(getattr(action, "value", action)),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def list_for_user(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        action: Optional[str] = None,
    ) -> Dict[str, Any]:
        if action is not None:
            try:
                action = AuditAction(action).value
            except ValueError as exc:
                raise ValidationError("Invalid action filter", detail={"action": action}) from exc
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        entries, total = self.store.list_audit(
            user_id, action=action, limit=limit, offset=offset
        )
        subject_cipher = self.cipher.for_subject(user_id)
        logs = []
        for entry in entries:
            item = entry.public()
            data = dict(item["data"] or {})
            if isinstance(data.get("ip"), str):
                data["ip"] = subject_cipher.decrypt(data["ip"]) or "unknown"
            item["data"] = data
            logs.append(item)
        return {"logs": logs, "total": total, "limit": limit, "offset": offset}
