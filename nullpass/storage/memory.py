from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from nullpass.logging import get_logger
from nullpass.service.ciphers import SecretCipher
from nullpass.storage.common import (
    USER_FIELDS,
    apply_entitlement_patch,
    check_patch_keys,
    new_entitlement,
    validate_service,
)
from nullpass.storage.errors import ConstraintViolation, RecordNotFound
from nullpass.storage.models import (
    AuditLogEntry,
    ServiceEntitlement,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory identity store with an optional JSON snapshot on disk.

    Used for tests and single-node development. TOTP secrets are encrypted
    in the snapshot when a cipher is configured.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/nullpass",
        *,
        cipher: SecretCipher | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.entitlements: Dict[Tuple[str, str], ServiceEntitlement] = {}
        self.audit_logs: List[AuditLogEntry] = []
        # RLock so nested helpers can re-acquire within the same thread
        self._data_lock = threading.RLock()
        self._cipher = cipher
        self._persist = persist
        self.fs_root = Path(fs_root)
        if self._persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def ping(self) -> None:
        return None

    # users

    def create_user(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        display_name: Optional[str] = None,
        migrated: bool = False,
        created_at: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                display_name=display_name,
                migrated=migrated,
                created_at=created_at or now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def update_user(self, user_id: str, **fields: Any) -> User:
        check_patch_keys(fields, USER_FIELDS)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user", user_id)
            new_email = fields.get("email")
            if new_email and new_email != user.email:
                if any(u.email == new_email for u in self.users.values()):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            for key in [k for k in self.entitlements if k[0] == user_id]:
                self.entitlements.pop(key, None)
            self.audit_logs = [e for e in self.audit_logs if e.user_id != user_id]
            self._persist_state()
            return True

    def list_users(self, *, offset: int = 0, limit: int = 50) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[offset : offset + limit]]

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    # sessions

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if any(s.token == session.token for s in self.sessions.values()):
                raise ConstraintViolation("session token already exists", {"field": "token"})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def find_live_session(
        self, user_id: str, ip: Optional[str], now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            candidates = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.ip == ip and s.expires_at > now
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda s: s.created_at)
            return replace(latest)

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            found = next((s for s in self.sessions.values() if s.token == token), None)
            return replace(found) if found else None

    def update_session(
        self, session_id: str, *, expires_at: datetime, token: Optional[str] = None
    ) -> Session:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                raise RecordNotFound("session", session_id)
            if token is not None and token != sess.token:
                if any(s.token == token for s in self.sessions.values()):
                    raise ConstraintViolation("session token already exists", {"field": "token"})
                sess.token = token
            sess.expires_at = expires_at
            self._persist_state()
            return replace(sess)

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
            return sorted(owned, key=lambda s: s.created_at, reverse=True)

    def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or (user_id is not None and sess.user_id != user_id):
                return False
            self.sessions.pop(session_id, None)
            self._persist_state()
            return True

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.expires_at < now]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    # entitlements

    def get_entitlement(self, user_id: str, service: str) -> Optional[ServiceEntitlement]:
        with self._data_lock:
            found = self.entitlements.get((user_id, validate_service(service)))
            return copy.deepcopy(found) if found else None

    def list_entitlements(
        self, user_id: str, service: Optional[str] = None
    ) -> List[ServiceEntitlement]:
        wanted = validate_service(service) if service else None
        with self._data_lock:
            rows = [
                copy.deepcopy(ent)
                for (owner, svc), ent in self.entitlements.items()
                if owner == user_id and (wanted is None or svc == wanted)
            ]
            return sorted(rows, key=lambda e: e.service)

    def upsert_entitlement(
        self, user_id: str, service: str, patch: Dict[str, Any]
    ) -> ServiceEntitlement:
        service = validate_service(service)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            key = (user_id, service)
            existing = self.entitlements.get(key)
            if existing is None:
                existing = new_entitlement(user_id, service, patch)
                self.entitlements[key] = existing
            else:
                apply_entitlement_patch(existing, patch)
            self._persist_state()
            return copy.deepcopy(existing)

    def find_entitlements_by_customer(
        self, polar_customer_id: str, service: Optional[str] = None
    ) -> List[ServiceEntitlement]:
        wanted = validate_service(service) if service else None
        with self._data_lock:
            return [
                copy.deepcopy(ent)
                for ent in self.entitlements.values()
                if ent.polar_customer_id == polar_customer_id
                and (wanted is None or ent.service == wanted)
            ]

    def find_custom_domain_owner(self, domain: str) -> Optional[str]:
        with self._data_lock:
            for (owner, svc), ent in self.entitlements.items():
                if svc == "DROP" and (ent.metadata or {}).get("customDomain") == domain:
                    return owner
            return None

    def count_premium(self, service: str) -> int:
        service = validate_service(service)
        with self._data_lock:
            return sum(
                1
                for (_, svc), ent in self.entitlements.items()
                if svc == service and ent.is_premium
            )

    # audit

    def append_audit(self, user_id: str, action: str, data: Dict[str, Any]) -> AuditLogEntry:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            entry = AuditLogEntry(
                id=str(uuid.uuid4()),
                user_id=user_id,
                action=action,
                data=copy.deepcopy(data),
            )
            self.audit_logs.append(entry)
            self._persist_state()
            return copy.deepcopy(entry)

    def list_audit(
        self,
        user_id: str,
        *,
        action: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AuditLogEntry], int]:
        with self._data_lock:
            matching = [
                e
                for e in self.audit_logs
                if e.user_id == user_id and (action is None or e.action == action)
            ]
            matching.sort(key=lambda e: e.created_at, reverse=True)
            page = [copy.deepcopy(e) for e in matching[offset : offset + limit]]
            return page, len(matching)

    # persistence

    def _persist_state(self) -> None:
        if not self._persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "entitlements": [
                self._serialize_entitlement(e) for e in self.entitlements.values()
            ],
            "audit_logs": [self._serialize_audit(e) for e in self.audit_logs],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.entitlements = {}
        for raw in data.get("entitlements", []):
            ent = self._deserialize_entitlement(raw)
            self.entitlements[(ent.user_id, ent.service)] = ent
        self.audit_logs = [self._deserialize_audit(e) for e in data.get("audit_logs", [])]
        return True

    def _seal(self, value: Optional[str]) -> Optional[str]:
        if not value or not self._cipher:
            return value
        return self._cipher.encrypt(value)

    def _unseal(self, value: Optional[str]) -> Optional[str]:
        if not value or not self._cipher:
            return value
        return self._cipher.decrypt(value)

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "display_name": user.display_name,
            "avatar": user.avatar,
            "two_factor_enabled": user.two_factor_enabled,
            "two_factor_secret": self._seal(user.two_factor_secret),
            "pending_two_factor_secret": self._seal(user.pending_two_factor_secret),
            "disabled": user.disabled,
            "migrated": user.migrated,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data.get("password_hash"),
            display_name=data.get("display_name"),
            avatar=data.get("avatar"),
            two_factor_enabled=data.get("two_factor_enabled", False),
            two_factor_secret=self._unseal(data.get("two_factor_secret")),
            pending_two_factor_secret=self._unseal(data.get("pending_two_factor_secret")),
            disabled=data.get("disabled", False),
            migrated=data.get("migrated", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token": session.token,
            "ip": session.ip,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            ip=data.get("ip"),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _serialize_entitlement(self, ent: ServiceEntitlement) -> dict:
        return {
            "id": ent.id,
            "user_id": ent.user_id,
            "service": ent.service,
            "tier": ent.tier,
            "is_premium": ent.is_premium,
            "access_flags": ent.access_flags,
            "metadata": ent.metadata,
            "custom_storage_limit": ent.custom_storage_limit,
            "custom_api_key_limit": ent.custom_api_key_limit,
            "polar_customer_id": ent.polar_customer_id,
            "polar_subscription_id": ent.polar_subscription_id,
            "polar_subscription_status": ent.polar_subscription_status,
            "connected": ent.connected,
            "created_at": self._serialize_datetime(ent.created_at),
            "updated_at": self._serialize_datetime(ent.updated_at),
        }

    def _deserialize_entitlement(self, data: dict) -> ServiceEntitlement:
        return ServiceEntitlement(
            id=data["id"],
            user_id=data["user_id"],
            service=data["service"],
            tier=data.get("tier", "free"),
            is_premium=data.get("is_premium", False),
            access_flags=data.get("access_flags") or {},
            metadata=data.get("metadata") or {},
            custom_storage_limit=data.get("custom_storage_limit"),
            custom_api_key_limit=data.get("custom_api_key_limit"),
            polar_customer_id=data.get("polar_customer_id"),
            polar_subscription_id=data.get("polar_subscription_id"),
            polar_subscription_status=data.get("polar_subscription_status"),
            connected=data.get("connected", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_audit(self, entry: AuditLogEntry) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "action": entry.action,
            "data": entry.data,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_audit(self, data: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=data["id"],
            user_id=data["user_id"],
            action=data["action"],
            data=data.get("data") or {},
            created_at=self._deserialize_datetime(data["created_at"]),
        )
