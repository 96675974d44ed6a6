"""Common storage contracts shared between memory and postgres implementations.

Both backends implement :class:`IdentityStore`; services only depend on the
protocol so tests can run entirely on the in-memory store.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from nullpass.storage.models import (
    SERVICES,
    AuditLogEntry,
    ServiceEntitlement,
    Session,
    User,
    utcnow,
)

# Columns a caller may set through upsert_entitlement
ENTITLEMENT_FIELDS = (
    "tier",
    "is_premium",
    "access_flags",
    "metadata",
    "custom_storage_limit",
    "custom_api_key_limit",
    "polar_customer_id",
    "polar_subscription_id",
    "polar_subscription_status",
    "connected",
)

NON_NULL_ENTITLEMENT_FIELDS = ("tier", "is_premium", "connected")

# Columns a caller may set through update_user
USER_FIELDS = (
    "email",
    "password_hash",
    "display_name",
    "avatar",
    "two_factor_enabled",
    "two_factor_secret",
    "pending_two_factor_secret",
    "disabled",
    "migrated",
    "created_at",
)


def validate_service(service: str) -> str:
    normalized = (service or "").upper()
    if normalized not in SERVICES:
        raise ValueError(f"unknown service: {service}")
    return normalized


def check_patch_keys(patch: Dict[str, Any], allowed: Tuple[str, ...]) -> None:
    unknown = set(patch) - set(allowed)
    if unknown:
        raise ValueError(f"unsupported fields: {', '.join(sorted(unknown))}")


def check_entitlement_patch(patch: Dict[str, Any]) -> None:
    check_patch_keys(patch, ENTITLEMENT_FIELDS)
    nulls = [key for key in NON_NULL_ENTITLEMENT_FIELDS if key in patch and patch[key] is None]
    if nulls:
        raise ValueError(f"fields cannot be null: {', '.join(nulls)}")


def apply_entitlement_patch(
    entitlement: ServiceEntitlement, patch: Dict[str, Any]
) -> ServiceEntitlement:
    """Apply only the keys present in ``patch``; absent keys keep their value."""
    check_entitlement_patch(patch)
    for key, value in patch.items():
        if key in ("access_flags", "metadata"):
            value = copy.deepcopy(value) if value is not None else {}
        setattr(entitlement, key, value)
    entitlement.updated_at = utcnow()
    return entitlement


def new_entitlement(
    user_id: str, service: str, patch: Dict[str, Any]
) -> ServiceEntitlement:
    entitlement = ServiceEntitlement(user_id=user_id, service=service)
    return apply_entitlement_patch(entitlement, patch)


class IdentityStore(Protocol):
    """Operations the identity core needs from durable storage."""

    # users
    def create_user(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        display_name: Optional[str] = None,
        migrated: bool = False,
        created_at: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def list_users(self, *, offset: int = 0, limit: int = 50) -> List[User]: ...

    def count_users(self) -> int: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def find_live_session(
        self, user_id: str, ip: Optional[str], now: datetime
    ) -> Optional[Session]: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def update_session(
        self, session_id: str, *, expires_at: datetime, token: Optional[str] = None
    ) -> Session: ...

    def list_sessions(self, user_id: str) -> List[Session]: ...

    def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def purge_expired_sessions(self, now: datetime) -> int: ...

    # entitlements
    def get_entitlement(self, user_id: str, service: str) -> Optional[ServiceEntitlement]: ...

    def list_entitlements(
        self, user_id: str, service: Optional[str] = None
    ) -> List[ServiceEntitlement]: ...

    def upsert_entitlement(
        self, user_id: str, service: str, patch: Dict[str, Any]
    ) -> ServiceEntitlement: ...

    def find_entitlements_by_customer(
        self, polar_customer_id: str, service: Optional[str] = None
    ) -> List[ServiceEntitlement]: ...

    def find_custom_domain_owner(self, domain: str) -> Optional[str]: ...

    def count_premium(self, service: str) -> int: ...

    # audit
    def append_audit(self, user_id: str, action: str, data: Dict[str, Any]) -> AuditLogEntry: ...

    def list_audit(
        self,
        user_id: str,
        *,
        action: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AuditLogEntry], int]: ...

    def ping(self) -> None: ...
