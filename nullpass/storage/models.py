from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

SERVICES = ("DROP", "MAILS", "VAULT", "DB", "BOARD")
BILLED_SERVICES = ("DROP", "MAILS", "VAULT", "DB")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    pending_two_factor_secret: Optional[str] = None
    disabled: bool = False
    migrated: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "displayName": self.display_name,
            "avatar": self.avatar,
        }


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        ttl_days: int = 7,
        ip: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=now + timedelta(days=ttl_days),
            ip=ip,
            created_at=now,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at < (now or utcnow())

    def public(self) -> dict:
        """Listing shape; the token is never exposed."""
        return {
            "id": self.id,
            "ip": self.ip,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }


@dataclass
class ServiceEntitlement:
    user_id: str
    service: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    tier: str = "free"
    is_premium: bool = False
    access_flags: Dict = field(default_factory=dict)
    metadata: Dict = field(default_factory=dict)
    custom_storage_limit: Optional[int] = None
    custom_api_key_limit: Optional[int] = None
    polar_customer_id: Optional[str] = None
    polar_subscription_id: Optional[str] = None
    polar_subscription_status: Optional[str] = None
    connected: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public(self) -> dict:
        return {
            "service": self.service,
            "tier": self.tier,
            "isPremium": self.is_premium,
            "accessFlags": self.access_flags,
            "metadata": self.metadata,
            "customStorageLimit": self.custom_storage_limit,
            "customApiKeyLimit": self.custom_api_key_limit,
            "polarCustomerId": self.polar_customer_id,
            "polarSubscriptionId": self.polar_subscription_id,
            "polarSubscriptionStatus": self.polar_subscription_status,
            "connected": self.connected,
        }


@dataclass
class AuditLogEntry:
    id: str
    user_id: str
    action: str
    data: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def public(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "data": self.data,
            "createdAt": self.created_at.isoformat(),
        }
