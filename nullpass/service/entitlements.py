from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from nullpass.logging import get_logger
from nullpass.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from nullpass.storage.common import IdentityStore, validate_service
from nullpass.storage.models import ServiceEntitlement

logger = get_logger(__name__)

ADMIN_ROLES = frozenset({"founder", "dev"})
CUSTOM_DOMAIN_TIER = "enterprise"

# External (camelCase) field names accepted from callers
EXTERNAL_FIELDS = {
    "tier": "tier",
    "isPremium": "is_premium",
    "accessFlags": "access_flags",
    "metadata": "metadata",
    "customStorageLimit": "custom_storage_limit",
    "customApiKeyLimit": "custom_api_key_limit",
    "polarCustomerId": "polar_customer_id",
    "polarSubscriptionId": "polar_subscription_id",
    "polarSubscriptionStatus": "polar_subscription_status",
    "connected": "connected",
}

_DOMAIN_RE = re.compile(
    r"^[a-zA-Z0-9][a-zA-Z0-9-]{0,61}[a-zA-Z0-9](?:\.[a-zA-Z0-9][a-zA-Z0-9-]{0,61}[a-zA-Z0-9])*$"
)


def from_external(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a camelCase patch; keys that are absent stay absent."""
    unknown = set(patch) - set(EXTERNAL_FIELDS)
    if unknown:
        raise ValidationError(
            "Unsupported entitlement fields", detail={"fields": sorted(unknown)}
        )
    return {EXTERNAL_FIELDS[key]: value for key, value in patch.items()}


class EntitlementLedger:
    """Per (user, service) tier, premium, limits and billing linkage."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    @staticmethod
    def normalize_service(service: Optional[str]) -> str:
        try:
            return validate_service(service or "")
        except ValueError as exc:
            raise ValidationError(
                "Invalid service. Must be DROP, MAILS, VAULT, DB, or BOARD"
            ) from exc

    def get(self, user_id: str, service: str) -> Optional[ServiceEntitlement]:
        return self.store.get_entitlement(user_id, self.normalize_service(service))

    def list_for_user(
        self, user_id: str, service: Optional[str] = None
    ) -> List[ServiceEntitlement]:
        wanted = self.normalize_service(service) if service else None
        return self.store.list_entitlements(user_id, wanted)

    def upsert(
        self, user_id: str, service: str, patch: Dict[str, Any]
    ) -> ServiceEntitlement:
        """Partial update; a new row starts as tier "free", not premium, connected."""
        service = self.normalize_service(service)
        try:
            return self.store.upsert_entitlement(user_id, service, patch)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    def is_admin(self, user_id: str) -> bool:
        drop = self.store.get_entitlement(user_id, "DROP")
        if drop is None:
            return False
        flags = drop.access_flags or {}
        return bool(flags.get("isNullDropTeam")) and flags.get("nullDropTeamRole") in ADMIN_ROLES

    def set_connected(
        self, user_id: str, service: str, connected: bool
    ) -> Tuple[ServiceEntitlement, bool]:
        """Return the entitlement and whether the flag actually changed."""
        service = self.normalize_service(service)
        current = self.store.get_entitlement(user_id, service)
        if current is None:
            raise NotFoundError(
                "Service entitlement not found. Please ensure you have access to this service."
            )
        if current.connected == connected:
            return current, False
        return self.store.upsert_entitlement(user_id, service, {"connected": connected}), True

    # billing

    def apply_subscription(
        self,
        user_id: str,
        service: str,
        *,
        status: Optional[str],
        plan: Optional[str],
        subscription_id: Optional[str],
        customer_id: Optional[str],
    ) -> ServiceEntitlement:
        active = status == "active"
        patch: Dict[str, Any] = {
            "is_premium": active,
            "tier": (plan or "free") if active else "free",
            "polar_subscription_id": subscription_id,
            "polar_subscription_status": status,
        }
        if customer_id:
            patch["polar_customer_id"] = customer_id
        return self.upsert(user_id, service, patch)

    def cancel_subscription(self, user_id: str, service: str) -> Optional[ServiceEntitlement]:
        """Downgrade an existing row; a missing row is left missing."""
        if self.get(user_id, service) is None:
            return None
        return self.upsert(
            user_id,
            service,
            {
                "is_premium": False,
                "tier": "free",
                "polar_subscription_id": None,
                "polar_subscription_status": "canceled",
            },
        )

    def link_customer(self, user_id: str, service: str, customer_id: str) -> ServiceEntitlement:
        return self.upsert(user_id, service, {"polar_customer_id": customer_id})

    def clear_customer(self, customer_id: str, service: str) -> int:
        rows = self.store.find_entitlements_by_customer(customer_id, self.normalize_service(service))
        for row in rows:
            self.store.upsert_entitlement(
                row.user_id,
                row.service,
                {
                    "polar_customer_id": None,
                    "polar_subscription_id": None,
                    "polar_subscription_status": "canceled",
                    "is_premium": False,
                    "tier": "free",
                },
            )
        logger.info("billing_customer_cleared", service=service, rows=len(rows))
        return len(rows)

    # custom domains

    def _enterprise_drop(self, user_id: str) -> ServiceEntitlement:
        drop = self.store.get_entitlement(user_id, "DROP")
        if drop is None or drop.tier != CUSTOM_DOMAIN_TIER:
            raise ForbiddenError("Enterprise plan required for custom domains")
        return drop

    def get_custom_domain(self, user_id: str) -> Dict[str, Any]:
        drop = self._enterprise_drop(user_id)
        domain = (drop.metadata or {}).get("customDomain")
        return {
            "customDomain": domain,
            "customDomainVerified": bool((drop.metadata or {}).get("customDomainVerified")),
            "hasCustomDomain": bool(domain),
        }

    def claim_custom_domain(self, user_id: str, domain: str) -> str:
        drop = self._enterprise_drop(user_id)
        domain = (domain or "").strip()
        if not domain or len(domain) > 255 or not _DOMAIN_RE.match(domain):
            raise ValidationError("Invalid domain format")
        owner = self.store.find_custom_domain_owner(domain)
        if owner is not None and owner != user_id:
            raise ConflictError("Domain is already in use")
        metadata = dict(drop.metadata or {})
        metadata.update({"customDomain": domain, "customDomainVerified": False})
        self.store.upsert_entitlement(user_id, "DROP", {"metadata": metadata})
        return domain

    def release_custom_domain(self, user_id: str) -> None:
        drop = self._enterprise_drop(user_id)
        metadata = {
            key: value
            for key, value in (drop.metadata or {}).items()
            if key not in ("customDomain", "customDomainVerified")
        }
        self.store.upsert_entitlement(user_id, "DROP", {"metadata": metadata})
