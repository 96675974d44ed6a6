from __future__ import annotations

import math
from typing import Any, Dict, Optional

from nullpass.logging import get_logger
from nullpass.service.audit import AuditAction, AuditLog
from nullpass.service.entitlements import EntitlementLedger, from_external
from nullpass.service.errors import NotFoundError
from nullpass.storage.common import IdentityStore

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


class AdminService:
    """Operator views over users and their DROP entitlements."""

    def __init__(self, store: IdentityStore, ledger: EntitlementLedger, audit: AuditLog) -> None:
        self.store = store
        self.ledger = ledger
        self.audit = audit

    def list_users(self, *, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = (page - 1) * limit
        users = self.store.list_users(offset=offset, limit=limit)
        total = self.store.count_users()
        items = []
        for user in users:
            drop = self.store.get_entitlement(user.id, "DROP")
            items.append(
                {
                    **user.public(),
                    "createdAt": user.created_at.isoformat(),
                    "updatedAt": user.updated_at.isoformat(),
                    "serviceAccess": {
                        "tier": drop.tier if drop else "free",
                        "isPremium": drop.is_premium if drop else False,
                        "accessFlags": (drop.access_flags if drop else None) or {},
                        "metadata": (drop.metadata if drop else None) or {},
                        "customStorageLimit": drop.custom_storage_limit if drop else None,
                        "customApiKeyLimit": drop.custom_api_key_limit if drop else None,
                    },
                }
            )
        return {
            "users": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "totalCount": total,
                "totalPages": math.ceil(total / limit),
                "hasMore": offset + len(items) < total,
            },
        }

    def stats(self) -> Dict[str, int]:
        total = self.store.count_users()
        premium = self.store.count_premium("DROP")
        return {"totalUsers": total, "premiumUsers": premium, "freeUsers": total - premium}

    def update_service(
        self,
        target_user_id: str,
        service: str,
        changes: Dict[str, Any],
        *,
        admin_user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if self.store.get_user(target_user_id) is None:
            raise NotFoundError("User not found")
        service = self.ledger.normalize_service(service)
        entitlement = self.ledger.upsert(target_user_id, service, from_external(changes))
        if admin_user_id:
            self.audit.record(
                admin_user_id,
                AuditAction.SERVICE_ACCESS_GRANT,
                {"targetUserId": target_user_id, "service": service, "changes": changes},
            )
        logger.info(
            "admin_entitlement_updated",
            target_user_id=target_user_id,
            service=service,
            system=admin_user_id is None,
        )
        return {"entitlement": entitlement.public()}
