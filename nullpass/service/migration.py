from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nullpass.logging import get_logger
from nullpass.service.entitlements import EntitlementLedger
from nullpass.service.errors import ConflictError
from nullpass.service.passwords import PasswordHasherService, is_legacy_hash
from nullpass.storage.common import IdentityStore
from nullpass.storage.models import User

logger = get_logger(__name__)


class MigrationRecord(BaseModel):
    """One account exported from the legacy user database."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str
    password: str = Field(..., min_length=1)
    name: Optional[str] = None
    avatar: Optional[str] = None
    is_premium: bool = Field(False, alias="isPremium")
    is_premium_drop: bool = Field(False, alias="isPremiumDrop")
    is_premium_mails: bool = Field(False, alias="isPremiumMails")
    is_premium_vault: bool = Field(False, alias="isPremiumVault")
    is_premium_db: bool = Field(False, alias="isPremiumDB")
    premium_tier_drop: str = Field("free", alias="premiumTierDrop")
    premium_tier_mails: str = Field("free", alias="premiumTierMails")
    premium_tier_vault: str = Field("free", alias="premiumTierVault")
    premium_tier_db: str = Field("free", alias="premiumTierDB")
    two_factor_enabled: bool = Field(False, alias="twoFactorEnabled")
    two_factor_secret: Optional[str] = Field(None, alias="twoFactorSecret")
    custom_storage_limit: Optional[int] = Field(None, alias="customStorageLimit")
    custom_api_key_limit: Optional[int] = Field(None, alias="customApiKeyLimit")
    is_null_drop_team: bool = Field(False, alias="isNullDropTeam")
    null_drop_team_role: str = Field("member", alias="nullDropTeamRole")
    access_files_preview: bool = Field(False, alias="accessFilesPreview")
    access_files_download: bool = Field(False, alias="accessFilesDownload")
    custom_domain: Optional[str] = Field(None, alias="customDomain")
    custom_domain_verified: bool = Field(False, alias="customDomainVerified")
    polar_customer_id: Optional[str] = Field(None, alias="polarCustomerId")
    polar_subscription_id: Optional[str] = Field(None, alias="polarSubscriptionId")
    polar_subscription_status: Optional[str] = Field(None, alias="polarSubscriptionStatus")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        value = value.strip()
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return value

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class MigrationService:
    """Imports legacy accounts and their per-service entitlements."""

    def __init__(
        self,
        store: IdentityStore,
        ledger: EntitlementLedger,
        hasher: PasswordHasherService,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.hasher = hasher

    def _password_hash(self, password: str) -> str:
        # legacy bcrypt hashes are kept and upgraded on the next login
        if is_legacy_hash(password):
            return password
        return self.hasher.hash(password)

    @staticmethod
    def _two_factor_fields(record: MigrationRecord) -> Dict[str, Any]:
        enabled = bool(record.two_factor_enabled and record.two_factor_secret)
        if record.two_factor_enabled and not enabled:
            logger.warning("migration_2fa_secret_missing", email_domain=record.email.split("@")[-1])
        return {
            "two_factor_enabled": enabled,
            "two_factor_secret": record.two_factor_secret if enabled else None,
        }

    def migrate_user(self, record: MigrationRecord) -> Tuple[Dict[str, Any], bool]:
        """Return the result body and whether a new user was created."""
        existing = self.store.get_user_by_email(record.email)
        if existing is not None and existing.migrated:
            logger.warning("migration_already_done", user_id=existing.id)
            raise ConflictError("User already migrated")

        password_hash = self._password_hash(record.password)
        created = existing is None
        if created:
            user = self.store.create_user(
                record.email,
                password_hash,
                display_name=record.name,
                migrated=True,
                created_at=record.created_at,
            )
            fields: Dict[str, Any] = {"avatar": record.avatar}
        else:
            user = existing
            fields = {
                "password_hash": password_hash,
                "display_name": record.name,
                "avatar": record.avatar,
                "migrated": True,
            }
            if record.created_at is not None:
                fields["created_at"] = record.created_at
        fields.update(self._two_factor_fields(record))
        user = self.store.update_user(user.id, **fields)

        self._migrate_entitlements(user, record)
        logger.info("user_migrated", user_id=user.id, created=created)
        return (
            {
                "success": True,
                "userId": user.id,
                "email": user.email,
                "message": "User migrated successfully",
            },
            created,
        )

    def _migrate_entitlements(self, user: User, record: MigrationRecord) -> None:
        access_flags: Dict[str, Any] = {}
        if record.is_null_drop_team:
            access_flags["isNullDropTeam"] = True
            access_flags["nullDropTeamRole"] = record.null_drop_team_role
        if record.access_files_preview:
            access_flags["accessFilesPreview"] = True
        if record.access_files_download:
            access_flags["accessFilesDownload"] = True
        metadata: Dict[str, Any] = {}
        if record.custom_domain:
            metadata["customDomain"] = record.custom_domain
            metadata["customDomainVerified"] = record.custom_domain_verified

        drop_patch: Dict[str, Any] = {
            "tier": record.premium_tier_drop or "free",
            "is_premium": record.is_premium_drop or record.is_premium,
            "custom_storage_limit": record.custom_storage_limit,
            "custom_api_key_limit": record.custom_api_key_limit,
            "polar_customer_id": record.polar_customer_id,
            "polar_subscription_id": record.polar_subscription_id,
            "polar_subscription_status": record.polar_subscription_status,
        }
        # empty flag sets leave any existing value untouched
        if access_flags:
            drop_patch["access_flags"] = access_flags
        if metadata:
            drop_patch["metadata"] = metadata
        self.ledger.upsert(user.id, "DROP", drop_patch)

        for service, premium, tier in (
            ("MAILS", record.is_premium_mails, record.premium_tier_mails),
            ("VAULT", record.is_premium_vault, record.premium_tier_vault),
            ("DB", record.is_premium_db, record.premium_tier_db),
        ):
            if premium or record.is_premium:
                self.ledger.upsert(
                    user.id,
                    service,
                    {"tier": tier or "free", "is_premium": premium or record.is_premium},
                )
