from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from nullpass.config import Settings, get_settings
from nullpass.logging import get_logger
from nullpass.service.admin import AdminService
from nullpass.service.audit import AuditLog
from nullpass.service.auth import AuthService
from nullpass.service.billing import PolarClient, PolarWebhookHandler
from nullpass.service.ciphers import SecretCipher
from nullpass.service.entitlements import EntitlementLedger
from nullpass.service.gateway import RequestGateway
from nullpass.service.guard import AuthorizationGuard
from nullpass.service.migration import MigrationService
from nullpass.service.notify import DiscordNotifier
from nullpass.service.passwords import PasswordHasherService
from nullpass.service.sessions import SessionReconciler
from nullpass.service.tokens import TokenCodec
from nullpass.service.totp import TOTPVerifier
from nullpass.storage.memory import MemoryStore
from nullpass.storage.postgres import PostgresStore
from nullpass.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Owns the store, cache and HTTP handles plus the services built on them.

    Created in the FastAPI lifespan and closed at shutdown; there is no
    module-level instance.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.cipher = SecretCipher(self.settings.encryption_key or self.settings.jwt_secret)

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    cipher=self.cipher,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, cipher=self.cipher)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.outbound_timeout_seconds
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for gateway rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are in-memory only.",
                mode=fallback_mode,
            )

        self.http = http_client or httpx.AsyncClient(
            timeout=self.settings.outbound_timeout_seconds, follow_redirects=False
        )

        self.codec = TokenCodec(self.settings.jwt_secret, self.settings.jwt_expires_in)
        self.totp = TOTPVerifier(
            issuer=self.settings.mfa_issuer, window_steps=self.settings.totp_window_steps
        )
        self.hasher = PasswordHasherService()
        self.audit = AuditLog(self.store, self.cipher)
        self.ledger = EntitlementLedger(self.store)
        self.reconciler = SessionReconciler(
            self.store,
            self.codec,
            self.audit,
            session_days=self.settings.session_expires_days,
        )
        self.guard = AuthorizationGuard(
            self.store, self.codec, internal_secret=self.settings.internal_secret
        )
        self.notifier = DiscordNotifier(self.settings.discord_webhook_url, self.http)
        self.polar = PolarClient(
            self.settings.polar_access_token, self.http, api_base=self.settings.polar_api_base
        )
        self.webhooks = PolarWebhookHandler(self.store, self.ledger, self.audit, self.notifier)
        self.gateway = RequestGateway(
            self.cache,
            mode=self.settings.gateway_mode,
            enabled=self.settings.gateway_enabled,
            capacity=self.settings.gateway_capacity,
            refill_rate=self.settings.gateway_refill_rate,
            interval_seconds=self.settings.gateway_interval_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.codec,
            self.totp,
            self.reconciler,
            self.audit,
            self.polar,
        )
        self.migration = MigrationService(self.store, self.ledger, self.hasher)
        self.admin = AdminService(self.store, self.ledger, self.audit)
        logger.info("runtime_init_completed", cache_enabled=self.cache is not None)

    async def close(self) -> None:
        await self.http.aclose()
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()
        logger.info("runtime_closed")
