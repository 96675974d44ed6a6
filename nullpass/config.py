from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from nullpass.logging import get_logger

logger = get_logger(__name__)


class GatewayMode(str, Enum):
    """Enforcement modes for the request gateway.

    - LIVE: deny decisions block the request
    - DRY_RUN: deny decisions are logged and the request proceeds
    """

    LIVE = "live"
    DRY_RUN = "dry_run"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity provider."""

    database_url: str = env_field(
        "postgresql://localhost:5432/nullpass", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        "redis://localhost:6379/0",
        "REDIS_URL",
        description="Redis URL backing gateway rate limits",
    )
    shared_fs_root: str = env_field("/srv/nullpass", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (no persistence, no background tasks)",
    )
    # Tokens and sessions
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_expires_in: str = env_field(
        "7d",
        "JWT_EXPIRES_IN",
        description="Token lifetime as <int><s|m|h|d>; unrecognised values fall back to 7d",
    )
    session_expires_days: int = env_field(7, "SESSION_EXPIRES_DAYS")
    session_reaper_interval_seconds: int = env_field(
        3600,
        "SESSION_REAPER_INTERVAL_SECONDS",
        description="Interval for purging expired sessions; 0 disables the reaper",
    )
    internal_secret: str | None = env_field(None, "INTERNAL_SECRET")
    encryption_key: str | None = env_field(
        None,
        "ENCRYPTION_KEY",
        description="Key material for secrets at rest; falls back to JWT_SECRET",
    )
    # Second factor
    mfa_issuer: str = env_field("Nullpass", "MFA_ISSUER")
    totp_window_steps: int = env_field(2, "TOTP_WINDOW_STEPS")
    # HTTP surface
    allowed_origins: list[str] = env_field(
        ["http://localhost:3000"], "ALLOWED_ORIGINS"
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    # Billing and notifications
    polar_access_token: str | None = env_field(None, "POLAR_ACCESS_TOKEN")
    polar_api_base: str = env_field("https://api.polar.sh/v1", "POLAR_API_BASE")
    drop_polar_secret: str | None = env_field(None, "DROP_POLAR_SECRET")
    mails_polar_secret: str | None = env_field(None, "MAILS_POLAR_SECRET")
    vault_polar_secret: str | None = env_field(None, "VAULT_POLAR_SECRET")
    db_polar_secret: str | None = env_field(None, "DB_POLAR_SECRET")
    discord_webhook_url: str | None = env_field(None, "WEBHOOK_TICKET")
    outbound_timeout_seconds: float = env_field(5.0, "OUTBOUND_TIMEOUT_SECONDS")
    # Gateway
    gateway_enabled: bool = env_field(True, "GATEWAY_ENABLED")
    gateway_mode: GatewayMode = env_field(GatewayMode.DRY_RUN, "GATEWAY_MODE")
    gateway_capacity: int = env_field(10, "GATEWAY_CAPACITY")
    gateway_refill_rate: int = env_field(5, "GATEWAY_REFILL_RATE")
    gateway_interval_seconds: int = env_field(10, "GATEWAY_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    def polar_webhook_secret(self, service: str) -> str | None:
        return {
            "DROP": self.drop_polar_secret,
            "MAILS": self.mails_polar_secret,
            "VAULT": self.vault_polar_secret,
            "DB": self.db_polar_secret,
        }.get(service.upper())

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("gateway_mode", mode="before")
    @classmethod
    def _validate_gateway_mode(cls, value: Any) -> GatewayMode:
        if isinstance(value, str):
            # "production" is accepted as a synonym for live enforcement
            if value.strip().lower() == "production":
                return GatewayMode.LIVE
            return GatewayMode(value.strip().lower())
        return GatewayMode(value)

    @field_validator("session_expires_days")
    @classmethod
    def _validate_session_days(cls, value: int) -> int:
        if value < 1:
            raise ValueError("SESSION_EXPIRES_DAYS must be at least 1")
        return value

    @field_validator("totp_window_steps")
    @classmethod
    def _validate_totp_window(cls, value: int) -> int:
        if value < 0 or value > 10:
            raise ValueError("TOTP_WINDOW_STEPS must be between 0 and 10")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/nullpass"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
