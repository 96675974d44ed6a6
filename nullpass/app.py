from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from nullpass.api.error_handling import register_exception_handlers
from nullpass.api.routes import router
from nullpass.config import Settings, get_settings
from nullpass.logging import get_logger, set_correlation_id
from nullpass.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _reap_expired_sessions(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop deleting sessions whose expiry has passed."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                purged = await asyncio.to_thread(
                    runtime.store.purge_expired_sessions, datetime.now(timezone.utc)
                )
                if purged:
                    logger.info("expired_sessions_purged", count=purged)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_reaper_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_reaper_cancelled")


def create_app(
    settings: Optional[Settings] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = Runtime(settings, http_client=http_client)
        app.state.runtime = runtime
        reaper: asyncio.Task | None = None
        if settings.session_reaper_interval_seconds > 0:
            reaper = asyncio.create_task(
                _reap_expired_sessions(runtime, settings.session_reaper_interval_seconds)
            )

        yield

        if reaper is not None:
            reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reaper
        try:
            await runtime.close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="NullPass Identity", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Internal-Secret",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs for this request with X-Request-ID, generating one if absent."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("API-Version", __version__)
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        """Report store and cache reachability."""
        runtime: Runtime = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, awaitable) -> bool:
            try:
                await asyncio.wait_for(awaitable, HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        db_ok = await _run_bounded("database", asyncio.to_thread(runtime.store.ping))
        checks["database"] = {
            "status": "healthy" if db_ok else "unhealthy",
            "type": "memory" if settings.use_memory_store else "postgres",
        }
        healthy = db_ok

        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.ping())
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
