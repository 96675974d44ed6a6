from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from nullpass.config import GatewayMode
from nullpass.logging import get_logger
from nullpass.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class DenyKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    BOT = "bot"
    SHIELD = "shield"
    FILTER = "filter"
    SENSITIVE_INFO = "sensitive_info"
    FORBIDDEN = "forbidden"


# Outward status and message for each denial kind
DENY_RESPONSES: Dict[DenyKind, Tuple[int, str]] = {
    DenyKind.RATE_LIMIT: (429, "Too Many Requests"),
    DenyKind.BOT: (403, "No bots allowed"),
    DenyKind.SHIELD: (403, "Request blocked by security rules"),
    DenyKind.FILTER: (403, "Request blocked by filter rules"),
    DenyKind.SENSITIVE_INFO: (400, "Sensitive information detected"),
    DenyKind.FORBIDDEN: (403, "Forbidden"),
}

_SHIELD_PATTERNS = re.compile(
    r"(\.\./|\.\.\\|%2e%2e|<script|javascript:|\bunion\b.+\bselect\b|"
    r"'\s*or\s+'?1'?\s*=\s*'?1|;\s*drop\s+table|/etc/passwd|\$\{jndi:)",
    re.IGNORECASE,
)
_BOT_PATTERNS = re.compile(
    r"(bot|crawler|spider|scrapy|wget|python-requests|python-urllib|go-http-client|"
    r"headlesschrome|phantomjs|httpclient|libwww|okhttp)",
    re.IGNORECASE,
)
# Search engines and uptime monitors are let through
_ALLOWED_BOTS = re.compile(
    r"(googlebot|bingbot|duckduckbot|baiduspider|yandexbot|applebot|slurp|"
    r"uptimerobot|pingdom|statuscake|site24x7|betteruptime|datadog)",
    re.IGNORECASE,
)
_EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")


@dataclass(frozen=True)
class GatewayDecision:
    allowed: bool
    reason_kind: Optional[DenyKind] = None
    dry_run: bool = False

    @property
    def status_code(self) -> int:
        if self.allowed or self.reason_kind is None:
            return 200
        return DENY_RESPONSES[self.reason_kind][0]

    @property
    def message(self) -> Optional[str]:
        if self.allowed or self.reason_kind is None:
            return None
        return DENY_RESPONSES[self.reason_kind][1]


ALLOW = GatewayDecision(allowed=True)


class RequestGateway:
    """Per-request allow/deny decision: shield, filter, bot detection, token bucket.

    Buckets are keyed on (client IP, user agent) and live in Redis when a
    cache is configured, otherwise in process memory. Any internal error
    allows the request.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        mode: GatewayMode = GatewayMode.DRY_RUN,
        enabled: bool = True,
        capacity: int = 10,
        refill_rate: int = 5,
        interval_seconds: int = 10,
        max_local_buckets: int = 10_000,
    ) -> None:
        self.cache = cache
        self.mode = mode
        self.enabled = enabled
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.interval_seconds = interval_seconds
        self.max_local_buckets = max_local_buckets
        self._local_buckets: Dict[str, Tuple[float, float]] = {}
        self._local_lock = asyncio.Lock()

    async def decide(
        self,
        ip: str,
        user_agent: Optional[str],
        path: str = "",
        *,
        cost: int = 1,
        body: Optional[str] = None,
    ) -> GatewayDecision:
        if not self.enabled:
            return ALLOW
        try:
            kind = self._inspect(user_agent or "", path, body)
            if kind is None and not await self._consume(f"{ip}|{user_agent or ''}", cost):
                kind = DenyKind.RATE_LIMIT
        except Exception as exc:
            logger.error(
                "gateway_error", error_type=type(exc).__name__, error=str(exc), path=path
            )
            return ALLOW
        if kind is None:
            return ALLOW
        if self.mode is GatewayMode.DRY_RUN:
            logger.info("gateway_dry_run_deny", reason=kind.value, ip=ip, path=path)
            return GatewayDecision(allowed=True, reason_kind=kind, dry_run=True)
        logger.warning("gateway_deny", reason=kind.value, ip=ip, path=path)
        return GatewayDecision(allowed=False, reason_kind=kind)

    def _inspect(self, user_agent: str, path: str, body: Optional[str]) -> Optional[DenyKind]:
        if _SHIELD_PATTERNS.search(path):
            return DenyKind.SHIELD
        if not user_agent.strip() or "curl" in user_agent.lower():
            return DenyKind.FILTER
        if _BOT_PATTERNS.search(user_agent) and not _ALLOWED_BOTS.search(user_agent):
            return DenyKind.BOT
        if body is not None and _EMAIL_PATTERN.search(body):
            return DenyKind.SENSITIVE_INFO
        return None

    async def _consume(self, key: str, cost: int) -> bool:
        if self.capacity <= 0:
            return True
        if self.cache is not None:
            return await self.cache.check_rate_limit(
                key,
                self.capacity,
                self.interval_seconds,
                refill_tokens=self.refill_rate,
                scope="gateway",
                cost=cost,
            )
        refill_per_second = float(self.refill_rate) / float(max(1, self.interval_seconds))
        now = time.monotonic()
        async with self._local_lock:
            tokens, last = self._local_buckets.pop(key, (float(self.capacity), now))
            tokens = min(float(self.capacity), tokens + (now - last) * refill_per_second)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._local_buckets[key] = (tokens, now)
            if len(self._local_buckets) > self.max_local_buckets:
                self._evict_local_buckets(now, refill_per_second)
        return allowed

    def _evict_local_buckets(self, now: float, refill_per_second: float) -> None:
        # a refilled bucket is indistinguishable from a fresh one
        for key, (tokens, last) in list(self._local_buckets.items()):
            if tokens + (now - last) * refill_per_second >= self.capacity:
                del self._local_buckets[key]
        # entries are kept in least-recently-used order
        while len(self._local_buckets) > self.max_local_buckets:
            del self._local_buckets[next(iter(self._local_buckets))]
