from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from nexus_api.context import get_correlation_id
from nexus_api.core.auth import ANONYMOUS, decode_bearer
from nexus_api.core.config import get_settings

logger = logging.getLogger("nexus_api.middleware.rate_limit")

WINDOW_SECONDS = 60
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
# Routes that fan out to the model or a paid provider get their own, smaller bucket.
ORACLE_ROUTE_GROUPS = frozenset({"proactive-insights", "batch-enrich", "local-seo"})


@dataclass(frozen=True)
class BucketKey:
    user_id: str
    tenant_id: str
    route_group: str


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    """Per-key token buckets that refill continuously over a one minute window."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_buckets: int = 10_000) -> None:
        self._clock = clock
        self._max_buckets = max_buckets
        self._lock = threading.Lock()
        self._buckets: dict[BucketKey, _Bucket] = {}

    def take(self, key: BucketKey, capacity: int) -> int:
        """Consume one token. Returns 0 when allowed, otherwise the wait in milliseconds."""
        if capacity <= 0:
            return WINDOW_SECONDS * 1000
        now = self._clock()
        with self._lock:
            if key not in self._buckets and len(self._buckets) >= self._max_buckets:
                self._evict_idle(now)
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + (now - bucket.refilled_at) * capacity / WINDOW_SECONDS)
            bucket.refilled_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1000, math.ceil((1.0 - bucket.tokens) * WINDOW_SECONDS * 1000 / capacity))

    def _evict_idle(self, now: float) -> None:
        # A bucket untouched for a full window has refilled, so dropping it loses nothing.
        idle = [key for key, bucket in self._buckets.items() if now - bucket.refilled_at >= WINDOW_SECONDS]
        for key in idle:
            del self._buckets[key]

    def __len__(self) -> int:
        return len(self._buckets)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def route_group_for(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    return parts[2] if len(parts) > 2 else "ai"


def _bucket_key(request: Request) -> BucketKey:
    claims = decode_bearer(request.headers.get("authorization")) or {}
    user_id = str(claims.get("sub") or ANONYMOUS)
    # Unauthenticated callers share one bucket per route group whatever tenant header they send.
    tenant_id = (request.headers.get("x-tenant-id") or "").strip() if user_id != ANONYMOUS else ""
    return BucketKey(
        user_id=user_id,
        tenant_id=tenant_id or "-",
        route_group=route_group_for(request.url.path),
    )


def _too_many_requests(request: Request, wait_ms: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id() or getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
    )
    return JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": {"retry_after_ms": wait_ms},
            "correlation_id": correlation_id,
        },
        headers={"Retry-After": str(math.ceil(wait_ms / 1000)), "X-Correlation-Id": correlation_id},
    )


class AIMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not request.url.path.startswith("/api/ai")
        ):
            return await call_next(request)

        key = _bucket_key(request)
        capacity = (
            settings.rate_limit_ai_oracle_routes_per_minute
            if key.route_group in ORACLE_ROUTE_GROUPS
            else settings.rate_limit_ai_mutations_per_minute
        )
        wait_ms = _limiter.take(key, capacity)
        if not wait_ms:
            return await call_next(request)

        logger.warning(
            "ai.rate_limited",
            extra={"tenant_id": key.tenant_id, "route_group": key.route_group, "wait_ms": wait_ms},
        )
        return _too_many_requests(request, wait_ms)


def reset_rate_limiter() -> None:
    _limiter.clear()
