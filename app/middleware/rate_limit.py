from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Protocol

import redis
from fastapi import HTTPException, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import decode_bearer_token
from app.core.config import get_settings
from app.metrics import observe_rate_limit_rejection


logger = logging.getLogger("app.rate_limit")


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, user_id: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (user_id, route_group)

        with self._lock:
            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[key] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after

            current.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


class WindowBackend(Protocol):
    def hit(self, key: str, window_seconds: int) -> tuple[int, int]: ...

    def clear(self) -> None: ...


class MemoryWindowBackend:
    """Fixed-window counters held by this process only."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[int, int]] = {}

    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        now = time.time()
        bucket = int(now // window_seconds)
        with self._lock:
            current_bucket, count = self._windows.get(key, (bucket, 0))
            if current_bucket != bucket:
                count = 0
            count += 1
            self._windows[key] = (bucket, count)
        reset_in = max(1, math.ceil((bucket + 1) * window_seconds - now))
        return count, reset_in

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


class RedisWindowBackend:
    """Fixed-window counters shared by every instance through redis."""

    def __init__(self, url: str, prefix: str = "nextcrm:ratelimit") -> None:
        self.prefix = prefix
        self._client = redis.from_url(url, decode_responses=True, socket_timeout=5, socket_connect_timeout=5)

    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        now = time.time()
        bucket = int(now // window_seconds)
        redis_key = f"{self.prefix}:{key}:{bucket}"
        pipeline = self._client.pipeline()
        pipeline.incr(redis_key)
        pipeline.expire(redis_key, window_seconds)
        count, _ = pipeline.execute()
        reset_in = max(1, math.ceil((bucket + 1) * window_seconds - now))
        return int(count), reset_in

    def clear(self) -> None:
        for redis_key in self._client.scan_iter(match=f"{self.prefix}:*"):
            self._client.delete(redis_key)


class WindowRateLimiter:
    def __init__(self, backend: WindowBackend) -> None:
        self.backend = backend

    def check(self, scope: str, key: str, limit: int, window_seconds: int) -> None:
        count, reset_in = self.backend.hit(f"{scope}:{key}", window_seconds)
        if count <= limit:
            return
        observe_rate_limit_rejection(scope)
        logger.warning("rate_limit.rejected", extra={"scope": scope})
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(reset_in)},
        )

    def clear(self) -> None:
        self.backend.clear()


_limiter = _TokenBucketLimiter()
_window_limiter: WindowRateLimiter | None = None


def get_window_limiter() -> WindowRateLimiter:
    global _window_limiter
    if _window_limiter is None:
        settings = get_settings()
        if settings.rate_limit_backend == "redis":
            _window_limiter = WindowRateLimiter(RedisWindowBackend(settings.redis_url))
        else:
            _window_limiter = WindowRateLimiter(MemoryWindowBackend())
    return _window_limiter


def check_rate_limit(scope: str, key: str, limit: int, window_seconds: int) -> None:
    if get_settings().rate_limit_disabled:
        return
    get_window_limiter().check(scope, key, limit, window_seconds)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PATCH", "PUT", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith("/api/crm") or request.method.upper() not in self.mutating_methods:
            return await call_next(request)

        auth_user = decode_bearer_token(request)
        user_id = auth_user.sub if auth_user is not None else "anonymous"
        route_group = _resolve_route_group(path)
        allowed, retry_after = _limiter.take(
            user_id=user_id,
            route_group=route_group,
            capacity=settings.rate_limit_crm_mutations_per_minute,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        observe_rate_limit_rejection(f"crm.{route_group}")
        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": None,
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    if len(parts) < 3:
        return "crm"
    return parts[2]


def reset_rate_limiter() -> None:
    global _window_limiter
    _limiter.clear()
    if _window_limiter is not None:
        _window_limiter.clear()
    _window_limiter = None
