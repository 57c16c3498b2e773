from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadboard.context import get_correlation_id
from leadboard.core.auth import decode_token, bearer_token
from leadboard.core.config import get_settings


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, caller: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (caller, route_group)

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


_limiter = _TokenBucketLimiter()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token buckets for CRM mutations (per user) and inbound webhook calls (per webhook id)."""

    mutating_methods = {"POST", "PATCH", "PUT", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        method = request.method.upper()
        if path == "/webhook-lead":
            caller = request.query_params.get("webhook_id") or _client_host(request)
            route_group = "webhook-lead"
            capacity = settings.rate_limit_webhook_calls_per_minute
        elif path.startswith("/api/crm") and method in self.mutating_methods:
            caller = decode_token(bearer_token(request)).sub
            route_group = _resolve_route_group(path)
            capacity = settings.rate_limit_crm_mutations_per_minute
        else:
            return await call_next(request)

        allowed, retry_after = _limiter.take(
            caller=caller,
            route_group=route_group,
            capacity=capacity,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

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


def _client_host(request: Request) -> str:
    return request.client.host if request.client is not None else "unknown"


def reset_rate_limiter() -> None:
    _limiter.clear()
