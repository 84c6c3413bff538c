from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from gestionale.context import get_actor_user_id, get_correlation_id
from gestionale.core.config import get_settings


MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
CRM_PREFIX = "/api/crm/"
WINDOW_SECONDS = 60


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    """Per (user, route group) token buckets refilled continuously over a fixed window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, key: tuple[str, str], capacity: int, window_seconds: int = WINDOW_SECONDS) -> int:
        """Consume one token. Returns 0 when allowed, otherwise the seconds to wait."""
        if capacity <= 0:
            return window_seconds

        rate = capacity / float(window_seconds)
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * rate)
            bucket.refilled_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / rate))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def resolve_route_group(path: str) -> str:
    """Map a CRM path to ``resource:verb``.

    ``/api/crm/leads/<id>/convert`` becomes ``leads:convert``; plain collection and item
    writes share ``<resource>:write`` so ids never split a bucket.
    """
    segments = [segment for segment in path[len(CRM_PREFIX):].split("/") if segment]
    if not segments:
        return "crm:write"
    resource = segments[0]
    verb = segments[2] if len(segments) >= 3 else "write"
    return f"{resource}:{verb}"


def _rate_limited(correlation_id: str, retry_after: int) -> JSONResponse:
    response = JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests, retry later",
            "details": None,
            "kind": "backend_error",
            "correlation_id": correlation_id,
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    response.headers["X-Correlation-Id"] = correlation_id
    return response


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not path.startswith(CRM_PREFIX)
        ):
            return await call_next(request)

        key = (get_actor_user_id() or "anonymous", resolve_route_group(path))
        retry_after = _limiter.take(key, settings.rate_limit_crm_mutations_per_minute)
        if not retry_after:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or str(uuid.uuid4())
        )
        return _rate_limited(correlation_id, retry_after)


def reset_rate_limiter() -> None:
    _limiter.clear()
