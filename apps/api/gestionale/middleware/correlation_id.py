from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from gestionale.context import bind_request_context
from gestionale.core.auth import decode_bearer_token


CORRELATION_HEADER = "x-correlation-id"
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def is_valid_correlation_id(value: str) -> bool:
    return bool(_VALID_CORRELATION_ID.match(value))


def resolve_correlation_id(raw: str | None) -> str:
    candidate = (raw or "").strip()
    if candidate and is_valid_correlation_id(candidate):
        return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Accept or mint a correlation id and bind it for the rest of the request.

    Ids that are too long or carry unexpected characters are replaced rather than echoed.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        claims = decode_bearer_token(request.headers.get("authorization", "")) or {}
        actor_user_id = str(claims["sub"]) if claims.get("sub") else None

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        with bind_request_context(correlation_id, actor_user_id):
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
