from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from gestionale.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("gestionale.request")


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` line per request, labelled with the route template, never the raw ids."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - started
            path = resolve_http_path_label(request)
            observe_http_request(method=request.method, path=path, status=500, duration=elapsed)
            logger.exception(
                "http.error",
                extra={"method": request.method, "path": path, "status_code": 500, "duration_ms": round(elapsed * 1000, 2)},
            )
            raise

        elapsed = time.perf_counter() - started
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=response.status_code, duration=elapsed)
        logger.log(
            _level_for(response.status_code),
            "http.request",
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(elapsed * 1000, 2),
            },
        )
        return response
