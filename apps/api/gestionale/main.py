from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from gestionale.api.routes import router as api_router
from gestionale.core.config import get_settings
from gestionale.core.events import ALL_EVENTS, InternalEvent, event_bus
from gestionale.crm.api import error_response
from gestionale.logging import configure_logging
from gestionale.middleware.correlation_id import CorrelationIdMiddleware
from gestionale.middleware.rate_limit import CrmMutationRateLimitMiddleware
from gestionale.middleware.request_logging import RequestLoggingMiddleware
from gestionale.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("gestionale.lifecycle")
events_logger = logging.getLogger("gestionale.events")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"action": event.name, "status": "started"})


def _on_crm_domain_event(event: InternalEvent) -> None:
    if not event.name.startswith("crm."):
        return
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    entity_id = None
    if isinstance(payload, dict):
        entity_id = next((value for key, value in payload.items() if key.endswith("_id") and value), None)
    events_logger.info(
        "domain_event",
        extra={
            "action": event.name,
            "entity_id": entity_id,
            "actor_user_id": event.payload.get("actor_user_id") if isinstance(event.payload, dict) else None,
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(ALL_EVENTS, _on_crm_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Gestionale API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", []) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else str(first.get("msg", "invalid request"))
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="request_validation_failed",
        message=message,
        details=errors,
    )


setup_otel(get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
