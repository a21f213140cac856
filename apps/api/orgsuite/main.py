from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from orgsuite.api.routes import router as api_router
from orgsuite.core.config import get_settings
from orgsuite.core.context import RequestContextMiddleware
from orgsuite.core.events import InternalEvent, event_bus
from orgsuite.errors import OrgSuiteError
from orgsuite.logging import configure_logging
from orgsuite.middleware.correlation_id import CorrelationIdMiddleware
from orgsuite.middleware.request_logging import RequestLoggingMiddleware
from orgsuite.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("orgsuite.lifecycle")
_subscriptions_registered = False

_logged_event_patterns = [
    "entity.moved",
    "entity.deactivated",
    "membership.user_deactivated",
    "invitation.*",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_domain_event(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    body = payload.get("payload") if isinstance(payload.get("payload"), dict) else {}
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "tenant_id": body.get("tenant_id"),
            "entity_id": body.get("entity_id"),
            "user_id": body.get("user_id"),
            "invitation_id": body.get("invitation_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for pattern in _logged_event_patterns:
            event_bus.subscribe(pattern, _on_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="OrgSuite API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(OrgSuiteError)
async def handle_domain_error(request: Request, exc: OrgSuiteError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", extra={"path": request.url.path, "error": exc.message})
    payload = exc.to_payload()
    payload["correlation_id"] = getattr(request.state, "correlation_id", None)
    return JSONResponse(status_code=exc.status_code, content=payload)


settings = get_settings()
if settings.otel_enabled:
    setup_otel("orgsuite-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
