from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app import events
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.crm.api import error_response
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import MutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.platform.security.memberships import (
    CachedMembershipResolver,
    DbMembershipResolver,
    set_membership_resolver,
)


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_task_event_types = [
    "crm.task.created",
    "crm.task.completed",
    "crm.lead.created",
]


def _on_domain_event(envelope: dict[str, Any]) -> None:
    payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    logger.info(
        "domain_event",
        extra={
            "event_type": envelope.get("event_type"),
            "tenant_id": envelope.get("tenant_id"),
            "task_id": payload.get("task_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        for event_type in _task_event_types:
            events.subscribe(event_type, _on_domain_event)
        _subscriptions_registered = True
    logger.info("system.started", extra={"status": "ok"})
    yield


app = FastAPI(title="Lynk API", version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):  # type: ignore[no-untyped-def]
    # Task creation answers malformed bodies with the same envelope as its own validation.
    if request.url.path.rstrip("/") == "/api/tasks" and request.method.upper() == "POST":
        return error_response(
            request,
            status_code=400,
            code="invalid_body",
            message="Invalid request body",
        )
    return await request_validation_exception_handler(request, exc)


settings = get_settings()
if settings.membership_resolver_backend.lower() == "cached":
    set_membership_resolver(
        CachedMembershipResolver(DbMembershipResolver(), ttl_seconds=float(settings.membership_cache_ttl_seconds))
    )
else:
    set_membership_resolver(None)

if settings.otel_enabled:
    setup_otel("lynk-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
