from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from nexus_api.ai.batch import BatchJobSweeper
from nexus_api.api.routes import router as api_router
from nexus_api.core.config import get_settings
from nexus_api.events import InternalEvent, event_bus
from nexus_api.logging import configure_logging
from nexus_api.middleware.correlation_id import CorrelationIdMiddleware
from nexus_api.middleware.rate_limit import AIMutationRateLimitMiddleware
from nexus_api.middleware.request_logging import RequestLoggingMiddleware
from nexus_api.middleware.tenant_context import TenantContextMiddleware
from nexus_api.otel import configure_tracing, server_request_hook


configure_logging()
logger = logging.getLogger("app.lifecycle")
batch_job_sweeper = BatchJobSweeper()
_subscriptions_registered = False

_ai_event_types = [
    "ai.proposal.created",
    "ai.proposal.resolved",
    "ai.proposal.undone",
]


def _on_system_event(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_ai_domain_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload", {}) if isinstance(event.payload, dict) else {}
    logger.info(
        "ai_domain_event",
        extra={
            "event_name": event.name,
            "tenant_id": event.payload.get("tenant_id") if isinstance(event.payload, dict) else None,
            "proposal_id": payload.get("proposal_id"),
            "proposal_type": payload.get("type"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_event)
        event_bus.subscribe("system.stopping", _on_system_event)
        for event_name in _ai_event_types:
            event_bus.subscribe(event_name, _on_ai_domain_event)
        _subscriptions_registered = True
    batch_job_sweeper.start()
    event_bus.publish("system.started", {"service": "api"})
    try:
        yield
    finally:
        event_bus.publish("system.stopping", {"service": "api"})
        batch_job_sweeper.stop()


app = FastAPI(title=get_settings().app_name, version=get_settings().app_version, lifespan=lifespan)
app.add_middleware(AIMutationRateLimitMiddleware)
app.add_middleware(TenantContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

configure_tracing(get_settings())
if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
