from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadboard.api.errors import crm_error_response
from leadboard.api.routes import router as api_router
from leadboard.core.config import get_settings
from leadboard.core.context import RequestContextMiddleware
from leadboard.core.database import SessionLocal, get_db
from leadboard.core.errors import CRMError
from leadboard.core.events import InternalEvent, event_bus
from leadboard.crm.delivery import celery_dispatcher
from leadboard.crm.store import lead_store
from leadboard.crm.webhooks import OUTGOING_REQUESTED_EVENT, OutgoingWebhookRelay
from leadboard.logging import configure_logging
from leadboard.middleware.correlation_id import CorrelationIdMiddleware
from leadboard.middleware.rate_limit import RateLimitMiddleware
from leadboard.middleware.request_logging import RequestLoggingMiddleware
from leadboard.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("leadboard.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _relay_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


outgoing_relay = OutgoingWebhookRelay(_relay_session_scope, celery_dispatcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        lead_store.subscribe(outgoing_relay.handle_lead_change)
        event_bus.subscribe(OUTGOING_REQUESTED_EVENT, outgoing_relay.handle_outgoing_request)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Leadboard API", version="0.1.0", lifespan=lifespan)


@app.exception_handler(CRMError)
async def handle_crm_error(request: Request, exc: CRMError):  # type: ignore[no-untyped-def]
    return crm_error_response(request, exc)


settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-correlation-id"],
)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("leadboard-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
