import logging
from collections.abc import Iterator
from contextlib import asynccontextmanager, contextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.orm import Session

from stageflow.api.routes import router as api_router
from stageflow.automation.dispatcher import EVENT_TRIGGERS, automation_dispatcher
from stageflow.core.config import get_settings
from stageflow.core.database import get_db
from stageflow.core.events import InternalEvent, event_bus
from stageflow.logging import configure_logging
from stageflow.middleware.correlation_id import CorrelationIdMiddleware
from stageflow.middleware.rate_limit import MutationRateLimitMiddleware
from stageflow.middleware.request_logging import RequestLoggingMiddleware
from stageflow.otel import get_fastapi_server_request_hook, setup_otel

configure_logging()
logger = logging.getLogger("stageflow.lifecycle")


def _log_system_event(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _dispatch_session_scope(application: FastAPI):
    """Sessions for post-commit workflow dispatch, from ``get_db`` or its override."""

    @contextmanager
    def session_scope() -> Iterator[Session]:
        provider = application.dependency_overrides.get(get_db, get_db)
        sessions = provider()
        try:
            yield next(sessions)
        finally:
            sessions.close()

    return session_scope


@asynccontextmanager
async def lifespan(application: FastAPI):
    event_bus.subscribe("system.started", _log_system_event)
    event_bus.subscribe(EVENT_TRIGGERS, automation_dispatcher.handle_event)
    automation_dispatcher.session_scope = _dispatch_session_scope(application)
    event_bus.publish(
        "system.started",
        {"service": "api", "dispatch_mode": get_settings().automation_dispatch_mode},
    )
    try:
        yield
    finally:
        automation_dispatcher.shutdown(wait=True)


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    # Last added runs outermost.
    application.add_middleware(MutationRateLimitMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    if settings.otel_enabled:
        setup_otel("api", True)
    FastAPIInstrumentor().instrument_app(application, server_request_hook=get_fastapi_server_request_hook())
    return application


app = create_app()
