"""HITL broker -- FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from fastapi import Depends, FastAPI

from hitl_broker.api.deps import require_token
from hitl_broker.api.routers.events import router as events_router
from hitl_broker.api.routers.health import router as health_router
from hitl_broker.api.routers.questions import router as questions_router
from hitl_broker.api.routers.ui import router as ui_router
from hitl_broker.clients import http
from hitl_broker.config import VERSION, BrokerOptions, settings
from hitl_broker.middleware import RequestIDMiddleware
from hitl_broker.middleware.access_log import AccessLogMiddleware
from hitl_broker.middleware.exception_handler import setup_exception_handlers
from hitl_broker.services.event_stream import HEARTBEAT_INTERVAL, POLL_INTERVAL
from hitl_broker.store import resolve_dir

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerOptions:
    """Everything ``create_app`` needs; the CLI builds one from ``settings``."""

    broker_options: BrokerOptions = field(default_factory=BrokerOptions)
    token: str | None = None
    poll_interval: float = POLL_INTERVAL
    heartbeat_interval: float = HEARTBEAT_INTERVAL


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Application lifespan: startup and shutdown hooks."""
    options: BrokerOptions = application.state.broker_options
    logger.info(
        "HITL broker %s serving %s (token %s)",
        VERSION,
        resolve_dir(options),
        "required" if application.state.token else "disabled",
    )
    yield
    await http.close_client()


def create_app(options: ServerOptions | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if options is None:
        options = ServerOptions(
            broker_options=BrokerOptions.from_settings(),
            token=settings.HITL_TOKEN or None,
        )

    application = FastAPI(
        title="HITL broker",
        version=VERSION,
        description="Human-in-the-loop question broker",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        dependencies=[Depends(require_token)],
    )
    application.state.broker_options = options.broker_options
    application.state.token = options.token or None
    application.state.poll_interval = options.poll_interval
    application.state.heartbeat_interval = options.heartbeat_interval

    setup_exception_handlers(application)

    # Last added runs first: RequestID must wrap AccessLog.
    application.add_middleware(AccessLogMiddleware)
    application.add_middleware(RequestIDMiddleware)

    application.include_router(health_router)
    application.include_router(ui_router)
    application.include_router(questions_router)
    application.include_router(events_router)
    return application
