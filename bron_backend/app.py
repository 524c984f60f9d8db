"""FastAPI application factory and lifespan wiring."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import api_router, health_router
from .core.eventbus import MemoryEventBus
from .core.exceptions import setup_exception_handlers
from .core.logging import get_logger, setup_logging
from .core.middleware import RequestContextMiddleware, RequestSizeLimitMiddleware
from .core.settings import Settings, get_settings
from .db.models import Base
from .db.session import make_engine, make_session_factory
from .providers.registry import get_reasoning_provider
from .services.approval import ACTION_SEND_DRAFT, ApprovalGate
from .services.event_log import EventLog
from .services.executor import RunExecutor
from .services.orchestrator import ChildRunOrchestrator
from .services.scheduler import RunScheduler
from .services.state_machine import RunStateMachine
from .streaming.distributor import RunStreamDistributor
from .tools.gmail import GmailClient, StaticTokenProvider

logger = get_logger(__name__)


def _send_draft_performer(gmail: GmailClient):
    async def perform(payload: dict[str, Any]) -> dict[str, Any]:
        return await gmail.send_draft(payload["draftId"])

    return perform


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings: Settings = app.state.settings

    setup_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        log_file=settings.log_file or None,
    )
    logger.info(
        "Starting bron backend",
        data={
            "environment": settings.environment,
            "provider_mode": settings.provider_mode,
            "database": "sqlite" if settings.is_sqlite else "postgresql",
        },
    )

    engine = make_engine(settings.database_url, echo=settings.database_echo)
    session_factory = make_session_factory(engine)
    if settings.auto_create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    eventbus = MemoryEventBus(backlog_size=settings.eventbus_backlog)
    event_log = EventLog(session_factory, eventbus)

    # Providers and the mail client may be injected before startup (useful in tests)
    if not hasattr(app.state, "reasoning_provider"):
        app.state.reasoning_provider = get_reasoning_provider(settings)
    if not hasattr(app.state, "gmail"):
        app.state.gmail = GmailClient(
            StaticTokenProvider(settings.gmail_access_token or None),
            base_url=settings.gmail_api_base,
            timeout=settings.gmail_timeout_seconds,
        )
    provider = app.state.reasoning_provider
    gmail: GmailClient = app.state.gmail

    approvals = ApprovalGate(event_log, require_token=settings.approval_require_token)
    approvals.register(ACTION_SEND_DRAFT, _send_draft_performer(gmail))
    orchestrator = ChildRunOrchestrator(
        event_log,
        autostart=settings.child_autostart,
        default_timeout_ms=settings.child_await_timeout_ms,
        default_poll_interval_ms=settings.child_poll_interval_ms,
    )
    executor = RunExecutor(event_log, provider, gmail, approvals, orchestrator, settings)
    scheduler = RunScheduler(executor)
    orchestrator.scheduler = scheduler

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.eventbus = eventbus
    app.state.event_log = event_log
    app.state.state_machine = RunStateMachine(event_log)
    app.state.approvals = approvals
    app.state.orchestrator = orchestrator
    app.state.executor = executor
    app.state.scheduler = scheduler
    app.state.distributor = RunStreamDistributor.from_settings(event_log, eventbus, settings)

    yield

    logger.info("Shutting down bron backend")
    await scheduler.shutdown()
    await provider.aclose()
    await gmail.aclose()
    await engine.dispose()
    logger.info("Database engine disposed")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Bron Backend",
        description="Agent run engine: event-sourced runs, tool loop, approvals, SSE",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    setup_exception_handlers(app)

    # last added = first executed
    app.add_middleware(RequestSizeLimitMiddleware, max_bytes=1_048_576)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Last-Event-ID", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    app.include_router(health_router)
    app.include_router(api_router)
    return app
