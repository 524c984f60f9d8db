from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from bron_backend.app import create_app
from bron_backend.core.eventbus import MemoryEventBus
from bron_backend.core.settings import Settings
from bron_backend.db.models import Base
from bron_backend.db.session import make_engine, make_session_factory
from bron_backend.providers.base import ContentBlock, ReasoningResponse
from bron_backend.providers.mock import ScriptedProvider
from bron_backend.repositories.run_repo import SQLAlchemyRunRepository
from bron_backend.services.approval import ACTION_SEND_DRAFT, ApprovalGate
from bron_backend.services.bron_service import BronService
from bron_backend.services.event_log import EventLog
from bron_backend.services.executor import RunExecutor
from bron_backend.services.orchestrator import ChildRunOrchestrator
from bron_backend.services.scheduler import RunScheduler
from bron_backend.services.state_machine import RunStateMachine
from bron_backend.tools.gmail import GmailClient, StaticTokenProvider


# ── helpers ──

def text(value: str, stop_reason: str = "end_turn") -> ReasoningResponse:
    return ReasoningResponse(content=[ContentBlock.text_block(value)], stop_reason=stop_reason)


def tool_call(name: str, args: dict[str, Any], call_id: str = "tu_1", preamble: str | None = None) -> ReasoningResponse:
    blocks = [ContentBlock.text_block(preamble)] if preamble else []
    blocks.append(ContentBlock.tool_use(call_id, name, args))
    return ReasoningResponse(content=blocks, stop_reason="tool_use")


class FakeGmail:
    """In-memory stand-in for the Gmail REST API, served through httpx.MockTransport."""

    def __init__(self):
        self.messages: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.drafts: list[dict[str, Any]] = []
        self.sent: list[str] = []
        self.fail_send = False

    def add_message(self, message_id: str, subject: str, sender: str = "billing@example.com") -> None:
        self.messages[message_id] = {
            "id": message_id,
            "threadId": f"t-{message_id}",
            "snippet": subject.lower(),
            "payload": {
                "headers": [
                    {"name": "Subject", "value": subject},
                    {"name": "From", "value": sender},
                    {"name": "Date", "value": "Mon, 1 Jan 2024 10:00:00 +0000"},
                ],
                "parts": [
                    {"mimeType": "text/plain", "body": {"data": "SGVsbG8"}},
                    {
                        "mimeType": "application/pdf",
                        "filename": "invoice.pdf",
                        "body": {"attachmentId": f"att-{message_id}", "size": 1024},
                    },
                ],
            },
        }

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.split("/users/me", 1)[-1]
        if request.method == "GET" and path == "/messages":
            ids = [{"id": mid} for mid in self.messages]
            return httpx.Response(200, json={"messages": ids} if ids else {"resultSizeEstimate": 0})
        if request.method == "GET" and path.startswith("/messages/") and "/attachments/" in path:
            return httpx.Response(200, json={"size": 3, "data": "YWJj"})
        if request.method == "GET" and path.startswith("/messages/"):
            message = self.messages.get(path.rsplit("/", 1)[-1])
            if message is None:
                return httpx.Response(404, json={"error": {"message": "Requested entity was not found."}})
            return httpx.Response(200, json=message)
        if request.method == "POST" and path == "/drafts":
            draft = {"id": f"draft-{len(self.drafts) + 1}", "message": {"id": f"dm-{len(self.drafts) + 1}"}}
            self.drafts.append({**draft, "body": json.loads(request.content)})
            return httpx.Response(200, json=draft)
        if request.method == "POST" and path == "/drafts/send":
            if self.fail_send:
                return httpx.Response(500, json={"error": {"message": "Backend Error"}})
            draft_id = json.loads(request.content)["id"]
            self.sent.append(draft_id)
            return httpx.Response(200, json={"id": f"sent-{draft_id}", "threadId": "t-1"})
        return httpx.Response(404, json={"error": {"message": f"Unhandled {request.method} {path}"}})


class Engine:
    """Engine components wired the way the app lifespan wires them."""

    def __init__(self, session_factory, settings: Settings, provider: ScriptedProvider, gmail: GmailClient):
        self.session_factory = session_factory
        self.settings = settings
        self.provider = provider
        self.gmail = gmail
        self.bus = MemoryEventBus(backlog_size=settings.eventbus_backlog)
        self.log = EventLog(session_factory, self.bus)
        self.machine = RunStateMachine(self.log)
        self.approvals = ApprovalGate(self.log, require_token=settings.approval_require_token)
        self.approvals.register(ACTION_SEND_DRAFT, lambda payload: gmail.send_draft(payload["draftId"]))
        self.orchestrator = ChildRunOrchestrator(
            self.log,
            autostart=settings.child_autostart,
            default_timeout_ms=settings.child_await_timeout_ms,
            default_poll_interval_ms=settings.child_poll_interval_ms,
        )
        self.executor = RunExecutor(self.log, provider, gmail, self.approvals, self.orchestrator, settings)
        self.scheduler = RunScheduler(self.executor)
        self.orchestrator.scheduler = self.scheduler

    async def create_bron(self, name: str = "Ada", **kwargs) -> str:
        bron = await BronService(self.session_factory).create(name=name, **kwargs)
        return bron["id"]

    async def create_run(self, bron_id: str, prompt: str = "search for invoices", title: str = "Test run") -> str:
        run, _ = await self.log.create_run(bron_id, title, prompt)
        return run.id

    async def get_run(self, run_id: str):
        async with self.session_factory() as session:
            return await SQLAlchemyRunRepository(session).get_by_id(run_id)

    async def events(self, run_id: str) -> list[dict[str, Any]]:
        return await self.log.read(run_id, limit=1000)

    async def statuses(self, run_id: str) -> list[str]:
        return [e["payload"]["status"] for e in await self.events(run_id) if e["type"] == "status"]


# ── fixtures ──

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'bron-test.db'}",
        provider_mode="mock",
        gmail_access_token="test-access-token",
        log_level="WARNING",
        sse_heartbeat_seconds=0.2,
        sse_poll_interval_seconds=0.05,
        child_poll_interval_ms=20,
        child_await_timeout_ms=5000,
        cors_origins="http://localhost:5173",
    )


@pytest_asyncio.fixture
async def session_factory(settings: Settings):
    engine = make_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def fake_gmail() -> FakeGmail:
    return FakeGmail()


@pytest_asyncio.fixture
async def gmail(fake_gmail: FakeGmail):
    client = GmailClient(StaticTokenProvider("test-access-token"), transport=fake_gmail.transport())
    yield client
    await client.aclose()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest_asyncio.fixture
async def engine(session_factory, settings, provider, gmail):
    eng = Engine(session_factory, settings, provider, gmail)
    yield eng
    await eng.scheduler.shutdown()


@pytest_asyncio.fixture
async def app_and_client(settings: Settings, provider: ScriptedProvider, gmail: GmailClient):
    app = create_app(settings)
    app.state.reasoning_provider = provider
    app.state.gmail = gmail
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as c:
            yield app, c
