"""EventLog: append-only, per-run sequenced event store.

Every write for a run goes through a per-run ``asyncio.Lock`` and a single
database transaction that bumps ``runs.last_seq`` and inserts the event with
that number. Events are published to the in-process bus only after commit.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.eventbus import BusEvent, EventBus, run_channel
from ..core.exceptions import BronError, EventLogError, InvalidRequestError, NotFoundError, RunClosedError
from ..core.logging import get_logger
from ..db.models import Run, RunEvent
from ..repositories.run_repo import SQLAlchemyRunRepository

logger = get_logger(__name__)

EVENT_TYPES = frozenset({"status", "log", "message", "tool", "ui", "artifact", "child_run"})
_TERMINAL = frozenset({"succeeded", "failed", "canceled"})


def serialize_event(event: RunEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "run_id": event.run_id,
        "seq": event.seq,
        "type": event.type,
        "payload": event.payload,
        "created_at": event.created_at.isoformat(),
    }


class _RunLocks:
    """Refcounted asyncio locks keyed by run id."""

    def __init__(self):
        self._entries: dict[str, list] = {}

    @asynccontextmanager
    async def hold(self, run_id: str) -> AsyncIterator[None]:
        entry = self._entries.setdefault(run_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._entries.pop(run_id, None)

    def __len__(self) -> int:
        return len(self._entries)


class LogSession:
    """One database transaction against the log; events are staged for publish."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.runs = SQLAlchemyRunRepository(session)
        self.staged: list[dict[str, Any]] = []

    async def append(self, run_id: str, type: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if type not in EVENT_TYPES:
            raise InvalidRequestError(f"Unknown event type: {type}")
        allocated = await self.runs.allocate_seq(run_id)
        if allocated is None:
            raise NotFoundError("Run not found")
        seq, status = allocated
        if status in _TERMINAL:
            raise RunClosedError(run_id, status)
        event = await self.runs.add_event(run_id, seq, type, payload or {})
        data = serialize_event(event)
        self.staged.append(data)
        return data

    async def create_run(
        self,
        bron_id: str,
        title: str,
        prompt: str,
        parent_run_id: str | None = None,
    ) -> tuple[Run, dict[str, Any]]:
        """Insert a queued run together with its initial status event."""
        run = await self.runs.create(bron_id=bron_id, title=title, prompt=prompt, parent_run_id=parent_run_id)
        event = await self.append(run.id, "status", {"status": "queued"})
        return run, event


class RunWriter:
    """Handle for writing to one run while holding that run's lock."""

    def __init__(self, scope: LogSession, run_id: str):
        self.scope = scope
        self.run_id = run_id

    @property
    def session(self) -> AsyncSession:
        return self.scope.session

    async def get_run(self) -> Run:
        run = await self.scope.runs.get_by_id(self.run_id)
        if run is None:
            raise NotFoundError("Run not found")
        return run

    async def append(self, type: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.scope.append(self.run_id, type, payload)


class EventLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], eventbus: EventBus | None = None):
        self._sf = session_factory
        self._bus = eventbus
        self._locks = _RunLocks()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._sf

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LogSession]:
        """Open a write transaction; publish staged events after commit."""
        async with self._sf() as session:
            scope = LogSession(session)
            try:
                async with session.begin():
                    yield scope
            except BronError:
                raise
            except SQLAlchemyError as exc:
                logger.error("Event log write failed", data={"error": str(exc)})
                raise EventLogError("Failed to commit run events", details={"error": type(exc).__name__}) from exc
        await self._publish(scope.staged)

    @asynccontextmanager
    async def writer(self, run_id: str) -> AsyncIterator[RunWriter]:
        """Serialize all writes for ``run_id`` through one lock and one transaction."""
        async with self._locks.hold(run_id):
            async with self.transaction() as scope:
                yield RunWriter(scope, run_id)

    async def append(self, run_id: str, type: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Append one event and return it once committed."""
        async with self.writer(run_id) as w:
            event = await w.append(type, payload)
        logger.debug(
            f"Appended {type} event",
            data={"run_id": run_id, "seq": event["seq"], "type": type},
        )
        return event

    async def create_run(
        self,
        bron_id: str,
        title: str,
        prompt: str,
        parent_run_id: str | None = None,
    ) -> tuple[Run, dict[str, Any]]:
        async with self.transaction() as scope:
            return await scope.create_run(bron_id, title, prompt, parent_run_id)

    async def read(self, run_id: str, after_seq: int = 0, limit: int = 500) -> list[dict[str, Any]]:
        """Events with seq > after_seq, ascending, at most ``limit``."""
        async with self._sf() as session:
            events = await SQLAlchemyRunRepository(session).get_events(run_id, after_seq=after_seq, limit=limit)
            return [serialize_event(e) for e in events]

    async def read_latest(self, run_id: str, type: str | None = None, limit: int = 10) -> list[dict[str, Any]]:
        """Newest events first, optionally filtered by type."""
        async with self._sf() as session:
            events = await SQLAlchemyRunRepository(session).get_latest_events(run_id, type=type, limit=limit)
            return [serialize_event(e) for e in events]

    async def get_status(self, run_id: str) -> str | None:
        async with self._sf() as session:
            return await SQLAlchemyRunRepository(session).get_status(run_id)

    async def _publish(self, events: list[dict[str, Any]]) -> None:
        if self._bus is None:
            return
        for data in events:
            await self._bus.publish(BusEvent(channel=run_channel(data["run_id"]), seq=data["seq"], data=data))
