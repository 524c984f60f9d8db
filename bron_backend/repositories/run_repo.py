"""Run + RunEvent repository."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import Run, RunEvent
from ..db.types import GUID


@runtime_checkable
class RunRepository(Protocol):
    async def get_by_id(self, id: str) -> Run | None: ...
    async def create(self, bron_id: str, title: str, prompt: str, parent_run_id: str | None = None) -> Run: ...
    async def list_for_bron(self, bron_id: str, limit: int = 20, offset: int = 0) -> list[Run]: ...
    async def list_children(self, parent_run_id: str) -> list[Run]: ...
    async def allocate_seq(self, run_id: str) -> tuple[int, str] | None: ...
    async def add_event(self, run_id: str, seq: int, type: str, payload: dict[str, Any]) -> RunEvent: ...
    async def get_events(self, run_id: str, after_seq: int = 0, limit: int = 500) -> list[RunEvent]: ...
    async def get_latest_events(self, run_id: str, type: str | None = None, limit: int = 10) -> list[RunEvent]: ...


class SQLAlchemyRunRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, id: str) -> Run | None:
        if not GUID.is_valid(id):
            return None
        return await self._session.get(Run, id)

    async def get_status(self, id: str) -> str | None:
        if not GUID.is_valid(id):
            return None
        result = await self._session.execute(select(Run.status).where(Run.id == id))
        return result.scalar_one_or_none()

    async def create(
        self,
        bron_id: str,
        title: str,
        prompt: str,
        parent_run_id: str | None = None,
    ) -> Run:
        run = Run(
            id=GUID.new(),
            bron_id=bron_id,
            parent_run_id=parent_run_id,
            title=title,
            prompt=prompt,
            status="queued",
            last_seq=0,
        )
        self._session.add(run)
        await self._session.flush()
        return run

    async def list_for_bron(self, bron_id: str, limit: int = 20, offset: int = 0) -> list[Run]:
        result = await self._session.execute(
            select(Run)
            .where(Run.bron_id == bron_id)
            .order_by(Run.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_children(self, parent_run_id: str) -> list[Run]:
        result = await self._session.execute(
            select(Run)
            .where(Run.parent_run_id == parent_run_id)
            .order_by(Run.created_at)
        )
        return list(result.scalars().all())

    async def allocate_seq(self, run_id: str) -> tuple[int, str] | None:
        """Bump ``runs.last_seq`` and return ``(new_seq, current_status)``.

        Single UPDATE ... RETURNING, so the number is owned by this
        transaction until it commits or rolls back.
        """
        result = await self._session.execute(
            update(Run)
            .where(Run.id == run_id)
            .values(last_seq=Run.last_seq + 1)
            .returning(Run.last_seq, Run.status)
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    async def add_event(self, run_id: str, seq: int, type: str, payload: dict[str, Any]) -> RunEvent:
        event = RunEvent(id=GUID.new(), run_id=run_id, seq=seq, type=type, payload=payload)
        self._session.add(event)
        await self._session.flush()
        return event

    async def get_events(self, run_id: str, after_seq: int = 0, limit: int = 500) -> list[RunEvent]:
        result = await self._session.execute(
            select(RunEvent)
            .where(RunEvent.run_id == run_id, RunEvent.seq > after_seq)
            .order_by(RunEvent.seq)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_latest_events(self, run_id: str, type: str | None = None, limit: int = 10) -> list[RunEvent]:
        """Newest first."""
        stmt = select(RunEvent).where(RunEvent.run_id == run_id)
        if type is not None:
            stmt = stmt.where(RunEvent.type == type)
        result = await self._session.execute(stmt.order_by(RunEvent.seq.desc()).limit(limit))
        return list(result.scalars().all())
