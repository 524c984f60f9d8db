"""RunService: create runs, read them back with their events."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..core.exceptions import NotFoundError
from ..core.logging import get_logger
from ..db.models import Run
from ..repositories.bron_repo import SQLAlchemyBronRepository
from ..repositories.run_repo import SQLAlchemyRunRepository
from .event_log import EventLog

if TYPE_CHECKING:
    from .scheduler import RunScheduler

logger = get_logger(__name__)

TITLE_MAX_CHARS = 50


def generate_title(prompt: str) -> str:
    """Prompt collapsed to one line, cut at a word boundary near 50 chars."""
    text = " ".join(prompt.split())
    if len(text) <= TITLE_MAX_CHARS:
        return text or "Untitled run"
    cut = text[:TITLE_MAX_CHARS]
    space = cut.rfind(" ")
    if space > 20:
        cut = cut[:space]
    return cut + "..."


def serialize_run(run: Run) -> dict[str, Any]:
    return {
        "id": run.id,
        "bron_id": run.bron_id,
        "parent_run_id": run.parent_run_id,
        "title": run.title,
        "prompt": run.prompt,
        "status": run.status,
        "last_seq": run.last_seq,
        "error": run.error,
        "created_at": run.created_at.isoformat(),
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }


class RunService:
    def __init__(self, event_log: EventLog, scheduler: RunScheduler | None = None):
        self._log = event_log
        self._sf = event_log.session_factory
        self.scheduler = scheduler

    async def create_run(
        self,
        bron_id: str,
        prompt: str,
        title: str | None = None,
        auto_start: bool = True,
    ) -> dict[str, Any]:
        """Create a queued run with its first status event; optionally start it."""
        async with self._sf() as session:
            if await SQLAlchemyBronRepository(session).get_by_id(bron_id) is None:
                raise NotFoundError("Agent not found")

        run, _ = await self._log.create_run(bron_id, title or generate_title(prompt), prompt)
        data = serialize_run(run)
        logger.info("Run created", data={"run_id": run.id, "bron_id": bron_id, "auto_start": auto_start})

        if auto_start and self.scheduler is not None:
            self.scheduler.schedule(run.id)
        return data

    async def get_run(self, run_id: str) -> dict[str, Any]:
        async with self._sf() as session:
            run = await SQLAlchemyRunRepository(session).get_by_id(run_id)
            if run is None:
                raise NotFoundError("Run not found")
            bron = await SQLAlchemyBronRepository(session).get_by_id(run.bron_id)
            data = serialize_run(run)
        data["bron"] = {"id": bron.id, "name": bron.name, "avatar_color": bron.avatar_color} if bron else None
        return data

    async def require_run(self, run_id: str) -> str:
        """Current status of ``run_id``; NotFoundError if absent."""
        status = await self._log.get_status(run_id)
        if status is None:
            raise NotFoundError("Run not found")
        return status

    async def get_events(self, run_id: str, after_seq: int = 0, limit: int = 100) -> list[dict[str, Any]]:
        await self.require_run(run_id)
        return await self._log.read(run_id, after_seq=after_seq, limit=limit)

    async def list_for_bron(self, bron_id: str, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        async with self._sf() as session:
            if await SQLAlchemyBronRepository(session).get_by_id(bron_id) is None:
                raise NotFoundError("Agent not found")
            runs = await SQLAlchemyRunRepository(session).list_for_bron(bron_id, limit=limit, offset=offset)
            return [serialize_run(r) for r in runs]
