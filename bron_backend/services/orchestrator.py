"""Child runs: spawn under a parent, join by cooperative polling."""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from ..core.exceptions import NotFoundError, RunClosedError
from ..core.logging import get_logger
from ..repositories.artifact_repo import SQLAlchemyArtifactRepository
from ..repositories.bron_repo import SQLAlchemyBronRepository
from ..repositories.run_repo import SQLAlchemyRunRepository
from .event_log import EventLog
from .state_machine import is_terminal

if TYPE_CHECKING:
    from .scheduler import RunScheduler

logger = get_logger(__name__)

RUN_NOT_FOUND = "Run not found"
AWAIT_TIMEOUT = "Timeout waiting for run to complete"
AWAIT_SELF = "Cannot await the calling run or one of its ancestors"


@dataclass
class AwaitResult:
    status: str | None = None
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    run_error: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.status is None:
            return {"error": self.error}
        return {"status": self.status, "result": {"error": self.run_error, "artifacts": self.artifacts}}


@dataclass
class _Snapshot:
    status: str
    title: str
    error: dict[str, Any] | None


class ChildRunOrchestrator:
    def __init__(
        self,
        event_log: EventLog,
        scheduler: RunScheduler | None = None,
        autostart: bool = True,
        default_timeout_ms: int = 300_000,
        default_poll_interval_ms: int = 1000,
    ):
        self._log = event_log
        self.scheduler = scheduler
        self.autostart = autostart
        self.default_timeout_ms = default_timeout_ms
        self.default_poll_interval_ms = default_poll_interval_ms

    async def spawn(self, parent_run_id: str, bron_id: str, title: str, prompt: str) -> str:
        """Create a queued child and announce it on the parent's log, atomically."""
        async with self._log.writer(parent_run_id) as w:
            parent = await w.get_run()
            if is_terminal(parent.status):
                raise RunClosedError(parent.id, parent.status)
            if await SQLAlchemyBronRepository(w.session).get_by_id(bron_id) is None:
                raise NotFoundError("Bron not found")
            child, _ = await w.scope.create_run(bron_id, title, prompt, parent_run_id=parent_run_id)
            child_id = child.id
            await w.append("child_run", {"child_run_id": child_id, "title": title, "status": "queued"})

        logger.info(
            "Spawned child run",
            data={"run_id": parent_run_id, "child_run_id": child_id, "bron_id": bron_id},
        )
        if self.autostart and self.scheduler is not None:
            self.scheduler.schedule(child_id)
        return child_id

    async def await_completion(
        self,
        child_run_id: str,
        timeout_ms: int | None = None,
        poll_interval_ms: int | None = None,
        parent_run_id: str | None = None,
    ) -> AwaitResult:
        """Poll the child until terminal, or give up after ``timeout_ms``.

        Never raises for timeout or a missing run; both come back as values.
        """
        timeout_ms = timeout_ms or self.default_timeout_ms
        poll_interval_ms = max(1, poll_interval_ms or self.default_poll_interval_ms)
        if parent_run_id is not None and child_run_id in await self._lineage(parent_run_id):
            return AwaitResult(error=AWAIT_SELF)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        max_attempts = max(1, math.ceil(timeout_ms / poll_interval_ms)) + 1

        for attempt in range(1, max_attempts + 1):
            try:
                snapshot = await self._snapshot(child_run_id)
            except SQLAlchemyError as exc:
                logger.warning(
                    "Error polling child run status",
                    data={"child_run_id": child_run_id, "attempt": attempt, "error": str(exc)},
                )
            else:
                if snapshot is None:
                    return AwaitResult(error=RUN_NOT_FOUND)
                if is_terminal(snapshot.status):
                    artifacts = await self._artifacts(child_run_id)
                    if parent_run_id is not None:
                        await self.report_child_status(parent_run_id, child_run_id, snapshot.status, snapshot.title)
                    return AwaitResult(status=snapshot.status, artifacts=artifacts, run_error=snapshot.error)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval_ms / 1000, remaining))

        logger.info("Timed out awaiting child run", data={"child_run_id": child_run_id, "timeout_ms": timeout_ms})
        return AwaitResult(error=AWAIT_TIMEOUT)

    async def report_child_status(self, parent_run_id: str, child_run_id: str, status: str, title: str | None = None) -> bool:
        """Append a ``child_run`` update to the parent; False if the parent is closed."""
        try:
            await self._log.append(
                parent_run_id,
                "child_run",
                {"child_run_id": child_run_id, "title": title or "Child Run", "status": status},
            )
        except RunClosedError:
            logger.debug("Parent closed; child status not recorded", data={"run_id": parent_run_id})
            return False
        return True

    async def list_children(self, parent_run_id: str) -> list[dict[str, Any]]:
        async with self._log.session_factory() as session:
            runs = await SQLAlchemyRunRepository(session).list_children(parent_run_id)
            return [{"id": r.id, "title": r.title, "status": r.status} for r in runs]

    async def _snapshot(self, run_id: str) -> _Snapshot | None:
        async with self._log.session_factory() as session:
            run = await SQLAlchemyRunRepository(session).get_by_id(run_id)
            if run is None:
                return None
            return _Snapshot(status=run.status, title=run.title, error=run.error)

    async def _artifacts(self, run_id: str) -> list[dict[str, Any]]:
        async with self._log.session_factory() as session:
            artifacts = await SQLAlchemyArtifactRepository(session).list_for_run(run_id)
            return [{"kind": a.kind, "locator": a.locator, "data": a.data} for a in artifacts]

    async def _lineage(self, run_id: str) -> set[str]:
        """``run_id`` and all of its ancestors."""
        seen: set[str] = set()
        async with self._log.session_factory() as session:
            repo = SQLAlchemyRunRepository(session)
            current: str | None = run_id
            while current and current not in seen:
                seen.add(current)
                run = await repo.get_by_id(current)
                current = run.parent_run_id if run else None
        return seen
