"""RunScheduler: one tracked asyncio task per executing run."""

from __future__ import annotations

import asyncio

from ..core.logging import get_logger
from .executor import RunExecutor, RunLimits, RunResult

logger = get_logger(__name__)


class RunScheduler:
    def __init__(self, executor: RunExecutor):
        self.executor = executor
        self._tasks: dict[str, asyncio.Task[RunResult]] = {}
        self._closed = False

    def schedule(self, run_id: str, limits: RunLimits | None = None) -> bool:
        """Start executing ``run_id`` in the background. False if already in flight."""
        if self._closed:
            logger.warning("Scheduler is shut down; run not started", data={"run_id": run_id})
            return False
        existing = self._tasks.get(run_id)
        if existing is not None and not existing.done():
            return False
        task = asyncio.create_task(self._run(run_id, limits), name=f"run:{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda t, rid=run_id: self._forget(rid, t))
        logger.info("Run scheduled", data={"run_id": run_id})
        return True

    def is_active(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def _run(self, run_id: str, limits: RunLimits | None) -> RunResult:
        result = await self.executor.execute(run_id, limits)
        logger.info(
            "Run execution finished",
            data={"run_id": run_id, "status": result.final_status, "error": result.error},
        )
        return result

    def _forget(self, run_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(run_id) is task:
            del self._tasks[run_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Run task crashed",
                data={"run_id": run_id},
                exc_info=task.exception(),
            )

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until no run tasks remain, including children scheduled meanwhile."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise asyncio.TimeoutError("Runs still in flight")
            await asyncio.wait(pending, timeout=remaining)

    async def shutdown(self) -> None:
        self._closed = True
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Canceled in-flight runs", data={"count": len(tasks)})
        self._tasks.clear()
