"""Run lifecycle: status enum, legal transitions, and paired status events."""

from __future__ import annotations

from enum import Enum
from typing import Any

from ..core.exceptions import BronError, IllegalStateError, RunClosedError
from ..core.logging import get_logger
from ..db.models import Run
from ..db.types import utcnow
from ..repositories.approval_repo import SQLAlchemyApprovalRepository
from .event_log import EventLog, RunWriter

logger = get_logger(__name__)


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    NEEDS_APPROVAL = "needs_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED})

ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.CANCELED, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.NEEDS_APPROVAL, RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED}
    ),
    RunStatus.NEEDS_APPROVAL: frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED}),
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELED: frozenset(),
}


def is_terminal(status: str | RunStatus) -> bool:
    return RunStatus(status) in TERMINAL_STATUSES


def can_transition(current: str | RunStatus, target: str | RunStatus) -> bool:
    return RunStatus(target) in ALLOWED_TRANSITIONS[RunStatus(current)]


def normalize_error(error: str | dict | BronError | None) -> dict[str, Any] | None:
    """Coerce an error into the stored ``{message, code?, details?}`` shape."""
    if error is None:
        return None
    if isinstance(error, BronError):
        return error.to_run_error()
    if isinstance(error, dict):
        message = str(error.get("message") or "Unknown error")
        return {**error, "message": message}
    return {"message": str(error) or "Unknown error"}


def check_transition(run: Run, target: RunStatus) -> None:
    current = RunStatus(run.status)
    if current in TERMINAL_STATUSES:
        raise RunClosedError(run.id, current.value)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise IllegalStateError(
            f"Illegal transition {current.value} -> {target.value}",
            details={"run_id": run.id, "from": current.value, "to": target.value},
        )


def apply_transition(run: Run, target: RunStatus, error: dict[str, Any] | None = None) -> None:
    """Set status, timestamps and error on the row. Caller pairs this with the event."""
    now = utcnow()
    run.status = target.value
    if target == RunStatus.RUNNING:
        run.started_at = now
    if target in TERMINAL_STATUSES:
        run.finished_at = now
    if target == RunStatus.FAILED:
        run.error = error or {"message": "Unknown error"}
    elif error is not None:
        run.error = error


async def transition(
    writer: RunWriter,
    target: RunStatus | str,
    error: str | dict | BronError | None = None,
) -> dict[str, Any]:
    """Append the status event and update the run inside the writer's transaction."""
    target = RunStatus(target)
    run = await writer.get_run()
    check_transition(run, target)
    previous = run.status
    event = await writer.append("status", {"status": target.value})
    apply_transition(run, target, normalize_error(error))
    await writer.session.flush()
    logger.info(
        f"Run {previous} -> {target.value}",
        data={"run_id": run.id, "seq": event["seq"]},
    )
    return event


class RunStateMachine:
    """Owner of run status changes; every change carries its status event."""

    def __init__(self, event_log: EventLog):
        self._log = event_log

    async def transition(
        self,
        run_id: str,
        target: RunStatus | str,
        error: str | dict | BronError | None = None,
    ) -> dict[str, Any]:
        async with self._log.writer(run_id) as w:
            return await transition(w, target, error)

    async def cancel(self, run_id: str) -> dict[str, Any]:
        """External cancellation; valid only while the run is non-terminal."""
        async with self._log.writer(run_id) as w:
            run = await w.get_run()
            check_transition(run, RunStatus.CANCELED)
            if await SQLAlchemyApprovalRepository(w.session).has_in_flight(run_id):
                raise IllegalStateError(
                    "Approved action in progress; run cannot be canceled",
                    details={"run_id": run_id, "status": run.status},
                )
            await w.append("log", {"message": "Run canceled by user", "level": "info"})
            return await transition(w, RunStatus.CANCELED)
