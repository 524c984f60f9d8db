import pytest

from bron_backend.core.exceptions import IllegalStateError, RunClosedError
from bron_backend.services.state_machine import (
    RunStatus,
    can_transition,
    is_terminal,
    normalize_error,
)


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        ("queued", "running", True),
        ("queued", "canceled", True),
        ("queued", "failed", True),
        ("queued", "succeeded", False),
        ("queued", "needs_approval", False),
        ("running", "needs_approval", True),
        ("running", "succeeded", True),
        ("running", "failed", True),
        ("running", "canceled", True),
        ("running", "queued", False),
        ("needs_approval", "succeeded", True),
        ("needs_approval", "canceled", True),
        ("needs_approval", "failed", True),
        ("needs_approval", "running", False),
        ("succeeded", "failed", False),
        ("failed", "running", False),
        ("canceled", "queued", False),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_terminal_statuses():
    assert [s.value for s in RunStatus if is_terminal(s)] == ["succeeded", "failed", "canceled"]


def test_normalize_error_shapes():
    assert normalize_error(None) is None
    assert normalize_error("boom") == {"message": "boom"}
    assert normalize_error({"code": "E1"}) == {"code": "E1", "message": "Unknown error"}
    assert normalize_error(IllegalStateError("nope")) == {"message": "nope", "code": "E4090"}


@pytest.mark.asyncio
async def test_status_events_mirror_status_history(engine):
    run_id = await engine.create_run(await engine.create_bron())

    await engine.machine.transition(run_id, RunStatus.RUNNING)
    await engine.machine.transition(run_id, RunStatus.NEEDS_APPROVAL)
    await engine.machine.transition(run_id, RunStatus.SUCCEEDED)

    assert await engine.statuses(run_id) == ["queued", "running", "needs_approval", "succeeded"]
    run = await engine.get_run(run_id)
    assert run.status == "succeeded"
    assert run.started_at is not None
    assert run.finished_at is not None
    assert run.finished_at >= run.started_at


@pytest.mark.asyncio
async def test_illegal_transition_leaves_no_trace(engine):
    run_id = await engine.create_run(await engine.create_bron())

    with pytest.raises(IllegalStateError) as exc_info:
        await engine.machine.transition(run_id, RunStatus.SUCCEEDED)

    assert not isinstance(exc_info.value, RunClosedError)
    assert await engine.statuses(run_id) == ["queued"]
    assert (await engine.get_run(run_id)).status == "queued"


@pytest.mark.asyncio
async def test_no_transition_out_of_terminal(engine):
    run_id = await engine.create_run(await engine.create_bron())
    await engine.machine.transition(run_id, RunStatus.CANCELED)

    for target in (RunStatus.RUNNING, RunStatus.FAILED, RunStatus.SUCCEEDED):
        with pytest.raises(RunClosedError):
            await engine.machine.transition(run_id, target)

    assert await engine.statuses(run_id) == ["queued", "canceled"]


@pytest.mark.asyncio
async def test_failed_always_carries_error(engine):
    run_id = await engine.create_run(await engine.create_bron())
    await engine.machine.transition(run_id, RunStatus.RUNNING)
    await engine.machine.transition(run_id, RunStatus.FAILED)

    run = await engine.get_run(run_id)
    assert run.error == {"message": "Unknown error"}


@pytest.mark.asyncio
async def test_cancel_logs_then_closes(engine):
    run_id = await engine.create_run(await engine.create_bron())
    await engine.machine.transition(run_id, RunStatus.RUNNING)

    await engine.machine.cancel(run_id)

    tail = (await engine.events(run_id))[-2:]
    assert tail[0]["type"] == "log"
    assert tail[0]["payload"]["message"] == "Run canceled by user"
    assert tail[1]["payload"] == {"status": "canceled"}

    with pytest.raises(RunClosedError):
        await engine.machine.cancel(run_id)
