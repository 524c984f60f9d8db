"""Event log: sequencing, atomic append under concurrency, terminal closure."""

import asyncio

import pytest

from bron_backend.core.eventbus import run_channel
from bron_backend.core.exceptions import InvalidRequestError, NotFoundError, RunClosedError
from bron_backend.db.types import GUID
from bron_backend.services.event_log import EventLog
from bron_backend.services.state_machine import RunStatus

pytestmark = pytest.mark.asyncio


async def test_create_run_writes_queued_status_event(engine):
    bron_id = await engine.create_bron()
    run_id = await engine.create_run(bron_id)

    events = await engine.events(run_id)
    assert [(e["seq"], e["type"], e["payload"]) for e in events] == [(1, "status", {"status": "queued"})]
    assert set(events[0]) == {"id", "run_id", "seq", "type", "payload", "created_at"}
    run = await engine.get_run(run_id)
    assert run.status == "queued"
    assert run.last_seq == 1


async def test_append_seq_is_monotonic(engine):
    run_id = await engine.create_run(await engine.create_bron())
    seqs = [(await engine.log.append(run_id, "log", {"message": f"m{i}"}))["seq"] for i in range(10)]
    assert seqs == list(range(2, 12))


async def test_concurrent_appenders_get_distinct_seqs(engine):
    run_id = await engine.create_run(await engine.create_bron())

    results = await asyncio.gather(
        *(engine.log.append(run_id, "tool", {"name": "t", "phase": "end", "output": i}) for i in range(25))
    )

    seqs = sorted(e["seq"] for e in results)
    assert seqs == list(range(2, 27))
    stored = [e["seq"] for e in await engine.events(run_id)]
    assert stored == list(range(1, 27))


async def test_concurrent_appenders_across_log_instances(engine, session_factory):
    """Two logs share the database but not the in-process locks."""
    run_id = await engine.create_run(await engine.create_bron())
    other = EventLog(session_factory)

    results = await asyncio.gather(
        *(
            (engine.log if i % 2 else other).append(run_id, "log", {"message": str(i)})
            for i in range(20)
        )
    )

    assert len({e["seq"] for e in results}) == 20
    assert [e["seq"] for e in await engine.events(run_id)] == list(range(1, 22))


async def test_read_after_seq_and_limit(engine):
    run_id = await engine.create_run(await engine.create_bron())
    for i in range(5):
        await engine.log.append(run_id, "log", {"message": str(i)})

    assert [e["seq"] for e in await engine.log.read(run_id, after_seq=3)] == [4, 5, 6]
    assert [e["seq"] for e in await engine.log.read(run_id, after_seq=0, limit=2)] == [1, 2]
    assert await engine.log.read(run_id, after_seq=6) == []


async def test_read_latest_filters_by_type_newest_first(engine):
    run_id = await engine.create_run(await engine.create_bron())
    await engine.log.append(run_id, "log", {"message": "a"})
    await engine.log.append(run_id, "ui", {"kind": "RunSummaryCard", "payload": {}})
    await engine.log.append(run_id, "log", {"message": "b"})

    latest = await engine.log.read_latest(run_id, type="log", limit=10)
    assert [e["payload"]["message"] for e in latest] == ["b", "a"]


async def test_unknown_event_type_rejected(engine):
    run_id = await engine.create_run(await engine.create_bron())
    with pytest.raises(InvalidRequestError):
        await engine.log.append(run_id, "telemetry", {})
    assert len(await engine.events(run_id)) == 1


async def test_append_to_missing_run(engine):
    with pytest.raises(NotFoundError):
        await engine.log.append(GUID.new(), "log", {"message": "x"})


async def test_terminal_run_accepts_no_more_events(engine):
    run_id = await engine.create_run(await engine.create_bron())
    await engine.machine.transition(run_id, RunStatus.RUNNING)
    await engine.machine.transition(run_id, RunStatus.SUCCEEDED)
    before = await engine.events(run_id)

    with pytest.raises(RunClosedError) as exc_info:
        await engine.log.append(run_id, "log", {"message": "late"})

    assert exc_info.value.details == {"run_id": run_id, "status": "succeeded"}
    assert await engine.events(run_id) == before
    assert (await engine.get_run(run_id)).last_seq == before[-1]["seq"]


async def test_failed_transaction_rolls_back_and_publishes_nothing(engine):
    run_id = await engine.create_run(await engine.create_bron())
    sub = await engine.bus.subscribe(run_channel(run_id))

    with pytest.raises(RuntimeError):
        async with engine.log.writer(run_id) as w:
            await w.append("log", {"message": "never committed"})
            raise RuntimeError("abort")

    assert sub.drain() == []
    event = await engine.log.append(run_id, "log", {"message": "after"})
    assert event["seq"] == 2
    await sub.close()


async def test_committed_events_published_to_bus(engine):
    run_id = await engine.create_run(await engine.create_bron())
    sub = await engine.bus.subscribe(run_channel(run_id))

    event = await engine.log.append(run_id, "message", {"role": "assistant", "content": "hi"})

    published = await sub.get(timeout=1.0)
    assert published is not None
    assert published.seq == event["seq"]
    assert published.data == event
    await sub.close()
