"""SSE framing and the replay-then-follow run stream."""

import asyncio
import json

import pytest

from bron_backend.db.types import GUID
from bron_backend.services.state_machine import RunStatus
from bron_backend.streaming import (
    RunStreamDistributor,
    format_sse_comment,
    format_sse_event,
    parse_last_event_id,
)


def parse_frame(frame: str) -> dict:
    if frame.startswith(":"):
        return {"comment": frame[1:].strip()}
    parsed = {}
    for line in frame.strip().split("\n"):
        key, _, value = line.partition(": ")
        parsed[key] = json.loads(value) if key == "data" else value
    return parsed


async def collect(agen, timeout: float = 5.0) -> list[dict]:
    async def drain():
        return [parse_frame(frame) async for frame in agen]

    return await asyncio.wait_for(drain(), timeout=timeout)


def seqs(frames) -> list[int]:
    return [int(f["id"]) for f in frames if "id" in f]


@pytest.fixture
def distributor(engine):
    return RunStreamDistributor(engine.log, engine.bus, heartbeat_seconds=0.2, poll_interval_seconds=0.05)


def test_format_sse_event_with_and_without_id():
    assert format_sse_event(3, "status", {"status": "running"}) == (
        'id: 3\nevent: status\ndata: {"status": "running"}\n\n'
    )
    assert format_sse_event(None, "connected", {"run_id": "r"}) == 'event: connected\ndata: {"run_id": "r"}\n\n'
    assert format_sse_comment() == ": heartbeat\n\n"


@pytest.mark.parametrize(
    "value,expected",
    [(None, None), ("", None), ("7", 7), (" 12 ", 12), ("run-1:5", 5), ("-1", None), ("abc", None)],
)
def test_parse_last_event_id(value, expected):
    assert parse_last_event_id(value) == expected


@pytest.mark.asyncio
async def test_stream_replays_then_completes(engine, distributor):
    run_id = await engine.create_run(await engine.create_bron())
    await engine.machine.transition(run_id, RunStatus.RUNNING)
    await engine.log.append(run_id, "log", {"message": "working", "level": "info"})
    await engine.machine.transition(run_id, RunStatus.SUCCEEDED)

    frames = await collect(distributor.stream(run_id))

    assert frames[0] == {"event": "connected", "data": {"run_id": run_id}}
    assert seqs(frames) == [1, 2, 3, 4]
    assert [f["event"] for f in frames[1:-1]] == ["status", "status", "log", "status"]
    assert frames[2]["data"]["payload"] == {"status": "running"}
    assert frames[-1] == {"event": "complete", "data": {"status": "succeeded"}}


@pytest.mark.asyncio
async def test_resume_after_seq_yields_only_later_events(engine, distributor):
    run_id = await engine.create_run(await engine.create_bron())
    for i in range(6):
        await engine.log.append(run_id, "log", {"message": str(i)})
    await engine.machine.cancel(run_id)
    last = (await engine.events(run_id))[-1]["seq"]

    frames = await collect(distributor.stream(run_id, after_seq=4))

    assert seqs(frames) == list(range(5, last + 1))


@pytest.mark.asyncio
async def test_live_follow_delivers_each_event_once_in_order(engine, distributor):
    run_id = await engine.create_run(await engine.create_bron())
    await engine.machine.transition(run_id, RunStatus.RUNNING)

    async def produce():
        await asyncio.sleep(0.1)
        for i in range(10):
            await engine.log.append(run_id, "log", {"message": str(i)})
            if i % 3 == 0:
                await asyncio.sleep(0.02)
        await engine.machine.transition(run_id, RunStatus.SUCCEEDED)

    producer = asyncio.create_task(produce())
    frames = await collect(distributor.stream(run_id))
    await producer

    assert seqs(frames) == list(range(1, 14))
    assert frames[-1]["event"] == "complete"


@pytest.mark.asyncio
async def test_idle_stream_sends_heartbeats(engine, distributor):
    run_id = await engine.create_run(await engine.create_bron())

    async def finish_later():
        await asyncio.sleep(0.5)
        await engine.machine.cancel(run_id)

    closer = asyncio.create_task(finish_later())
    frames = await collect(distributor.stream(run_id))
    await closer

    assert {"comment": "heartbeat"} in frames
    assert frames[-1] == {"event": "complete", "data": {"status": "canceled"}}


@pytest.mark.asyncio
async def test_polling_without_bus(engine):
    distributor = RunStreamDistributor(engine.log, None, heartbeat_seconds=5, poll_interval_seconds=0.02)
    run_id = await engine.create_run(await engine.create_bron())
    await engine.machine.transition(run_id, RunStatus.RUNNING)

    async def finish():
        await asyncio.sleep(0.05)
        await engine.log.append(run_id, "message", {"role": "assistant", "content": "hi"})
        await engine.machine.transition(run_id, RunStatus.FAILED, error="boom")

    task = asyncio.create_task(finish())
    frames = await collect(distributor.stream(run_id))
    await task

    assert seqs(frames) == [1, 2, 3, 4]
    assert frames[-1] == {"event": "complete", "data": {"status": "failed"}}


@pytest.mark.asyncio
async def test_unknown_run_ends_with_error(engine, distributor):
    run_id = GUID.new()
    frames = await collect(distributor.stream(run_id))

    assert [f["event"] for f in frames] == ["connected", "error"]
    assert frames[-1]["data"] == {"message": "Run not found"}
    assert engine.bus.subscriber_count(f"run:{run_id}") == 0


@pytest.mark.asyncio
async def test_subscription_released_when_client_disconnects(engine, distributor):
    run_id = await engine.create_run(await engine.create_bron())
    stream = distributor.stream(run_id)

    assert parse_frame(await stream.__anext__())["event"] == "connected"
    assert engine.bus.subscriber_count(f"run:{run_id}") == 1
    await stream.aclose()

    assert engine.bus.subscriber_count(f"run:{run_id}") == 0
