import pytest

from bron_backend.core.eventbus import BusEvent, MemoryEventBus, Subscription, run_channel

pytestmark = pytest.mark.asyncio


def event(seq: int, channel: str = "run:a") -> BusEvent:
    return BusEvent(channel=channel, seq=seq, data={"seq": seq})


async def test_publish_reaches_subscribers_on_the_channel_only():
    bus = MemoryEventBus()
    async with await bus.subscribe("run:a") as sub_a, await bus.subscribe("run:b") as sub_b:
        await bus.publish(event(1))

        assert (await sub_a.get(timeout=0.5)).seq == 1
        assert await sub_b.get(timeout=0.05) is None


async def test_backlog_is_bounded_and_filtered_by_seq():
    bus = MemoryEventBus(backlog_size=3)
    for seq in range(1, 6):
        await bus.publish(event(seq))

    assert [e.seq for e in bus.backlog("run:a")] == [3, 4, 5]
    assert [e.seq for e in bus.backlog("run:a", after_seq=4)] == [5]
    assert bus.backlog("run:unknown") == []


async def test_slow_subscriber_drops_instead_of_blocking():
    bus = MemoryEventBus()
    sub = Subscription(bus, "run:a", maxsize=2)
    bus._subscribers["run:a"].append(sub)

    for seq in range(1, 5):
        await bus.publish(event(seq))

    assert [e.seq for e in sub.drain()] == [1, 2]
    assert sub.dropped == 2
    await sub.close()


async def test_unsubscribe_removes_channel():
    bus = MemoryEventBus()
    sub = await bus.subscribe(run_channel("r1"))
    assert bus.subscriber_count("run:r1") == 1

    await sub.close()
    await bus.publish(event(1, channel="run:r1"))

    assert bus.subscriber_count("run:r1") == 0
    assert sub.drain() == []
    # closing twice is harmless
    await sub.close()
