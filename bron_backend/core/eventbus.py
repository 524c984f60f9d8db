"""EventBus interface + in-memory implementation with bounded backlog.

The bus only wakes live observers; the run event log in the database stays
the source of truth and every consumer can fall back to reading it.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Protocol

from bron_backend.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BusEvent:
    channel: str
    seq: int
    data: dict[str, Any]


def run_channel(run_id: str) -> str:
    return f"run:{run_id}"


class Subscription:
    """Queue-backed subscription handle; use as an async context manager."""

    def __init__(self, bus: MemoryEventBus, channel: str, maxsize: int = 256):
        self._bus = bus
        self.channel = channel
        self.queue: asyncio.Queue[BusEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: BusEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # slow consumer; it catches up from the database
            self.dropped += 1

    async def get(self, timeout: float | None = None) -> BusEvent | None:
        """Next live event, or None if ``timeout`` elapses first."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list[BusEvent]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    async def close(self) -> None:
        await self._bus.unsubscribe(self)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class EventBus(Protocol):
    """Publish/subscribe interface for real-time event distribution."""

    async def publish(self, event: BusEvent) -> None: ...

    async def subscribe(self, channel: str) -> Subscription: ...

    def backlog(self, channel: str, after_seq: int = 0) -> list[BusEvent]: ...


class MemoryEventBus:
    """In-process eventbus with bounded per-channel backlog and asyncio broadcast."""

    def __init__(self, backlog_size: int = 1000):
        self._backlog_size = backlog_size
        self._backlogs: dict[str, deque[BusEvent]] = defaultdict(lambda: deque(maxlen=backlog_size))
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def publish(self, event: BusEvent) -> None:
        async with self._lock:
            self._backlogs[event.channel].append(event)
            for sub in self._subscribers[event.channel]:
                sub.offer(event)

    async def subscribe(self, channel: str) -> Subscription:
        sub = Subscription(self, channel)
        async with self._lock:
            self._subscribers[channel].append(sub)
        return sub

    async def unsubscribe(self, sub: Subscription) -> None:
        async with self._lock:
            subs = self._subscribers.get(sub.channel)
            if subs and sub in subs:
                subs.remove(sub)
            if subs is not None and not subs:
                del self._subscribers[sub.channel]
        if sub.dropped:
            logger.debug(
                "Subscriber dropped live events",
                data={"channel": sub.channel, "dropped": sub.dropped},
            )

    def backlog(self, channel: str, after_seq: int = 0) -> list[BusEvent]:
        """Buffered events on ``channel`` with seq greater than ``after_seq``."""
        return [ev for ev in self._backlogs.get(channel, ()) if ev.seq > after_seq]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))
