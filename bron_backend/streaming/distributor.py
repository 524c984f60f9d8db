"""Per-run SSE distribution: replay from the log, then follow it live.

The database log is the only source of frames. The event bus is used as a
wake-up signal so live streams do not wait out a full poll interval; when
no bus is configured (or a publish is missed) polling still delivers every
event in order.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError

from ..core.eventbus import EventBus, Subscription, run_channel
from ..core.exceptions import EventLogError
from ..core.logging import get_logger
from ..core.settings import Settings
from ..services.event_log import EventLog
from ..services.state_machine import is_terminal
from .sse import format_sse_comment, format_sse_event

logger = get_logger(__name__)


class RunStreamDistributor:
    def __init__(
        self,
        event_log: EventLog,
        eventbus: EventBus | None = None,
        heartbeat_seconds: float = 15.0,
        poll_interval_seconds: float = 0.5,
        batch_size: int = 50,
    ):
        self._log = event_log
        self._bus = eventbus
        self.heartbeat_seconds = heartbeat_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size

    @classmethod
    def from_settings(cls, event_log: EventLog, eventbus: EventBus | None, settings: Settings) -> RunStreamDistributor:
        return cls(
            event_log,
            eventbus,
            heartbeat_seconds=settings.sse_heartbeat_seconds,
            poll_interval_seconds=settings.sse_poll_interval_seconds,
            batch_size=settings.sse_batch_size,
        )

    async def stream(self, run_id: str, after_seq: int = 0) -> AsyncIterator[str]:
        """Yield SSE frames for events with seq > ``after_seq`` until the run ends."""
        # subscribe before the first read so nothing committed in between is slept through
        sub = await self._bus.subscribe(run_channel(run_id)) if self._bus is not None else None
        cursor = after_seq
        loop = asyncio.get_running_loop()
        last_sent = loop.time()
        logger.debug("Stream opened", data={"run_id": run_id, "after_seq": after_seq})
        try:
            yield format_sse_event(None, "connected", {"run_id": run_id})

            while True:
                try:
                    events = await self._log.read(run_id, after_seq=cursor, limit=self.batch_size)
                    status = None if events else await self._log.get_status(run_id)
                except (SQLAlchemyError, EventLogError) as exc:
                    logger.warning("Stream read failed; retrying", data={"run_id": run_id, "error": str(exc)})
                    yield format_sse_event(None, "error", {"message": "Failed to read run events", "retrying": True})
                    last_sent = loop.time()
                    await asyncio.sleep(self.poll_interval_seconds)
                    continue

                if events:
                    for event in events:
                        cursor = event["seq"]
                        yield format_sse_event(event["seq"], event["type"], event)
                    last_sent = loop.time()
                    continue

                if status is None:
                    yield format_sse_event(None, "error", {"message": "Run not found"})
                    return

                if is_terminal(status):
                    # the terminal status event itself is the last log entry; anything
                    # committed after the empty read above has already been checked
                    tail = await self._log.read(run_id, after_seq=cursor, limit=self.batch_size)
                    if tail:
                        continue
                    yield format_sse_event(None, "complete", {"status": status})
                    logger.debug("Stream complete", data={"run_id": run_id, "status": status, "seq": cursor})
                    return

                idle = loop.time() - last_sent
                if idle >= self.heartbeat_seconds:
                    yield format_sse_comment()
                    last_sent = loop.time()
                    idle = 0.0
                await self._wait(sub, min(self.poll_interval_seconds, self.heartbeat_seconds - idle))
        finally:
            if sub is not None:
                await sub.close()
            logger.debug("Stream closed", data={"run_id": run_id, "seq": cursor})

    async def _wait(self, sub: Subscription | None, timeout: float) -> None:
        timeout = max(timeout, 0.0)
        if sub is None:
            await asyncio.sleep(timeout)
            return
        if await sub.get(timeout=timeout) is not None:
            # coalesce a burst into one re-read
            sub.drain()
