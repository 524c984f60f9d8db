"""SSE (Server-Sent Events) formatting utilities."""

import json
from typing import Any, Dict

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse_event(seq: int | None, event_type: str, payload: Dict[str, Any]) -> str:
    """Format a single SSE event string.

    Args:
        seq: Sequence number for the event, sent as the ``id:`` field so
            clients can resume with ``Last-Event-ID``. ``None`` omits it
            for out-of-log markers such as ``connected``.
        event_type: Type of the event (e.g. 'status', 'tool', 'complete')
        payload: Dictionary of data to send

    Returns:
        Formatted SSE event string ready for streaming
    """
    head = f"id: {seq}\n" if seq is not None else ""
    return f"{head}event: {event_type}\ndata: {json.dumps(payload, default=str)}\n\n"


def format_sse_comment(text: str = "heartbeat") -> str:
    return f": {text}\n\n"


def parse_last_event_id(value: str | None) -> int | None:
    """Resume cursor from a ``Last-Event-ID`` header or ``after_seq`` value."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    # tolerate "{run_id}:{seq}" cursors
    tail = value.rsplit(":", 1)[-1]
    try:
        seq = int(tail)
    except ValueError:
        return None
    return seq if seq >= 0 else None
