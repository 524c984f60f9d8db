"""Server-sent event streaming of run event logs."""

from .distributor import RunStreamDistributor
from .sse import format_sse_comment, format_sse_event, parse_last_event_id

__all__ = ["RunStreamDistributor", "format_sse_comment", "format_sse_event", "parse_last_event_id"]
