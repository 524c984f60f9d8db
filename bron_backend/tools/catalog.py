"""Closed tool catalog and dispatch.

Each tool is a named entry with a JSON schema and a handler. Dispatch never
raises for tool-level problems: unknown names, invalid input and handler
errors come back as ``ToolResult`` values. Event-log failures still propagate.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from jsonschema import Draft202012Validator

from ..core.exceptions import EventLogError, RunClosedError
from ..core.logging import get_logger
from ..services.event_log import EventLog
from .gmail import GmailClient
from .ui import UICardKind, attachment_summary_card, email_draft_card, emit_ui, search_results_card

if TYPE_CHECKING:
    from ..services.approval import ApprovalGate
    from ..services.orchestrator import ChildRunOrchestrator

logger = get_logger(__name__)


@dataclass
class ToolResult:
    ok: bool
    output: Any = None
    error: str | None = None
    needs_approval: bool = False
    approval_id: str | None = None

    @classmethod
    def success(cls, output: Any) -> ToolResult:
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, error: str, output: Any = None) -> ToolResult:
        return cls(ok=False, output=output, error=error)

    @classmethod
    def from_output(cls, output: dict[str, Any]) -> ToolResult:
        """Map a client-style ``{"error": ...}`` dict onto ok/error."""
        error = output.get("error") if isinstance(output, dict) else None
        return cls(ok=not error, output=output, error=error)

    def to_content(self) -> str:
        """Body of the ``tool_result`` block fed back to the model."""
        if self.ok:
            return json.dumps(self.output, default=str)
        body = {"error": self.error}
        if isinstance(self.output, dict):
            body = {**self.output, "error": self.error}
        return json.dumps(body, default=str)

    def event_payload(self, name: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": name, "phase": "end", "output": self.output}
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class ToolContext:
    run_id: str
    bron_id: str
    event_log: EventLog
    gmail: GmailClient
    approvals: ApprovalGate
    orchestrator: ChildRunOrchestrator
    child_await_timeout_ms: int = 300_000
    child_poll_interval_ms: int = 1000


Handler = Callable[[ToolContext, dict[str, Any]], Awaitable[ToolResult]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Handler = field(compare=False)

    def definition(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


def validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> list[str]:
    errors = sorted(Draft202012Validator(schema).iter_errors(payload), key=lambda e: str(list(e.path)))
    return [f"{'/'.join(str(p) for p in e.path) or '$'}: {e.message}" for e in errors]


# ---------------------------------------------------------------------------
# handlers
# ---------------------------------------------------------------------------
async def _gmail_search(ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
    result = await ctx.gmail.search(args["query"], max_results=int(args.get("maxResults") or 10))
    # emitted even with zero matches so observers see the search happened
    await emit_ui(
        ctx.event_log,
        ctx.run_id,
        UICardKind.EMAIL_SEARCH_RESULTS,
        search_results_card(args["query"], result.get("messages", [])),
    )
    return ToolResult.from_output(result)


async def _gmail_get_message(ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
    result = await ctx.gmail.get_message(args["messageId"], format=args.get("format", "full"))
    message = result.get("message")
    if message and message.get("attachments"):
        await emit_ui(ctx.event_log, ctx.run_id, UICardKind.ATTACHMENT_SUMMARY, attachment_summary_card(message))
    return ToolResult.from_output(result)


async def _gmail_get_attachment(ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
    return ToolResult.from_output(await ctx.gmail.get_attachment(args["messageId"], args["attachmentId"]))


async def _gmail_create_draft(ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
    from ..services.approval import ACTION_SEND_DRAFT

    cc = args.get("cc") or []
    result = await ctx.gmail.create_draft(
        to=args["to"],
        subject=args["subject"],
        body_text=args["bodyText"],
        cc=cc,
        thread_id=args.get("threadId"),
    )
    draft = result.get("draft")
    if not draft:
        return ToolResult.from_output(result)

    draft_id = draft["id"]
    signal = await ctx.approvals.request_approval(
        ctx.run_id,
        ACTION_SEND_DRAFT,
        {"draftId": draft_id, "to": args["to"], "subject": args["subject"], "cc": cc},
        card=lambda approval_id, token: {
            "kind": UICardKind.EMAIL_DRAFT.value,
            "payload": email_draft_card(
                draft_id, args["to"], args["subject"], args["bodyText"], cc, approval_id, token
            ),
        },
    )
    return ToolResult(
        ok=True,
        output={**result, "needsApproval": True, "approvalId": signal.approval_id},
        needs_approval=True,
        approval_id=signal.approval_id,
    )


async def _emit_ui(ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
    event = await emit_ui(ctx.event_log, ctx.run_id, args["kind"], args["payload"])
    return ToolResult.success({"success": True, "eventId": event["id"]})


async def _spawn_bron(ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
    child_id = await ctx.orchestrator.spawn(
        parent_run_id=ctx.run_id,
        bron_id=args.get("bronId") or ctx.bron_id,
        title=args["title"],
        prompt=args["prompt"],
    )
    return ToolResult.success({"runId": child_id})


async def _await_bron(ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
    outcome = await ctx.orchestrator.await_completion(
        args["runId"],
        timeout_ms=int(args.get("timeoutMs") or ctx.child_await_timeout_ms),
        poll_interval_ms=ctx.child_poll_interval_ms,
        parent_run_id=ctx.run_id,
    )
    return ToolResult.from_output(outcome.to_dict())


# ---------------------------------------------------------------------------
# catalog
# ---------------------------------------------------------------------------
TOOLS: tuple[Tool, ...] = (
    Tool(
        name="gmail_search",
        description="Search Gmail messages by query. Returns matching message metadata.",
        input_schema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": 'Gmail search query (e.g., "from:john@example.com subject:invoice")',
                },
                "maxResults": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 100,
                    "description": "Maximum number of results to return (default: 10)",
                },
            },
            "required": ["query"],
        },
        handler=_gmail_search,
    ),
    Tool(
        name="gmail_get_message",
        description="Get the full content of a Gmail message by ID.",
        input_schema={
            "type": "object",
            "properties": {
                "messageId": {"type": "string", "description": "The Gmail message ID"},
                "format": {
                    "type": "string",
                    "enum": ["minimal", "full", "metadata"],
                    "description": "Format of the message to retrieve (default: full)",
                },
            },
            "required": ["messageId"],
        },
        handler=_gmail_get_message,
    ),
    Tool(
        name="gmail_get_attachment",
        description="Download an attachment from a Gmail message.",
        input_schema={
            "type": "object",
            "properties": {
                "messageId": {"type": "string", "description": "The Gmail message ID"},
                "attachmentId": {"type": "string", "description": "The attachment ID"},
            },
            "required": ["messageId", "attachmentId"],
        },
        handler=_gmail_get_attachment,
    ),
    Tool(
        name="gmail_create_draft",
        description="Create a draft email. The draft will need approval before sending.",
        input_schema={
            "type": "object",
            "properties": {
                "to": {"type": "string", "description": "Recipient email address"},
                "subject": {"type": "string", "description": "Email subject line"},
                "bodyText": {"type": "string", "description": "Plain text body of the email"},
                "cc": {"type": "array", "items": {"type": "string"}, "description": "CC recipients"},
                "threadId": {"type": "string", "description": "Thread ID to reply to"},
            },
            "required": ["to", "subject", "bodyText"],
        },
        handler=_gmail_create_draft,
    ),
    Tool(
        name="emit_ui",
        description="Display a UI card to the user. Use this to show search results, extracted data, or draft emails.",
        input_schema={
            "type": "object",
            "properties": {
                "kind": {
                    "type": "string",
                    "enum": [k.value for k in UICardKind],
                    "description": "Type of UI card to display",
                },
                "payload": {"type": "object", "description": "Card-specific data payload"},
            },
            "required": ["kind", "payload"],
        },
        handler=_emit_ui,
    ),
    Tool(
        name="spawn_bron",
        description="Spawn a child run to handle a sub-task. Returns the child run ID.",
        input_schema={
            "type": "object",
            "properties": {
                "bronId": {
                    "type": "string",
                    "description": "ID of the bron to use for the child run (defaults to this bron)",
                },
                "title": {"type": "string", "description": "Title for the child run"},
                "prompt": {"type": "string", "description": "Task prompt for the child run"},
            },
            "required": ["title", "prompt"],
        },
        handler=_spawn_bron,
    ),
    Tool(
        name="await_bron",
        description="Wait for a child run to complete and get its results.",
        input_schema={
            "type": "object",
            "properties": {
                "runId": {"type": "string", "description": "ID of the child run to wait for"},
                "timeoutMs": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Timeout in milliseconds (default: 300000 = 5 minutes)",
                },
            },
            "required": ["runId"],
        },
        handler=_await_bron,
    ),
)


class ToolDispatcher:
    """Resolves tool names against the catalog and runs their handlers."""

    def __init__(self, tools: tuple[Tool, ...] = TOOLS):
        self._tools = {tool.name: tool for tool in tools}

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    async def dispatch(self, ctx: ToolContext, name: str, args: dict[str, Any] | None) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            logger.warning(f"Unknown tool: {name}", data={"run_id": ctx.run_id})
            return ToolResult.failure(f"Unknown tool: {name}")

        args = args if isinstance(args, dict) else {}
        errors = validate_json_schema(tool.input_schema, args)
        if errors:
            logger.info(f"Rejected {name} input", data={"run_id": ctx.run_id, "errors": errors})
            return ToolResult.failure("Invalid input: " + "; ".join(errors))

        try:
            result = await tool.handler(ctx, args)
        except (EventLogError, RunClosedError):
            raise
        except Exception as exc:
            logger.warning(
                f"Tool {name} failed: {exc}",
                data={"run_id": ctx.run_id, "tool": name},
                exc_info=True,
            )
            return ToolResult.failure(getattr(exc, "message", None) or str(exc) or type(exc).__name__)

        logger.info(
            f"Tool {name} finished",
            data={"run_id": ctx.run_id, "ok": result.ok, "needs_approval": result.needs_approval},
        )
        return result
