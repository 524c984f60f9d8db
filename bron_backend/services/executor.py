"""RunExecutor: the bounded agent tool-call loop.

A run moves queued -> running, then alternates reasoning calls and tool
dispatch until the model stops asking for tools, a tool asks for approval,
the run is canceled, or a limit is hit. Nothing raised inside the loop
escapes: it is logged on the run and turned into a ``failed`` transition.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from ..core.exceptions import (
    BronError,
    IllegalStateError,
    NotFoundError,
    ResourceExhaustedError,
    RunClosedError,
    RunTimeoutError,
)
from ..core.logging import get_logger, request_context
from ..core.settings import Settings
from ..providers.base import ReasoningProvider, ReasoningResponse
from ..repositories.artifact_repo import SQLAlchemyArtifactRepository
from ..tools.catalog import ToolContext, ToolDispatcher, ToolResult
from ..tools.gmail import GmailClient
from .approval import ApprovalGate
from .context import RunContext, build_run_context, memory_digest, save_message, update_memory_summary
from .event_log import EventLog
from .orchestrator import ChildRunOrchestrator
from .state_machine import RunStatus, transition

logger = get_logger(__name__)


@dataclass(frozen=True)
class RunLimits:
    max_turns: int = 20
    max_tool_calls: int = 50
    timeout_ms: int = 300_000

    @classmethod
    def from_settings(cls, settings: Settings) -> RunLimits:
        return cls(
            max_turns=settings.run_max_turns,
            max_tool_calls=settings.run_max_tool_calls,
            timeout_ms=settings.run_timeout_ms,
        )


@dataclass
class RunResult:
    success: bool
    final_status: str
    error: str | None = None


class _Stopped(Exception):
    """The run left ``running`` from outside the loop (e.g. canceled)."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(status)


def preview(text: str, limit: int = 200) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class RunExecutor:
    def __init__(
        self,
        event_log: EventLog,
        provider: ReasoningProvider,
        gmail: GmailClient,
        approvals: ApprovalGate,
        orchestrator: ChildRunOrchestrator,
        settings: Settings,
        dispatcher: ToolDispatcher | None = None,
    ):
        self._log = event_log
        self._sf = event_log.session_factory
        self.provider = provider
        self.gmail = gmail
        self.approvals = approvals
        self.orchestrator = orchestrator
        self.settings = settings
        self.dispatcher = dispatcher or ToolDispatcher()

    async def execute(self, run_id: str, limits: RunLimits | None = None) -> RunResult:
        limits = limits or RunLimits.from_settings(self.settings)
        token = request_context.set({**request_context.get(), "run_id": run_id})
        try:
            return await self._execute(run_id, limits)
        finally:
            request_context.reset(token)

    async def _execute(self, run_id: str, limits: RunLimits) -> RunResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + limits.timeout_ms / 1000

        try:
            ctx = await build_run_context(self._sf, run_id, history_limit=self.settings.history_message_limit)
        except NotFoundError as exc:
            logger.warning("Cannot execute run", data={"run_id": run_id, "error": exc.message})
            return RunResult(success=False, final_status=RunStatus.FAILED.value, error=exc.message)

        if ctx.run.status != RunStatus.QUEUED.value:
            logger.info("Run is not queued; skipping", data={"run_id": run_id, "status": ctx.run.status})
            return RunResult(success=False, final_status=ctx.run.status, error=f"Run is {ctx.run.status}")

        try:
            await self._start(ctx)
        except (RunClosedError, IllegalStateError) as exc:
            # canceled or started elsewhere between the read and the transition
            status = await self._log.get_status(run_id)
            return RunResult(success=False, final_status=status or RunStatus.FAILED.value, error=exc.message)
        except Exception as exc:
            return await self._fail(run_id, exc)

        try:
            return await self._loop(ctx, limits, deadline)
        except _Stopped as stop:
            logger.info("Run stopped externally", data={"run_id": run_id, "status": stop.status})
            return RunResult(success=False, final_status=stop.status, error=f"Run {stop.status}")
        except RunClosedError as exc:
            status = exc.details.get("status", RunStatus.CANCELED.value)
            logger.info("Run closed during execution", data={"run_id": run_id, "status": status})
            return RunResult(success=False, final_status=status, error=exc.message)
        except asyncio.CancelledError:
            await self._fail(run_id, BronError("Run interrupted", code="E5030"))
            raise
        except Exception as exc:
            return await self._fail(run_id, exc)

    async def _start(self, ctx: RunContext) -> None:
        run_id = ctx.run.id
        async with self._log.writer(run_id) as w:
            await transition(w, RunStatus.RUNNING)
            await w.append("message", {"role": "user", "content": ctx.run.prompt})
            await w.append("log", {"message": "Run started", "level": "info"})
        await save_message(self._sf, ctx.bron.id, run_id, "user", ctx.run.prompt)
        if not await self.gmail.is_connected():
            await self._log.append(
                run_id, "log", {"message": "Gmail not connected - email operations will fail", "level": "warn"}
            )

    def _tool_context(self, ctx: RunContext) -> ToolContext:
        return ToolContext(
            run_id=ctx.run.id,
            bron_id=ctx.bron.id,
            event_log=self._log,
            gmail=self.gmail,
            approvals=self.approvals,
            orchestrator=self.orchestrator,
            child_await_timeout_ms=self.settings.child_await_timeout_ms,
            child_poll_interval_ms=self.settings.child_poll_interval_ms,
        )

    async def _loop(self, ctx: RunContext, limits: RunLimits, deadline: float) -> RunResult:
        run_id = ctx.run.id
        loop = asyncio.get_running_loop()
        tool_ctx = self._tool_context(ctx)
        tools = self.dispatcher.definitions()
        messages: list[dict[str, Any]] = list(ctx.messages)
        tool_calls = 0
        last_text: str | None = None

        for turn in range(limits.max_turns):
            status = await self._log.get_status(run_id)
            if status != RunStatus.RUNNING.value:
                raise _Stopped(status or RunStatus.CANCELED.value)

            response = await self._reason(ctx, messages, tools, deadline - loop.time())
            logger.debug(
                f"Turn {turn + 1} complete",
                data={"run_id": run_id, "stop_reason": response.stop_reason, "blocks": len(response.content)},
            )

            tool_results: list[dict[str, Any]] = []
            for block in response.content:
                if block.type == "text":
                    if not block.text:
                        continue
                    last_text = block.text
                    await save_message(self._sf, ctx.bron.id, run_id, "assistant", block.text)
                    await self._log.append(
                        run_id, "log", {"message": preview(block.text, self.settings.log_preview_chars), "level": "info"}
                    )
                elif block.type == "tool_use":
                    tool_calls += 1
                    if tool_calls > limits.max_tool_calls:
                        raise ResourceExhaustedError(
                            "Maximum tool calls exceeded",
                            details={"max_tool_calls": limits.max_tool_calls},
                        )
                    result = await self._call_tool(tool_ctx, block.name, block.input, deadline - loop.time())
                    if result.needs_approval:
                        await self._log_transition(run_id, RunStatus.NEEDS_APPROVAL)
                        logger.info(
                            "Run paused for approval",
                            data={"run_id": run_id, "approval_id": result.approval_id},
                        )
                        return RunResult(success=True, final_status=RunStatus.NEEDS_APPROVAL.value)
                    tool_results.append(
                        {
                            "type": "tool_result",
                            "tool_use_id": block.id,
                            "content": result.to_content(),
                            "is_error": not result.ok,
                        }
                    )
                    if loop.time() >= deadline:
                        raise RunTimeoutError("Run timed out", details={"timeout_ms": limits.timeout_ms})

            messages.append({"role": "assistant", "content": [b.to_message_content() for b in response.content]})
            if not tool_results:
                break
            messages.append({"role": "user", "content": tool_results})
            if response.stop_reason == "end_turn":
                break
        else:
            logger.warning("Reached maximum turns", data={"run_id": run_id, "max_turns": limits.max_turns})
            await self._log.append(
                run_id, "log", {"message": f"Reached maximum turns ({limits.max_turns})", "level": "warn"}
            )

        await self._succeed(ctx, last_text)
        return RunResult(success=True, final_status=RunStatus.SUCCEEDED.value)

    async def _reason(
        self,
        ctx: RunContext,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        remaining: float,
    ) -> ReasoningResponse:
        if remaining <= 0:
            raise RunTimeoutError("Run timed out")
        try:
            return await asyncio.wait_for(
                self.provider.complete(ctx.system_prompt, messages, tools),
                timeout=remaining,
            )
        except asyncio.TimeoutError:
            raise RunTimeoutError("Run timed out") from None

    async def _call_tool(self, tool_ctx: ToolContext, name: str, args: dict[str, Any], remaining: float) -> ToolResult:
        run_id = tool_ctx.run_id
        await self._log.append(run_id, "tool", {"name": name, "phase": "start", "input": args})
        if remaining <= 0:
            raise RunTimeoutError("Run timed out")
        try:
            result = await asyncio.wait_for(self.dispatcher.dispatch(tool_ctx, name, args), timeout=remaining)
        except asyncio.TimeoutError:
            raise RunTimeoutError("Run timed out", details={"tool": name}) from None
        await self._log.append(run_id, "tool", result.event_payload(name))
        return result

    async def _log_transition(self, run_id: str, target: RunStatus) -> None:
        async with self._log.writer(run_id) as w:
            await transition(w, target)

    async def _succeed(self, ctx: RunContext, last_text: str | None) -> None:
        run_id = ctx.run.id
        async with self._log.writer(run_id) as w:
            if last_text:
                data = {"text": last_text}
                await SQLAlchemyArtifactRepository(w.session).create(run_id=run_id, kind="final_response", data=data)
                await w.append("artifact", {"kind": "final_response", "data": data})
            await transition(w, RunStatus.SUCCEEDED)

        try:
            await update_memory_summary(
                self._sf,
                ctx.bron.id,
                memory_digest(ctx.run, last_text),
                max_chars=self.settings.memory_summary_max_chars,
            )
        except SQLAlchemyError as exc:
            logger.warning("Memory summary update failed", data={"run_id": run_id, "error": str(exc)})

    async def _fail(self, run_id: str, exc: BaseException) -> RunResult:
        if isinstance(exc, BronError):
            error = exc.to_run_error()
            log_message = exc.message
            logger.warning(f"Run failed: {exc.message}", data={"run_id": run_id, "code": exc.code})
        else:
            message = str(exc) or type(exc).__name__
            error = {"message": message, "code": "E5000"}
            log_message = f"Error: {message}"
            logger.error(f"Run execution error: {message}", data={"run_id": run_id}, exc_info=exc)

        try:
            async with self._log.writer(run_id) as w:
                await w.append("log", {"message": log_message, "level": "error"})
                await transition(w, RunStatus.FAILED, error)
        except RunClosedError as closed:
            return RunResult(
                success=False,
                final_status=closed.details.get("status", RunStatus.FAILED.value),
                error=error["message"],
            )
        return RunResult(success=False, final_status=RunStatus.FAILED.value, error=error["message"])
