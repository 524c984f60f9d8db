"""Deterministic scripted provider for CI/E2E."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Iterable, Union

from .base import ContentBlock, ReasoningResponse

ScriptStep = Union[ReasoningResponse, Exception, Callable[[str, list, list], ReasoningResponse]]


class ScriptedProvider:
    """Replays a queue of responses; echoes the last user text once exhausted."""

    name = "mock"

    def __init__(self, script: Iterable[ScriptStep] = (), delay: float = 0.0):
        self._script: deque[ScriptStep] = deque(script)
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    def push(self, *steps: ScriptStep) -> None:
        self._script.extend(steps)

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ReasoningResponse:
        self.calls.append({"system": system, "messages": list(messages), "tools": tools})
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self._script:
            return ReasoningResponse(
                content=[ContentBlock.text_block(f"[mock] {_last_user_text(messages)}".strip())],
                stop_reason="end_turn",
                model="mock-model",
            )
        step = self._script.popleft()
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(system, messages, tools)
        return step

    async def aclose(self) -> None:
        return None


def _last_user_text(messages: list[dict[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
    return ""
