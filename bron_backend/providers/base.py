"""Reasoning provider contracts.

A provider takes a system prompt, message history and tool definitions and
returns text and/or tool-use blocks plus a stop reason.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class ContentBlock:
    type: str  # text / tool_use
    text: str = ""
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text_block(cls, text: str) -> ContentBlock:
        return cls(type="text", text=text)

    @classmethod
    def tool_use(cls, id: str, name: str, input: dict[str, Any] | None = None) -> ContentBlock:
        return cls(type="tool_use", id=id, name=name, input=input or {})

    def to_message_content(self) -> dict[str, Any]:
        if self.type == "tool_use":
            return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}
        return {"type": "text", "text": self.text}


@dataclass
class ReasoningResponse:
    content: list[ContentBlock]
    stop_reason: str = "end_turn"
    model: str = ""
    usage: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_uses(self) -> list[ContentBlock]:
        return [b for b in self.content if b.type == "tool_use"]

    @property
    def texts(self) -> list[str]:
        return [b.text for b in self.content if b.type == "text" and b.text]


class ReasoningProvider(Protocol):
    name: str

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ReasoningResponse: ...

    async def aclose(self) -> None: ...
