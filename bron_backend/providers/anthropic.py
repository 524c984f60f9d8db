"""Anthropic Messages API provider over httpx."""

from __future__ import annotations

from typing import Any

import httpx

from ..core.exceptions import UpstreamError
from ..core.logging import get_logger
from .base import ContentBlock, ReasoningResponse

logger = get_logger(__name__)


class AnthropicProvider:
    """Provider for the Anthropic ``/v1/messages`` endpoint."""

    name = "anthropic"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        api_version: str = "2023-06-01",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Content-Type": "application/json",
                    "x-api-key": self.api_key,
                    "anthropic-version": self.api_version,
                },
            )
        return self._client

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ReasoningResponse:
        if not self.api_key:
            raise UpstreamError("Anthropic API key is not configured", provider=self.name)

        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "tools": tools,
            "messages": messages,
        }
        try:
            response = await self.client.post("/v1/messages", json=payload)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Reasoning call failed: {exc}", provider=self.name) from exc

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(
                "Reasoning call rejected",
                data={"status_code": response.status_code, "error": message},
            )
            raise UpstreamError(f"Reasoning call failed ({response.status_code}): {message}", provider=self.name)

        data = response.json()
        return parse_response(data)


def parse_response(data: dict[str, Any]) -> ReasoningResponse:
    blocks = []
    for block in data.get("content", []):
        if block.get("type") == "text":
            blocks.append(ContentBlock.text_block(block.get("text", "")))
        elif block.get("type") == "tool_use":
            blocks.append(ContentBlock.tool_use(block["id"], block["name"], block.get("input") or {}))
    return ReasoningResponse(
        content=blocks,
        stop_reason=data.get("stop_reason") or "end_turn",
        model=data.get("model", ""),
        usage=data.get("usage") or {},
    )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or str(error)
    return str(body)[:200]
