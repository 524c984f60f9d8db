import json

import httpx
import pytest

from bron_backend.core.exceptions import UpstreamError
from bron_backend.core.settings import Settings
from bron_backend.providers.anthropic import AnthropicProvider
from bron_backend.providers.mock import ScriptedProvider
from bron_backend.providers.registry import get_reasoning_provider

pytestmark = pytest.mark.asyncio


def make_provider(handler, api_key="sk-test") -> AnthropicProvider:
    return AnthropicProvider(
        base_url="https://api.example.test",
        api_key=api_key,
        model="test-model",
        transport=httpx.MockTransport(handler),
    )


async def test_complete_parses_text_and_tool_use():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "test-model",
                "stop_reason": "tool_use",
                "content": [
                    {"type": "text", "text": "Searching."},
                    {"type": "tool_use", "id": "tu_1", "name": "gmail_search", "input": {"query": "invoices"}},
                ],
            },
        )

    provider = make_provider(handler)
    response = await provider.complete("system", [{"role": "user", "content": "hi"}], [{"name": "gmail_search"}])
    await provider.aclose()

    assert seen["path"] == "/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["body"]["system"] == "system"
    assert seen["body"]["model"] == "test-model"
    assert response.stop_reason == "tool_use"
    assert response.texts == ["Searching."]
    assert [(b.id, b.name, b.input) for b in response.tool_uses] == [("tu_1", "gmail_search", {"query": "invoices"})]


async def test_error_status_becomes_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(529, json={"error": {"type": "overloaded_error", "message": "Overloaded"}})

    provider = make_provider(handler)
    with pytest.raises(UpstreamError) as exc_info:
        await provider.complete("s", [], [])
    await provider.aclose()

    assert exc_info.value.message == "Reasoning call failed (529): Overloaded"
    assert exc_info.value.to_run_error() == {
        "message": "Reasoning call failed (529): Overloaded",
        "code": "E5020",
        "details": {"provider": "anthropic"},
    }


async def test_transport_error_becomes_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = make_provider(handler)
    with pytest.raises(UpstreamError, match="connection refused"):
        await provider.complete("s", [], [])
    await provider.aclose()


async def test_missing_api_key_fails_before_any_request():
    calls = []
    provider = make_provider(lambda request: calls.append(request), api_key="")

    with pytest.raises(UpstreamError, match="not configured"):
        await provider.complete("s", [], [])
    assert calls == []


async def test_registry_selects_by_mode():
    mock = get_reasoning_provider(Settings(provider_mode="mock", environment="test"))
    real = get_reasoning_provider(Settings(provider_mode="anthropic", environment="test", anthropic_api_key="k"))

    assert isinstance(mock, ScriptedProvider)
    assert isinstance(real, AnthropicProvider)
    await real.aclose()


async def test_scripted_provider_echoes_when_exhausted():
    provider = ScriptedProvider()
    response = await provider.complete("s", [{"role": "user", "content": "ping"}], [])
    assert response.texts == ["[mock] ping"]

