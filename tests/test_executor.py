"""Execution loop scenarios against a scripted provider and a fake Gmail API."""

import asyncio
import json

import pytest
from conftest import text, tool_call
from sqlalchemy import select

from bron_backend.core.exceptions import UpstreamError
from bron_backend.db.models import BronMessage
from bron_backend.repositories.bron_repo import SQLAlchemyBronRepository
from bron_backend.services.executor import RunLimits
from bron_backend.tools.gmail import GmailClient, StaticTokenProvider

pytestmark = pytest.mark.asyncio


def of_type(events, type_):
    return [e for e in events if e["type"] == type_]


async def test_search_with_no_matches_succeeds_without_approval(engine, provider):
    provider.push(
        tool_call("gmail_search", {"query": "invoices"}),
        text("I couldn't find any invoices."),
    )
    run_id = await engine.create_run(await engine.create_bron(), prompt="search for invoices")

    result = await engine.executor.execute(run_id)

    assert result.success is True
    assert result.final_status == "succeeded"
    events = await engine.events(run_id)
    assert await engine.statuses(run_id) == ["queued", "running", "succeeded"]

    ui = of_type(events, "ui")
    assert len(ui) == 1
    assert ui[0]["payload"]["kind"] == "EmailSearchResultsCard"
    assert ui[0]["payload"]["payload"] == {"query": "invoices", "matches": []}

    tools = of_type(events, "tool")
    assert [(t["payload"]["name"], t["payload"]["phase"]) for t in tools] == [
        ("gmail_search", "start"),
        ("gmail_search", "end"),
    ]
    assert tools[0]["payload"]["input"] == {"query": "invoices"}
    assert tools[1]["payload"]["output"] == {"messages": []}

    assert of_type(events, "message")[0]["payload"] == {"role": "user", "content": "search for invoices"}
    artifacts = of_type(events, "artifact")
    assert [a["payload"]["kind"] for a in artifacts] == ["final_response"]
    assert artifacts[0]["payload"]["data"] == {"text": "I couldn't find any invoices."}

    second_call = provider.calls[1]["messages"]
    assert second_call[-1]["role"] == "user"
    assert second_call[-1]["content"][0]["type"] == "tool_result"
    assert second_call[-1]["content"][0]["is_error"] is False


async def test_status_field_matches_last_status_event(engine, provider):
    provider.push(text("done"))
    run_id = await engine.create_run(await engine.create_bron())

    await engine.executor.execute(run_id)

    run = await engine.get_run(run_id)
    assert (await engine.statuses(run_id))[-1] == run.status == "succeeded"
    assert run.last_seq == (await engine.events(run_id))[-1]["seq"]


async def test_tool_call_budget_fails_after_exactly_max_calls(engine, provider):
    provider.push(*[tool_call("gmail_search", {"query": f"q{i}"}, call_id=f"tu_{i}") for i in range(10)])
    run_id = await engine.create_run(await engine.create_bron())

    result = await engine.executor.execute(run_id, RunLimits(max_turns=50, max_tool_calls=3))

    assert result.final_status == "failed"
    assert result.error == "Maximum tool calls exceeded"
    starts = [e for e in of_type(await engine.events(run_id), "tool") if e["payload"]["phase"] == "start"]
    assert len(starts) == 3
    run = await engine.get_run(run_id)
    assert run.error["code"] == "E4290"
    assert run.error["message"] == "Maximum tool calls exceeded"


async def test_max_turns_ends_succeeded_with_warning(engine, provider):
    provider.push(*[tool_call("emit_ui", {"kind": "RunSummaryCard", "payload": {"n": i}}) for i in range(5)])
    run_id = await engine.create_run(await engine.create_bron())

    result = await engine.executor.execute(run_id, RunLimits(max_turns=2))

    assert result.final_status == "succeeded"
    assert len(provider.calls) == 2
    warnings = [e for e in of_type(await engine.events(run_id), "log") if e["payload"]["level"] == "warn"]
    assert warnings[-1]["payload"]["message"] == "Reached maximum turns (2)"


async def test_run_timeout_fails(engine, provider):
    provider.delay = 0.5
    provider.push(text("too slow"))
    run_id = await engine.create_run(await engine.create_bron())

    result = await engine.executor.execute(run_id, RunLimits(timeout_ms=100))

    assert result.final_status == "failed"
    run = await engine.get_run(run_id)
    assert run.error["code"] == "E5040"
    assert run.error["message"] == "Run timed out"


async def test_upstream_error_is_logged_and_fails_run(engine, provider):
    provider.push(UpstreamError("Anthropic API error: overloaded", provider="anthropic"))
    run_id = await engine.create_run(await engine.create_bron())

    result = await engine.executor.execute(run_id)

    assert result.success is False
    events = await engine.events(run_id)
    errors = [e for e in of_type(events, "log") if e["payload"]["level"] == "error"]
    assert errors[-1]["payload"]["message"] == "Anthropic API error: overloaded"
    assert events[-1]["payload"] == {"status": "failed"}
    run = await engine.get_run(run_id)
    assert run.error == {
        "message": "Anthropic API error: overloaded",
        "code": "E5020",
        "details": {"provider": "anthropic"},
    }


async def test_unexpected_exception_becomes_failed_run(engine, provider):
    provider.push(RuntimeError("boom"))
    run_id = await engine.create_run(await engine.create_bron())

    result = await engine.executor.execute(run_id)

    assert result.final_status == "failed"
    logs = of_type(await engine.events(run_id), "log")
    assert logs[-1]["payload"] == {"message": "Error: boom", "level": "error"}
    assert (await engine.get_run(run_id)).error == {"message": "boom", "code": "E5000"}


async def test_unknown_tool_is_fed_back_as_error(engine, provider):
    provider.push(tool_call("gmail_delete_everything", {}), text("Sorry, I can't do that."))
    run_id = await engine.create_run(await engine.create_bron())

    result = await engine.executor.execute(run_id)

    assert result.final_status == "succeeded"
    end = [e for e in of_type(await engine.events(run_id), "tool") if e["payload"]["phase"] == "end"][0]
    assert end["payload"]["error"] == "Unknown tool: gmail_delete_everything"
    block = provider.calls[1]["messages"][-1]["content"][0]
    assert block["is_error"] is True
    assert json.loads(block["content"]) == {"error": "Unknown tool: gmail_delete_everything"}


async def test_cancel_mid_turn_stops_before_next_turn(engine, provider):
    provider.delay = 0.2
    provider.push(
        tool_call("emit_ui", {"kind": "RunSummaryCard", "payload": {}}),
        text("should never be requested"),
    )
    run_id = await engine.create_run(await engine.create_bron())

    task = asyncio.create_task(engine.executor.execute(run_id))
    for _ in range(100):
        if provider.calls:
            break
        await asyncio.sleep(0.01)
    await engine.machine.cancel(run_id)
    result = await asyncio.wait_for(task, timeout=5)

    assert result.final_status == "canceled"
    assert len(provider.calls) == 1
    assert await engine.statuses(run_id) == ["queued", "running", "canceled"]
    assert of_type(await engine.events(run_id), "ui") == []


async def test_non_queued_run_is_not_executed(engine, provider):
    run_id = await engine.create_run(await engine.create_bron())
    await engine.machine.cancel(run_id)
    before = await engine.events(run_id)

    result = await engine.executor.execute(run_id)

    assert result.final_status == "canceled"
    assert provider.calls == []
    assert await engine.events(run_id) == before


async def test_missing_run(engine):
    result = await engine.executor.execute("00000000-0000-0000-0000-000000000000")
    assert result.success is False
    assert result.error == "Run not found"


async def test_gmail_not_connected_warning(engine, provider, fake_gmail):
    engine.executor.gmail = GmailClient(StaticTokenProvider(None), transport=fake_gmail.transport())
    provider.push(text("ok"))
    run_id = await engine.create_run(await engine.create_bron())

    await engine.executor.execute(run_id)

    messages = [e["payload"]["message"] for e in of_type(await engine.events(run_id), "log")]
    assert "Gmail not connected - email operations will fail" in messages
    await engine.executor.gmail.aclose()


async def test_history_and_memory_carry_into_next_run(engine, provider):
    bron_id = await engine.create_bron(name="Ada", system_prompt="Sign emails as Ada.")
    provider.push(text("Found 2 invoices from ACME."))
    first = await engine.create_run(bron_id, prompt="find ACME invoices", title="ACME invoices")
    await engine.executor.execute(first)

    async with engine.session_factory() as session:
        bron = await SQLAlchemyBronRepository(session).get_by_id(bron_id)
        result = await session.execute(
            select(BronMessage).where(BronMessage.bron_id == bron_id).order_by(BronMessage.id)
        )
        rows = result.scalars().all()
    assert "ACME invoices: Found 2 invoices from ACME." in bron.memory_summary
    assert [(m.role, m.content) for m in rows] == [
        ("user", "find ACME invoices"),
        ("assistant", "Found 2 invoices from ACME."),
    ]

    provider.push(text("ok"))
    second = await engine.create_run(bron_id, prompt="and from Globex?")
    await engine.executor.execute(second)

    call = provider.calls[-1]
    assert call["system"].startswith("You are Ada, an AI assistant")
    assert "Additional Instructions:\nSign emails as Ada." in call["system"]
    assert "Context from previous interactions:" in call["system"]
    assert [m["content"] for m in call["messages"]] == [
        "find ACME invoices",
        "Found 2 invoices from ACME.",
        "and from Globex?",
    ]

