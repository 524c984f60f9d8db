"""Run context assembly: system prompt, conversation history, memory summary."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.exceptions import NotFoundError
from ..core.logging import get_logger
from ..db.models import Bron, Run
from ..db.types import utcnow
from ..repositories.bron_repo import SQLAlchemyBronRepository
from ..repositories.message_repo import SQLAlchemyMessageRepository
from ..repositories.run_repo import SQLAlchemyRunRepository

logger = get_logger(__name__)

CAPABILITIES = """
You have access to the following capabilities:
- Search Gmail for messages matching specific criteria
- Read email content and attachments
- Extract information from PDF and document attachments
- Draft and send emails (with user approval)
- Display results and extracted data in structured UI cards
- Delegate sub-tasks to other brons and wait for their results

When working on tasks:
1. Break down complex tasks into clear steps
2. Show your work by emitting UI cards with results
3. Always ask for approval before sending any emails
4. If you encounter errors, report them clearly and suggest alternatives
"""

TOOL_GUIDELINES = """
Tool Usage Guidelines:
- Use gmail_search to find relevant emails
- Use gmail_get_message to read full email content
- Use gmail_get_attachment to download attachments for analysis
- Use emit_ui to display results to the user:
  - EmailSearchResultsCard: Show search results with match reasons
  - AttachmentSummaryCard: List attachments found in an email
  - ExtractedFieldsTable: Display extracted data with confidence scores
  - EmailDraftCard: Show a draft email for review (requires approval)
  - RunSummaryCard: Show final outcome with highlights
- Use gmail_create_draft to prepare emails (they require user approval to send)
- Use spawn_bron and await_bron to hand a sub-task to another bron
"""

DEFAULT_SYSTEM_PROMPT = """You are a helpful personal AI assistant. You can help with various tasks including:
- Searching and reading emails
- Extracting information from attachments
- Drafting and sending emails (with user approval)

Always be clear about what you're doing and ask for confirmation before taking important actions."""


@dataclass
class RunContext:
    bron: Bron
    run: Run
    system_prompt: str
    messages: list[dict[str, Any]]


def build_system_prompt(bron: Bron) -> str:
    """Identity, capabilities, custom instructions, memory, tool guidelines; in that order."""
    parts = [f"You are {bron.name}, an AI assistant that helps with email-related tasks.", CAPABILITIES]
    if bron.system_prompt:
        parts.append(f"\nAdditional Instructions:\n{bron.system_prompt}")
    if bron.memory_summary:
        parts.append(f"\nContext from previous interactions:\n{bron.memory_summary}")
    parts.append(TOOL_GUIDELINES)
    return "\n".join(parts)


async def build_run_context(
    session_factory: async_sessionmaker[AsyncSession],
    run_id: str,
    history_limit: int = 20,
) -> RunContext:
    async with session_factory() as session:
        run = await SQLAlchemyRunRepository(session).get_by_id(run_id)
        if run is None:
            raise NotFoundError("Run not found")
        bron = await SQLAlchemyBronRepository(session).get_by_id(run.bron_id)
        if bron is None:
            raise NotFoundError("Bron not found")
        history = await SQLAlchemyMessageRepository(session).recent_for_bron(bron.id, limit=history_limit)

    messages: list[dict[str, Any]] = [{"role": m.role, "content": m.content} for m in history]
    messages.append({"role": "user", "content": run.prompt})
    return RunContext(bron=bron, run=run, system_prompt=build_system_prompt(bron), messages=messages)


async def save_message(
    session_factory: async_sessionmaker[AsyncSession],
    bron_id: str,
    run_id: str,
    role: str,
    content: str,
) -> None:
    async with session_factory() as session:
        async with session.begin():
            await SQLAlchemyMessageRepository(session).create(bron_id=bron_id, role=role, content=content, run_id=run_id)


def memory_digest(run: Run, final_text: str | None, width: int = 160) -> str:
    """One line describing a finished run."""
    outcome = " ".join((final_text or "").split())
    if len(outcome) > width:
        outcome = outcome[: width - 3].rstrip() + "..."
    line = f"- {utcnow().date().isoformat()} {run.title}"
    return f"{line}: {outcome}" if outcome else line


def merge_memory(existing: str | None, line: str, max_chars: int) -> str:
    """Append ``line``; drop the oldest lines until the summary fits."""
    lines = [ln for ln in (existing or "").splitlines() if ln.strip()]
    lines.append(line)
    while len(lines) > 1 and len("\n".join(lines)) > max_chars:
        lines.pop(0)
    return "\n".join(lines)[-max_chars:]


async def update_memory_summary(
    session_factory: async_sessionmaker[AsyncSession],
    bron_id: str,
    line: str,
    max_chars: int = 2000,
) -> str | None:
    async with session_factory() as session:
        async with session.begin():
            repo = SQLAlchemyBronRepository(session)
            bron = await repo.get_by_id(bron_id)
            if bron is None:
                return None
            summary = merge_memory(bron.memory_summary, line, max_chars)
            await repo.update(bron_id, memory_summary=summary)
    logger.debug("Memory summary updated", data={"bron_id": bron_id, "chars": len(summary)})
    return summary
