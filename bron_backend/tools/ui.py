"""Presentation (``ui``) events: card kinds and payload builders."""

from __future__ import annotations

from enum import Enum
from typing import Any

from ..services.event_log import EventLog


class UICardKind(str, Enum):
    EMAIL_SEARCH_RESULTS = "EmailSearchResultsCard"
    ATTACHMENT_SUMMARY = "AttachmentSummaryCard"
    EXTRACTED_FIELDS = "ExtractedFieldsTable"
    EMAIL_DRAFT = "EmailDraftCard"
    RUN_SUMMARY = "RunSummaryCard"


async def emit_ui(event_log: EventLog, run_id: str, kind: UICardKind | str, payload: dict[str, Any]) -> dict[str, Any]:
    return await event_log.append(run_id, "ui", {"kind": UICardKind(kind).value, "payload": payload})


def search_results_card(query: str, messages: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "query": query,
        "matches": [
            {
                "messageId": m.get("messageId"),
                "subject": m.get("subject", ""),
                "from": m.get("from", ""),
                "date": m.get("date", ""),
                "reason": "Matched search query",
            }
            for m in messages
        ],
    }


def attachment_summary_card(message: dict[str, Any]) -> dict[str, Any]:
    return {
        "messageId": message.get("id"),
        "attachments": [
            {
                "attachmentId": a["attachmentId"],
                "filename": a["filename"],
                "mimeType": a["mimeType"],
                "sizeBytes": a.get("size", 0),
            }
            for a in message.get("attachments", [])
        ],
    }


def email_draft_card(
    draft_id: str,
    to: str,
    subject: str,
    body_text: str,
    cc: list[str] | None,
    approval_id: str,
    approval_token: str,
) -> dict[str, Any]:
    return {
        "draftId": draft_id,
        "to": to,
        "cc": cc or [],
        "subject": subject,
        "bodyText": body_text,
        "requiresApproval": True,
        "approvalId": approval_id,
        "approvalToken": approval_token,
    }

