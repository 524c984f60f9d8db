"""Approval gate: suspend a run on an irreversible action, resume it once.

Each proposal is an ``approval_requests`` row holding the SHA-256 of a
single-use token. Resuming claims the row in the same transaction that checks
the run status, so a second decision for the same proposal is rejected.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..core.exceptions import IllegalStateError, NotFoundError, RunClosedError
from ..core.logging import get_logger
from ..db.models import ApprovalRequest
from ..repositories.approval_repo import SQLAlchemyApprovalRepository
from ..repositories.artifact_repo import SQLAlchemyArtifactRepository
from .event_log import EventLog, RunWriter
from .state_machine import RunStatus, transition

logger = get_logger(__name__)

ACTION_SEND_DRAFT = "send_draft"

# action -> (tool name shown in the log, artifact kind)
ACTION_LABELS = {
    ACTION_SEND_DRAFT: ("gmail_send_draft", "email_sent"),
}

ActionPerformer = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]
CardBuilder = Callable[[str, str], dict[str, Any]]


def new_token() -> str:
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ApprovalSignal:
    """Returned to the execution loop; tells it to stop and wait."""

    approval_id: str
    token: str
    action: str


@dataclass
class ResumeResult:
    success: bool
    final_status: str
    error: str | None = None
    output: dict[str, Any] | None = None


class ApprovalGate:
    def __init__(
        self,
        event_log: EventLog,
        performers: dict[str, ActionPerformer] | None = None,
        require_token: bool = True,
    ):
        self._log = event_log
        self._performers: dict[str, ActionPerformer] = dict(performers or {})
        self.require_token = require_token

    def register(self, action: str, performer: ActionPerformer) -> None:
        self._performers[action] = performer

    async def request_approval(
        self,
        run_id: str,
        action: str,
        payload: dict[str, Any],
        card: CardBuilder | None = None,
    ) -> ApprovalSignal:
        """Record a proposal and, when ``card`` is given, its ``ui`` event.

        ``card(approval_id, token)`` returns the ``{"kind", "payload"}`` body.
        """
        token = new_token()
        async with self._log.writer(run_id) as w:
            run = await w.get_run()
            if run.status != RunStatus.RUNNING.value:
                raise IllegalStateError(
                    f"Run is {run.status}; approvals can only be requested while running",
                    details={"run_id": run_id, "status": run.status},
                )
            approval = await SQLAlchemyApprovalRepository(w.session).create(
                run_id=run_id, action=action, payload=payload, token_hash=hash_token(token)
            )
            if card is not None:
                await w.append("ui", card(approval.id, token))
        logger.info(
            "Approval requested",
            data={"run_id": run_id, "approval_id": approval.id, "action": action},
        )
        return ApprovalSignal(approval_id=approval.id, token=token, action=action)

    async def resume(
        self,
        run_id: str,
        approved: bool,
        token: str | None = None,
        approval_id: str | None = None,
    ) -> ResumeResult:
        """Apply a human decision to a run waiting in ``needs_approval``."""
        async with self._log.writer(run_id) as w:
            run = await w.get_run()
            if run.status != RunStatus.NEEDS_APPROVAL.value:
                raise IllegalStateError(
                    "Run is not awaiting approval",
                    details={"run_id": run_id, "status": run.status},
                )
            repo = SQLAlchemyApprovalRepository(w.session)
            approval = await self._find_pending(w, repo, approval_id)
            # none pending also covers an approved action still in flight
            if approval is None:
                raise IllegalStateError("No pending approval found", details={"run_id": run_id})

            self._verify_token(approval, token)
            claimed = await repo.claim(approval.id, "approved" if approved else "rejected")
            if not claimed:
                raise IllegalStateError("Approval already resolved", details={"approval_id": approval.id})

            if not approved:
                await repo.resolve(approval.id, "rejected")
                await w.append("log", {"message": "Approval rejected by user", "level": "info"})
                await transition(w, RunStatus.CANCELED)
                logger.info("Approval rejected", data={"run_id": run_id})
                return ResumeResult(success=True, final_status=RunStatus.CANCELED.value)

            action = approval.action
            action_payload = dict(approval.payload)
            claimed_id = approval.id
            await w.append("log", {"message": "Approval granted", "level": "info"})

        logger.info("Approval granted", data={"run_id": run_id, "approval_id": claimed_id})
        return await self._perform(run_id, claimed_id, action, action_payload)

    async def _find_pending(
        self,
        w: RunWriter,
        repo: SQLAlchemyApprovalRepository,
        approval_id: str | None,
    ) -> ApprovalRequest | None:
        if approval_id is not None:
            approval = await repo.get_by_id(approval_id)
            if approval is None or approval.run_id != w.run_id:
                raise NotFoundError("Approval not found")
            if approval.status != "pending":
                raise IllegalStateError("Approval already resolved", details={"approval_id": approval_id})
            return approval

        # latest proposal card that still points at a pending approval
        for event in await w.scope.runs.get_latest_events(w.run_id, type="ui", limit=50):
            body = event.payload or {}
            card = body.get("payload") or {}
            if body.get("kind") != "EmailDraftCard" or not card.get("requiresApproval"):
                continue
            candidate_id = card.get("approvalId")
            if not candidate_id:
                continue
            approval = await repo.get_by_id(candidate_id)
            if approval is not None and approval.status == "pending":
                return approval
        return None

    def _verify_token(self, approval: ApprovalRequest, token: str | None) -> None:
        if not self.require_token:
            return
        if not token or not hmac.compare_digest(hash_token(token), approval.token_hash):
            logger.warning("Approval token mismatch", data={"approval_id": approval.id})
            raise IllegalStateError("Invalid approval token", details={"approval_id": approval.id})

    async def _perform(self, run_id: str, approval_id: str, action: str, payload: dict[str, Any]) -> ResumeResult:
        tool_name, artifact_kind = ACTION_LABELS.get(action, (action, action))
        performer = self._performers.get(action)

        await self._log.append(run_id, "tool", {"name": tool_name, "phase": "start", "input": _public_input(payload)})
        if performer is None:
            result = {"error": f"No performer registered for action: {action}"}
        else:
            try:
                result = await performer(payload)
            except Exception as exc:
                logger.error(
                    "Approved action raised",
                    data={"run_id": run_id, "action": action, "error": str(exc)},
                    exc_info=True,
                )
                result = {"error": str(exc) or type(exc).__name__}

        error = result.get("error")
        end_payload = {"name": tool_name, "phase": "end", "output": result}
        if error:
            end_payload["error"] = error

        try:
            async with self._log.writer(run_id) as w:
                await w.append("tool", end_payload)
                repo = SQLAlchemyApprovalRepository(w.session)
                if error:
                    await repo.resolve(approval_id, "failed", result)
                    await w.append("log", {"message": f"Failed to send: {error}", "level": "error"})
                    await transition(w, RunStatus.FAILED, {"message": error, "code": "E5020"})
                else:
                    await repo.resolve(approval_id, "approved", result)
                    locator = result.get("messageId")
                    await SQLAlchemyArtifactRepository(w.session).create(
                        run_id=run_id, kind=artifact_kind, locator=locator, data=result
                    )
                    await w.append("artifact", {"kind": artifact_kind, "locator": locator, "data": result})
                    await transition(w, RunStatus.SUCCEEDED)
        except RunClosedError as exc:
            # canceled while the action was in flight
            logger.warning(
                "Run closed before approval outcome was recorded",
                data={"run_id": run_id, "approval_id": approval_id},
            )
            return ResumeResult(success=False, final_status=exc.details.get("status", "canceled"), error=exc.message)

        if error:
            return ResumeResult(success=False, final_status=RunStatus.FAILED.value, error=error, output=result)
        return ResumeResult(success=True, final_status=RunStatus.SUCCEEDED.value, output=result)


def _public_input(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if k in ("draftId", "to", "subject", "cc")}
