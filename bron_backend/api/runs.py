"""Run submission, control and event endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field
from starlette.responses import StreamingResponse

from ..core.exceptions import IllegalStateError
from ..core.logging import get_logger
from ..core.settings import Settings
from ..services.approval import ApprovalGate
from ..services.orchestrator import ChildRunOrchestrator
from ..services.run_service import RunService
from ..services.scheduler import RunScheduler
from ..services.state_machine import RunStateMachine, RunStatus
from ..streaming.distributor import RunStreamDistributor
from ..streaming.sse import SSE_HEADERS, parse_last_event_id
from .deps import (
    get_app_settings,
    get_approvals,
    get_distributor,
    get_orchestrator,
    get_run_service,
    get_scheduler,
    get_state_machine,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


class CreateRunRequest(BaseModel):
    bron_id: str
    prompt: str = Field(min_length=1, max_length=10000)
    title: str | None = Field(default=None, max_length=200)
    auto_start: bool = True


class ApproveSendRequest(BaseModel):
    approved: bool
    approval_id: str | None = None
    approval_token: str | None = None


@router.post("", status_code=201)
async def create_run(body: CreateRunRequest, svc: RunService = Depends(get_run_service)) -> dict[str, Any]:
    return await svc.create_run(
        bron_id=body.bron_id,
        prompt=body.prompt,
        title=body.title or None,
        auto_start=body.auto_start,
    )


@router.get("/{run_id}")
async def get_run(run_id: str, svc: RunService = Depends(get_run_service)) -> dict[str, Any]:
    return await svc.get_run(run_id)


@router.get("/{run_id}/children")
async def list_children(
    run_id: str,
    svc: RunService = Depends(get_run_service),
    orchestrator: ChildRunOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    await svc.require_run(run_id)
    return {"children": await orchestrator.list_children(run_id)}


@router.post("/{run_id}/execute", status_code=202)
async def execute_run(
    run_id: str,
    svc: RunService = Depends(get_run_service),
    scheduler: RunScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    status = await svc.require_run(run_id)
    if status != RunStatus.QUEUED.value:
        raise IllegalStateError(f"Run is {status}; only queued runs can be executed", details={"status": status})
    scheduled = scheduler.schedule(run_id)
    return {"run_id": run_id, "status": status, "scheduled": scheduled}


@router.get("/{run_id}/events")
async def list_events(
    run_id: str,
    after_seq: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    svc: RunService = Depends(get_run_service),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    page = min(limit or settings.events_page_default, settings.events_page_max)
    events = await svc.get_events(run_id, after_seq=after_seq, limit=page)
    next_after = events[-1]["seq"] if events else after_seq
    return {"events": events, "next_after_seq": next_after, "has_more": len(events) == page}


@router.get("/{run_id}/stream")
async def stream_events(
    run_id: str,
    after_seq: str | None = Query(default=None),
    last_event_id: str | None = Header(default=None, alias="Last-Event-ID"),
    svc: RunService = Depends(get_run_service),
    distributor: RunStreamDistributor = Depends(get_distributor),
):
    """SSE stream of the run log.

    Resume point: ``Last-Event-ID`` header (takes precedence), then ``?after_seq=``.
    """
    await svc.require_run(run_id)
    cursor = parse_last_event_id(last_event_id)
    if cursor is None:
        cursor = parse_last_event_id(after_seq) or 0
    logger.info("Stream requested", data={"run_id": run_id, "after_seq": cursor})
    return StreamingResponse(
        distributor.stream(run_id, after_seq=cursor),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/{run_id}/approve-send")
async def approve_send(
    run_id: str,
    body: ApproveSendRequest,
    approvals: ApprovalGate = Depends(get_approvals),
) -> dict[str, Any]:
    result = await approvals.resume(
        run_id,
        approved=body.approved,
        token=body.approval_token,
        approval_id=body.approval_id,
    )
    response: dict[str, Any] = {"success": result.success, "status": result.final_status}
    if result.error:
        response["error"] = result.error
    if result.output is not None:
        response["result"] = result.output
    return response


@router.post("/{run_id}/cancel")
async def cancel_run(
    run_id: str,
    machine: RunStateMachine = Depends(get_state_machine),
) -> dict[str, Any]:
    event = await machine.cancel(run_id)
    return {"run_id": run_id, "status": RunStatus.CANCELED.value, "seq": event["seq"]}
