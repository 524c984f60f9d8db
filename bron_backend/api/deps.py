"""Accessors for the engine components the lifespan stores on ``app.state``."""

from __future__ import annotations

from fastapi import Request

from ..core.settings import Settings
from ..services.approval import ApprovalGate
from ..services.bron_service import BronService
from ..services.event_log import EventLog
from ..services.orchestrator import ChildRunOrchestrator
from ..services.run_service import RunService
from ..services.scheduler import RunScheduler
from ..services.state_machine import RunStateMachine
from ..streaming.distributor import RunStreamDistributor


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_event_log(request: Request) -> EventLog:
    return request.app.state.event_log


def get_run_service(request: Request) -> RunService:
    return RunService(request.app.state.event_log, request.app.state.scheduler)


def get_bron_service(request: Request) -> BronService:
    return BronService(request.app.state.session_factory)


def get_scheduler(request: Request) -> RunScheduler:
    return request.app.state.scheduler


def get_state_machine(request: Request) -> RunStateMachine:
    return request.app.state.state_machine


def get_approvals(request: Request) -> ApprovalGate:
    return request.app.state.approvals


def get_orchestrator(request: Request) -> ChildRunOrchestrator:
    return request.app.state.orchestrator


def get_distributor(request: Request) -> RunStreamDistributor:
    return request.app.state.distributor
