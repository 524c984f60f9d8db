"""Bron (agent) endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator

from ..services.bron_service import BronService
from ..services.run_service import RunService
from .deps import get_bron_service, get_run_service

router = APIRouter(prefix="/brons", tags=["brons"])

COLOR_PATTERN = r"^#[0-9a-fA-F]{6}$"


class CreateBronRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    avatar_color: str | None = Field(default=None, pattern=COLOR_PATTERN)
    system_prompt: str | None = Field(default=None, max_length=10000)


class UpdateBronRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    avatar_color: str | None = Field(default=None, pattern=COLOR_PATTERN)
    system_prompt: str | None = Field(default=None, max_length=10000)

    @model_validator(mode="after")
    def require_one_field(self) -> UpdateBronRequest:
        if self.name is None and self.avatar_color is None and self.system_prompt is None:
            raise ValueError("At least one field must be provided")
        return self


@router.post("", status_code=201)
async def create_bron(body: CreateBronRequest, svc: BronService = Depends(get_bron_service)) -> dict[str, Any]:
    return await svc.create(name=body.name, avatar_color=body.avatar_color, system_prompt=body.system_prompt)


@router.get("")
async def list_brons(svc: BronService = Depends(get_bron_service)) -> dict[str, Any]:
    return {"brons": await svc.list()}


@router.get("/{bron_id}")
async def get_bron(bron_id: str, svc: BronService = Depends(get_bron_service)) -> dict[str, Any]:
    return await svc.get(bron_id)


@router.patch("/{bron_id}")
async def update_bron(
    bron_id: str,
    body: UpdateBronRequest,
    svc: BronService = Depends(get_bron_service),
) -> dict[str, Any]:
    return await svc.update(bron_id, **body.model_dump(exclude_none=True))


@router.get("/{bron_id}/runs")
async def list_bron_runs(
    bron_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    svc: RunService = Depends(get_run_service),
) -> dict[str, Any]:
    return {"runs": await svc.list_for_bron(bron_id, limit=limit, offset=offset)}
