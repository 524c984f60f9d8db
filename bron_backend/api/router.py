"""API router: aggregates the endpoint modules under ``/api``."""

from __future__ import annotations

from fastapi import APIRouter

from .brons import router as brons_router
from .runs import router as runs_router

router = APIRouter(prefix="/api")
router.include_router(brons_router)
router.include_router(runs_router)
