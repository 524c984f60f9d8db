"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request):
    db_ok = False
    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
            db_ok = True
    except SQLAlchemyError as exc:
        logger.warning("Health check database probe failed", data={"error": str(exc)})

    status = "ok" if db_ok else "degraded"
    return {"status": status, "db_ok": db_ok}
