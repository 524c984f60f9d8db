"""BronService: agent configuration CRUD."""

from __future__ import annotations

import random
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.exceptions import InvalidRequestError, NotFoundError
from ..core.logging import get_logger
from ..db.models import Bron, Run
from ..repositories.bron_repo import SQLAlchemyBronRepository
from .context import DEFAULT_SYSTEM_PROMPT

logger = get_logger(__name__)

AVATAR_PALETTE = (
    "#6366f1",
    "#8b5cf6",
    "#ec4899",
    "#f43f5e",
    "#f97316",
    "#eab308",
    "#22c55e",
    "#14b8a6",
    "#06b6d4",
    "#3b82f6",
)


def pick_avatar_color() -> str:
    return random.choice(AVATAR_PALETTE)


def serialize_bron(bron: Bron, latest_run: Run | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": bron.id,
        "name": bron.name,
        "avatar_color": bron.avatar_color,
        "system_prompt": bron.system_prompt,
        "memory_summary": bron.memory_summary,
        "created_at": bron.created_at.isoformat(),
        "updated_at": bron.updated_at.isoformat(),
    }
    data["latest_run"] = (
        {"id": latest_run.id, "title": latest_run.title, "status": latest_run.status}
        if latest_run is not None
        else None
    )
    return data


class BronService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory

    async def create(
        self,
        name: str,
        avatar_color: str | None = None,
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        async with self._sf() as session:
            async with session.begin():
                bron = await SQLAlchemyBronRepository(session).create(
                    name=name,
                    avatar_color=avatar_color or pick_avatar_color(),
                    system_prompt=system_prompt or DEFAULT_SYSTEM_PROMPT,
                )
            logger.info("Bron created", data={"bron_id": bron.id})
            return serialize_bron(bron)

    async def get(self, bron_id: str) -> dict[str, Any]:
        async with self._sf() as session:
            repo = SQLAlchemyBronRepository(session)
            bron = await repo.get_by_id(bron_id)
            if bron is None:
                raise NotFoundError("Agent not found")
            latest = await repo.latest_runs([bron.id])
            return serialize_bron(bron, latest.get(bron.id))

    async def list(self) -> list[dict[str, Any]]:
        async with self._sf() as session:
            repo = SQLAlchemyBronRepository(session)
            brons = await repo.list_all()
            latest = await repo.latest_runs([b.id for b in brons])
            return [serialize_bron(b, latest.get(b.id)) for b in brons]

    async def update(self, bron_id: str, **fields: Any) -> dict[str, Any]:
        fields = {k: v for k, v in fields.items() if v is not None}
        if not fields:
            raise InvalidRequestError("No fields to update")
        async with self._sf() as session:
            async with session.begin():
                repo = SQLAlchemyBronRepository(session)
                try:
                    bron = await repo.update(bron_id, **fields)
                except ValueError as exc:
                    raise InvalidRequestError(str(exc)) from exc
                if bron is None:
                    raise NotFoundError("Agent not found")
            logger.info("Bron updated", data={"bron_id": bron_id, "fields": sorted(fields)})
            return serialize_bron(bron)
