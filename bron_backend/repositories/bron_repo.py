"""Bron (agent configuration) repository."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import Bron, Run
from ..db.types import GUID

UPDATABLE_FIELDS = ("name", "avatar_color", "system_prompt", "memory_summary")


@runtime_checkable
class BronRepository(Protocol):
    async def get_by_id(self, id: str) -> Bron | None: ...
    async def create(self, name: str, avatar_color: str, system_prompt: str) -> Bron: ...
    async def update(self, id: str, **fields: Any) -> Bron | None: ...
    async def list_all(self) -> list[Bron]: ...
    async def latest_runs(self, bron_ids: list[str]) -> dict[str, Run]: ...


class SQLAlchemyBronRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, id: str) -> Bron | None:
        if not GUID.is_valid(id):
            return None
        return await self._session.get(Bron, id)

    async def create(self, name: str, avatar_color: str, system_prompt: str) -> Bron:
        bron = Bron(id=GUID.new(), name=name, avatar_color=avatar_color, system_prompt=system_prompt)
        self._session.add(bron)
        await self._session.flush()
        return bron

    async def update(self, id: str, **fields: Any) -> Bron | None:
        bron = await self.get_by_id(id)
        if not bron:
            return None
        for key, value in fields.items():
            if key not in UPDATABLE_FIELDS:
                raise ValueError(f"Field not updatable: {key}")
            setattr(bron, key, value)
        await self._session.flush()
        return bron

    async def list_all(self) -> list[Bron]:
        result = await self._session.execute(select(Bron).order_by(Bron.updated_at.desc()))
        return list(result.scalars().all())

    async def latest_runs(self, bron_ids: list[str]) -> dict[str, Run]:
        """Most recent run per bron, keyed by bron id."""
        if not bron_ids:
            return {}
        newest = (
            select(Run.bron_id, func.max(Run.created_at).label("max_created"))
            .where(Run.bron_id.in_(bron_ids))
            .group_by(Run.bron_id)
            .subquery()
        )
        result = await self._session.execute(
            select(Run).join(
                newest,
                (Run.bron_id == newest.c.bron_id) & (Run.created_at == newest.c.max_created),
            )
        )
        return {run.bron_id: run for run in result.scalars().all()}
