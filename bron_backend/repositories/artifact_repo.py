"""Artifact repository."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import Artifact
from ..db.types import GUID


@runtime_checkable
class ArtifactRepository(Protocol):
    async def create(self, run_id: str, kind: str, locator: str | None = None, data: dict | None = None) -> Artifact: ...
    async def list_for_run(self, run_id: str, limit: int = 100) -> list[Artifact]: ...


class SQLAlchemyArtifactRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        run_id: str,
        kind: str,
        locator: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Artifact:
        artifact = Artifact(id=GUID.new(), run_id=run_id, kind=kind, locator=locator, data=data)
        self._session.add(artifact)
        await self._session.flush()
        return artifact

    async def list_for_run(self, run_id: str, limit: int = 100) -> list[Artifact]:
        result = await self._session.execute(
            select(Artifact)
            .where(Artifact.run_id == run_id)
            .order_by(Artifact.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())
