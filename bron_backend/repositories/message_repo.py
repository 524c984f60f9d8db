"""Conversation message repository."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import BronMessage


@runtime_checkable
class MessageRepository(Protocol):
    async def create(self, bron_id: str, role: str, content: str, run_id: str | None = None) -> BronMessage: ...
    async def recent_for_bron(self, bron_id: str, limit: int = 20) -> list[BronMessage]: ...


class SQLAlchemyMessageRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, bron_id: str, role: str, content: str, run_id: str | None = None) -> BronMessage:
        message = BronMessage(bron_id=bron_id, run_id=run_id, role=role, content=content)
        self._session.add(message)
        await self._session.flush()
        return message

    async def recent_for_bron(self, bron_id: str, limit: int = 20) -> list[BronMessage]:
        """Last ``limit`` messages for a bron, oldest first."""
        result = await self._session.execute(
            select(BronMessage)
            .where(BronMessage.bron_id == bron_id)
            .order_by(BronMessage.id.desc())
            .limit(limit)
        )
        return list(reversed(result.scalars().all()))
