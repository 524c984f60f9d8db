"""Approval request repository."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import ApprovalRequest
from ..db.types import GUID, utcnow


@runtime_checkable
class ApprovalRepository(Protocol):
    async def get_by_id(self, id: str) -> ApprovalRequest | None: ...
    async def create(self, run_id: str, action: str, payload: dict[str, Any], token_hash: str) -> ApprovalRequest: ...
    async def claim(self, id: str, status: str) -> bool: ...
    async def resolve(self, id: str, status: str, result: dict[str, Any] | None = None) -> None: ...
    async def list_pending(self, run_id: str) -> list[ApprovalRequest]: ...
    async def has_in_flight(self, run_id: str) -> bool: ...


class SQLAlchemyApprovalRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, id: str) -> ApprovalRequest | None:
        if not GUID.is_valid(id):
            return None
        return await self._session.get(ApprovalRequest, id)

    async def create(self, run_id: str, action: str, payload: dict[str, Any], token_hash: str) -> ApprovalRequest:
        approval = ApprovalRequest(
            id=GUID.new(),
            run_id=run_id,
            action=action,
            payload=payload,
            token_hash=token_hash,
            status="pending",
        )
        self._session.add(approval)
        await self._session.flush()
        return approval

    async def claim(self, id: str, status: str) -> bool:
        """Move a pending approval to ``status``. False if it was not pending.

        ``resolved_at`` stays unset until :meth:`resolve` records the outcome.
        """
        result = await self._session.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == id, ApprovalRequest.status == "pending")
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def resolve(self, id: str, status: str, result: dict[str, Any] | None = None) -> None:
        await self._session.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == id)
            .values(status=status, result=result, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def list_pending(self, run_id: str) -> list[ApprovalRequest]:
        result = await self._session.execute(
            select(ApprovalRequest)
            .where(ApprovalRequest.run_id == run_id, ApprovalRequest.status == "pending")
            .order_by(ApprovalRequest.created_at.desc())
        )
        return list(result.scalars().all())

    async def has_in_flight(self, run_id: str) -> bool:
        """True while an approved action for the run has been claimed but not resolved."""
        result = await self._session.execute(
            select(ApprovalRequest.id)
            .where(
                ApprovalRequest.run_id == run_id,
                ApprovalRequest.status == "approved",
                ApprovalRequest.resolved_at.is_(None),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None
