"""SQLAlchemy ORM models for brons, runs and their event logs (Postgres/SQLite)."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .types import GUID, JSONB, UTCDateTime, utcnow


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    """Provides created_at and updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


# ---------------------------------------------------------------------------
# 1. brons (agent configuration)
# ---------------------------------------------------------------------------
class Bron(TimestampMixin, Base):
    __tablename__ = "brons"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    avatar_color: Mapped[str] = mapped_column(String(7), nullable=False)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    memory_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    runs: Mapped[list[Run]] = relationship(back_populates="bron")


# ---------------------------------------------------------------------------
# 2. runs
# ---------------------------------------------------------------------------
class Run(Base):
    __tablename__ = "runs"
    __table_args__ = (
        Index("ix_runs_bron_created", "bron_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    bron_id: Mapped[str] = mapped_column(GUID(), ForeignKey("brons.id"), nullable=False)
    parent_run_id: Mapped[str | None] = mapped_column(GUID(), ForeignKey("runs.id"), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued", index=True)
    # highest seq handed out for this run; bumped in the same transaction as the insert
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[dict | None] = mapped_column(JSONB(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    bron: Mapped[Bron] = relationship(back_populates="runs")


# ---------------------------------------------------------------------------
# 3. run_events (append-only)
# ---------------------------------------------------------------------------
class RunEvent(Base):
    __tablename__ = "run_events"
    __table_args__ = (
        UniqueConstraint("run_id", "seq", name="uq_run_events_run_seq"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    run_id: Mapped[str] = mapped_column(GUID(), ForeignKey("runs.id"), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# 4. bron_messages (conversation history per agent)
# ---------------------------------------------------------------------------
class BronMessage(Base):
    __tablename__ = "bron_messages"
    __table_args__ = (
        Index("ix_bron_messages_bron_id_id", "bron_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bron_id: Mapped[str] = mapped_column(GUID(), ForeignKey("brons.id"), nullable=False)
    run_id: Mapped[str | None] = mapped_column(GUID(), ForeignKey("runs.id"), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # user/assistant
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# 5. artifacts
# ---------------------------------------------------------------------------
class Artifact(Base):
    __tablename__ = "artifacts"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    run_id: Mapped[str] = mapped_column(GUID(), ForeignKey("runs.id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    locator: Mapped[str | None] = mapped_column(Text, nullable=True)
    data: Mapped[dict | None] = mapped_column(JSONB(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# 6. approval_requests
# ---------------------------------------------------------------------------
class ApprovalRequest(Base):
    __tablename__ = "approval_requests"
    __table_args__ = (
        Index("ix_approval_requests_run_status", "run_id", "status"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    run_id: Mapped[str] = mapped_column(GUID(), ForeignKey("runs.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # send_draft
    payload: Mapped[dict] = mapped_column(JSONB(), nullable=False, default=dict)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    result: Mapped[dict | None] = mapped_column(JSONB(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
