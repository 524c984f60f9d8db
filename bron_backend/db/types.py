"""Dialect-aware column types for Postgres/SQLite dual support."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, String, types
from sqlalchemy.dialects import postgresql


class GUID(types.TypeDecorator):
    """UUID stored as text: native UUID on Postgres, CHAR(36) on SQLite.

    Values round-trip as canonical lowercase strings.
    """

    impl = String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(postgresql.UUID(as_uuid=False))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        return None if value is None else str(value)

    @staticmethod
    def new() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def is_valid(value: str) -> bool:
        try:
            uuid.UUID(str(value))
        except (ValueError, TypeError):
            return False
        return True


class JSONB(types.TypeDecorator):
    """JSONB on Postgres, JSON on SQLite."""

    impl = types.JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(postgresql.JSONB)
        return dialect.type_descriptor(types.JSON)


class UTCDateTime(types.TypeDecorator):
    """Timezone-aware UTC datetimes; SQLite hands back naive values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)
