"""
Persistent store table definitions.
Uses SQLAlchemy 2.0+ declarative mapping.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all tables."""

    pass


class KeyValueDB(Base):
    """Generic key -> JSON text records (cached collections, pending logs, session)."""

    __tablename__ = "kv_records"

    key: Mapped[str] = mapped_column(String(500), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<KeyValue(key={self.key}, size={len(self.value)})>"


class CacheTimestampDB(Base):
    """Registry of the last successful network fetch per cache key."""

    __tablename__ = "cache_timestamps"

    key: Mapped[str] = mapped_column(String(500), primary_key=True)
    saved_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<CacheTimestamp(key={self.key}, saved_at={self.saved_at})>"
