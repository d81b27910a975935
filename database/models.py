"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL (Supabase) and SQLite.

Table and column names match the hosted Supabase schema so the SQL and
REST backends can point at the same database:
  line_users      (line_user_id, display_name, tracked_queue, is_active)
  queue_snapshots (current_counter, current_queue, created_at)
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Integer, Boolean, DateTime, Index, text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Subscribers
# ──────────────────────────────────────────────────────────────

class SubscriberRow(Base):
    __tablename__ = "line_users"

    line_user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(256), default="")
    tracked_queue: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_line_users_tracked_queue", "tracked_queue"),
        # One active tracker per number
        Index(
            "uq_line_users_active_tracked_queue", "tracked_queue",
            unique=True,
            sqlite_where=text("is_active AND tracked_queue IS NOT NULL"),
            postgresql_where=text("is_active AND tracked_queue IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return f"<SubscriberRow {self.line_user_id[:10]} tracked={self.tracked_queue} active={self.is_active}>"


# ──────────────────────────────────────────────────────────────
#  Queue snapshots
# ──────────────────────────────────────────────────────────────

class QueueSnapshotRow(Base):
    __tablename__ = "queue_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    current_counter: Mapped[int] = mapped_column(Integer, nullable=False)
    current_queue: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_queue_snapshots_counter_queue", "current_counter", "current_queue"),
    )
