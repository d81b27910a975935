"""
SqlStore — Portable SQL queries for PostgreSQL and SQLite.

Subscribers live in `line_users`; counter observations are appended to
`queue_snapshots` and the oracle reads MAX(current_queue) per counter.
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import IntegrityError

from database.models import SubscriberRow, QueueSnapshotRow
from database.session import get_session, init_db, close_db
from database.store_base import BaseStore, TrackingConflictError
from models.schemas import Subscription

logger = structlog.get_logger()


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL (including Supabase) and SQLite.
    """

    def __init__(self, db_url: Optional[str] = None):
        self.db_url = db_url

    async def initialize(self) -> None:
        await init_db(self.db_url)

    async def close(self) -> None:
        await close_db()

    # ── Subscriptions ──────────────────────────────────────

    async def list_active_tracked(self) -> list[Subscription]:
        async with get_session() as db:
            stmt = select(SubscriberRow).where(and_(
                SubscriberRow.is_active.is_(True),
                SubscriberRow.tracked_queue.is_not(None),
            ))
            result = await db.execute(stmt)
            return [self._row_to_subscription(r) for r in result.scalars()]

    async def get_subscription(self, subscriber_id: str) -> Optional[Subscription]:
        async with get_session() as db:
            row = await db.get(SubscriberRow, subscriber_id)
            return self._row_to_subscription(row) if row else None

    async def find_tracker(self, number: str, exclude_subscriber_id: str = "") -> Optional[Subscription]:
        async with get_session() as db:
            stmt = (
                select(SubscriberRow)
                .where(and_(
                    SubscriberRow.tracked_queue == number,
                    SubscriberRow.is_active.is_(True),
                    SubscriberRow.line_user_id != exclude_subscriber_id,
                ))
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_subscription(row) if row else None

    async def upsert_subscriber(self, subscriber_id: str, display_name: str = "") -> Subscription:
        async with get_session() as db:
            row = await db.get(SubscriberRow, subscriber_id)
            if row:
                row.is_active = True
                if display_name:
                    row.display_name = display_name
            else:
                row = SubscriberRow(
                    line_user_id=subscriber_id,
                    display_name=display_name,
                    is_active=True,
                )
                db.add(row)
            await db.flush()
            return self._row_to_subscription(row)

    async def set_tracking(self, subscriber_id: str, number: str) -> None:
        try:
            async with get_session() as db:
                row = await db.get(SubscriberRow, subscriber_id)
                if row:
                    row.tracked_queue = number
                    row.is_active = True
                else:
                    db.add(SubscriberRow(line_user_id=subscriber_id, tracked_queue=number, is_active=True))
        except IntegrityError:
            # uq_line_users_active_tracked_queue: another writer got there first
            existing = await self.find_tracker(number, exclude_subscriber_id=subscriber_id)
            logger.warning("tracking_unique_violation", queue=number, subscriber=subscriber_id[:10])
            raise TrackingConflictError(
                number,
                existing.subscriber_id if existing else "",
                existing.display_name if existing else "",
            )

    async def clear_tracking(self, subscriber_id: str) -> None:
        async with get_session() as db:
            await db.execute(
                update(SubscriberRow)
                .where(SubscriberRow.line_user_id == subscriber_id)
                .values(tracked_queue=None)
            )

    async def deactivate(self, subscriber_id: str) -> None:
        async with get_session() as db:
            await db.execute(
                update(SubscriberRow)
                .where(SubscriberRow.line_user_id == subscriber_id)
                .values(is_active=False, tracked_queue=None)
            )

    # ── Queue snapshots ────────────────────────────────────

    async def latest_called(self, counter_id: int) -> Optional[int]:
        async with get_session() as db:
            stmt = (
                select(func.max(QueueSnapshotRow.current_queue))
                .where(QueueSnapshotRow.current_counter == counter_id)
            )
            result = await db.execute(stmt)
            value = result.scalar_one_or_none()
            return int(value) if value is not None else None

    async def record_snapshot(self, counter_id: int, latest_called: int) -> None:
        async with get_session() as db:
            db.add(QueueSnapshotRow(current_counter=counter_id, current_queue=latest_called))

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_subscription(row: SubscriberRow) -> Subscription:
        return Subscription(
            subscriber_id=row.line_user_id,
            tracked_number=row.tracked_queue,
            active=bool(row.is_active),
            display_name=row.display_name or "",
        )
