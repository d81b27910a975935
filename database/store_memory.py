"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no HTTP)
  - Full interface compatibility with SqlStore and RestStore
  - Safe within a single asyncio event loop
  - All data lost on process restart
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseStore
from models.schemas import CounterSnapshot, Subscription

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore(BaseStore):
    """Subscriptions and counter snapshots held in plain dicts."""

    def __init__(self):
        self._subscriptions: dict[str, Subscription] = {}               # subscriber_id → row
        self._snapshots: dict[int, list[CounterSnapshot]] = defaultdict(list)  # counter → snapshots
        logger.info("inmemory_store_initialized")

    # ── Subscriptions ─────────────────────────────────────

    async def list_active_tracked(self) -> list[Subscription]:
        return [
            s.model_copy() for s in self._subscriptions.values()
            if s.active and s.tracked_number
        ]

    async def get_subscription(self, subscriber_id: str) -> Optional[Subscription]:
        sub = self._subscriptions.get(subscriber_id)
        return sub.model_copy() if sub else None

    async def find_tracker(self, number: str, exclude_subscriber_id: str = "") -> Optional[Subscription]:
        for sub in self._subscriptions.values():
            if (sub.tracked_number == number and sub.active
                    and sub.subscriber_id != exclude_subscriber_id):
                return sub.model_copy()
        return None

    async def upsert_subscriber(self, subscriber_id: str, display_name: str = "") -> Subscription:
        sub = self._subscriptions.get(subscriber_id)
        if sub:
            sub.active = True
            if display_name:
                sub.display_name = display_name
            sub.updated_at = _utcnow()
        else:
            sub = Subscription(subscriber_id=subscriber_id, display_name=display_name)
            self._subscriptions[subscriber_id] = sub
        return sub.model_copy()

    async def set_tracking(self, subscriber_id: str, number: str) -> None:
        sub = self._subscriptions.get(subscriber_id)
        if sub is None:
            sub = Subscription(subscriber_id=subscriber_id)
            self._subscriptions[subscriber_id] = sub
        sub.tracked_number = number
        sub.active = True
        sub.updated_at = _utcnow()

    async def clear_tracking(self, subscriber_id: str) -> None:
        sub = self._subscriptions.get(subscriber_id)
        if sub:
            sub.tracked_number = None
            sub.updated_at = _utcnow()

    async def deactivate(self, subscriber_id: str) -> None:
        sub = self._subscriptions.get(subscriber_id)
        if sub:
            sub.active = False
            sub.tracked_number = None
            sub.updated_at = _utcnow()

    # ── Queue snapshots ───────────────────────────────────

    async def latest_called(self, counter_id: int) -> Optional[int]:
        snapshots = self._snapshots.get(counter_id)
        if not snapshots:
            return None
        return max(s.latest_called for s in snapshots)

    async def record_snapshot(self, counter_id: int, latest_called: int) -> None:
        self._snapshots[counter_id].append(
            CounterSnapshot(counter_id=counter_id, latest_called=latest_called)
        )

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {
            "subscribers": len(self._subscriptions),
            "tracking": sum(1 for s in self._subscriptions.values() if s.is_tracking),
            "snapshots": sum(len(v) for v in self._snapshots.values()),
        }
