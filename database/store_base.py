"""
Abstract stores — interfaces for all storage backends.

Two roles are served by every backend:
  - SubscriptionRepository: subscriber rows and the number each one tracks
  - QueueStateOracle:       read-only view of the latest called number
                            per counter, from append-only snapshots

Implementations:
  - InMemoryStore (dict-based, single-process, no persistence)
  - SqlStore      (PostgreSQL / SQLite via SQLAlchemy)
  - RestStore     (Supabase PostgREST over HTTP)
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from config.settings import QueueWatchError
from core.counter import normalize_queue_number
from models.schemas import Subscription


class StoreError(QueueWatchError):
    """A storage backend call failed. Treated as transient by callers."""


class TrackingConflictError(QueueWatchError):
    """Another active subscriber already tracks this queue number."""

    def __init__(self, number: str, existing_subscriber_id: str, existing_display_name: str = ""):
        self.number = number
        self.existing_subscriber_id = existing_subscriber_id
        self.existing_display_name = existing_display_name
        super().__init__(f"Queue {number} is already tracked by another subscriber")


class SubscriptionRepository(ABC):
    """Read/write access to subscriber records."""

    @abstractmethod
    async def list_active_tracked(self) -> list[Subscription]:
        """All active subscriptions with a tracked number."""
        ...

    @abstractmethod
    async def get_subscription(self, subscriber_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    async def find_tracker(self, number: str, exclude_subscriber_id: str = "") -> Optional[Subscription]:
        """The active subscriber tracking `number`, other than the excluded one."""
        ...

    @abstractmethod
    async def upsert_subscriber(self, subscriber_id: str, display_name: str = "") -> Subscription:
        """Create or refresh a subscriber and mark it active."""
        ...

    @abstractmethod
    async def set_tracking(self, subscriber_id: str, number: str) -> None:
        """Write the tracked number and mark active.

        No lookup is done first. A backend with a unique constraint on active
        trackers raises TrackingConflictError when the write violates it.
        """
        ...

    @abstractmethod
    async def clear_tracking(self, subscriber_id: str) -> None:
        ...

    @abstractmethod
    async def deactivate(self, subscriber_id: str) -> None:
        ...

    _registration_lock: Optional[asyncio.Lock] = None

    @property
    def registration_lock(self) -> asyncio.Lock:
        if self._registration_lock is None:
            self._registration_lock = asyncio.Lock()
        return self._registration_lock

    async def register_tracking(self, subscriber_id: str, number: str) -> str:
        """
        Track `number` for a subscriber, enforcing one tracker per number.

        The number is stored in canonical form ("01234" becomes "1234") and
        that form is returned. Registrations through one store instance are
        serialized so the check and the write cannot interleave.

        Raises TrackingConflictError when a different active subscriber
        already tracks the same number.
        """
        number = normalize_queue_number(number)
        async with self.registration_lock:
            existing = await self.find_tracker(number, exclude_subscriber_id=subscriber_id)
            if existing:
                raise TrackingConflictError(number, existing.subscriber_id, existing.display_name)
            await self.set_tracking(subscriber_id, number)
        return number


class QueueStateOracle(ABC):
    """Read access to the latest called number per counter."""

    @abstractmethod
    async def latest_called(self, counter_id: int) -> Optional[int]:
        """Highest called number for the counter, or None if no snapshot exists."""
        ...

    @abstractmethod
    async def record_snapshot(self, counter_id: int, latest_called: int) -> None:
        """Append a snapshot (used by feeders, admin tools and tests)."""
        ...


class BaseStore(SubscriptionRepository, QueueStateOracle):
    """A backend that serves both roles."""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass
