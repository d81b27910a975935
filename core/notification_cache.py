"""
Notification Cache — time-bounded record of notifications already sent.

Keys are (subscriber_id, tracked_number, transition). A key that fired
within the retention window is never sent again. The dispatcher uses the
reserve → confirm / release protocol so that:

  - two evaluations racing on the same key cannot both deliver
    (the first reservation blocks the second),
  - a failed delivery leaves no record behind and is retried next scan,
  - eviction never removes a key whose delivery is still in flight.

All state lives in process memory and is lost on restart.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

import structlog

from models.schemas import NotificationKey

logger = structlog.get_logger()

DEFAULT_RETENTION_SECONDS = 30 * 60


class NotificationCache:
    """Concurrent TTL set with atomic check-and-set semantics."""

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._fired: dict[NotificationKey, float] = {}   # key → time fired
        self._in_flight: set[NotificationKey] = set()
        self._lock = asyncio.Lock()
        self._total_evicted = 0

    def _is_live(self, key: NotificationKey, now: float) -> bool:
        fired_at = self._fired.get(key)
        return fired_at is not None and now - fired_at < self.retention_seconds

    # ── Check-and-set ─────────────────────────────────────────

    async def should_fire(self, key: NotificationKey) -> bool:
        """Return True and record the key iff it has no unexpired record."""
        async with self._lock:
            now = self._clock()
            if key in self._in_flight or self._is_live(key, now):
                return False
            self._fired[key] = now
            return True

    async def reserve(self, key: NotificationKey) -> bool:
        """Claim a key for delivery. False if already fired or claimed."""
        async with self._lock:
            if key in self._in_flight or self._is_live(key, self._clock()):
                return False
            self._in_flight.add(key)
            return True

    async def confirm(self, key: NotificationKey) -> None:
        """Delivery succeeded: the reservation becomes a fired record."""
        async with self._lock:
            self._in_flight.discard(key)
            self._fired[key] = self._clock()

    async def release(self, key: NotificationKey) -> None:
        """Delivery failed: drop the reservation without recording it."""
        async with self._lock:
            self._in_flight.discard(key)

    # ── Eviction ──────────────────────────────────────────────

    async def evict_expired(self, now: Optional[float] = None) -> int:
        """Remove fired records older than the retention window."""
        async with self._lock:
            now = self._clock() if now is None else now
            expired = [
                k for k, fired_at in self._fired.items()
                if now - fired_at >= self.retention_seconds and k not in self._in_flight
            ]
            for k in expired:
                del self._fired[k]
            self._total_evicted += len(expired)
        if expired:
            logger.info("cache_evicted", count=len(expired), remaining=len(self._fired))
        return len(expired)

    # ── Introspection ─────────────────────────────────────────

    def has(self, key: NotificationKey) -> bool:
        return self._is_live(key, self._clock())

    def __len__(self) -> int:
        return len(self._fired)

    async def clear(self) -> None:
        async with self._lock:
            self._fired.clear()
            self._in_flight.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "records": len(self._fired),
            "in_flight": len(self._in_flight),
            "retention_seconds": self.retention_seconds,
            "total_evicted": self._total_evicted,
        }
