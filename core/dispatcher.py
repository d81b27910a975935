"""
Notification Dispatcher — periodic scan of tracked tickets.

Runs as a background task inside the FastAPI lifespan.

Flow per scan:
    Repository → all active subscriptions with a tracked number
    → fan out (bounded) per subscriber:
        resolve counter → oracle latest called → classify
        → cache reserve → push → cache confirm / release
        → clear tracking after a delivered current/passed notification
    → join, summarize as ScanResult

Scans never overlap: a timer tick that lands while a scan is running is
skipped, a forced scan waits for the running one to finish.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Optional

from channels.base import DeliveryChannel
from core.classifier import classify, remaining
from core.counter import parse_queue_number, resolve_counter
from core.messages import format_notification
from core.notification_cache import NotificationCache
from database.store_base import QueueStateOracle, SubscriptionRepository
from models.schemas import (
    Evaluation, NotificationKey, ScanResult, Subscription,
    SubscriberOutcome, Transition,
)

logger = structlog.get_logger()


class NotificationDispatcher:
    """
    Scans every tracked subscription and sends near / current / passed
    notifications at most once per transition within the cache window.

    Configure in settings:
        dispatch:
          scan_interval_seconds: 30
          near_threshold: 5
          max_concurrency: 10
          subscriber_timeout_seconds: 15
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        oracle: QueueStateOracle,
        channel: DeliveryChannel,
        cache: NotificationCache,
        near_threshold: int = 5,
        scan_interval_s: float = 30.0,
        max_concurrency: int = 10,
        subscriber_timeout_s: float = 15.0,
        locale: str = "th",
    ):
        self.repository = repository
        self.oracle = oracle
        self.channel = channel
        self.cache = cache
        self.near_threshold = near_threshold
        self.scan_interval_s = scan_interval_s
        self.subscriber_timeout_s = subscriber_timeout_s
        self.locale = locale
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._scan_lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_scan: Optional[ScanResult] = None
        self.total_scans = 0
        self.skipped_ticks = 0

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start the scan loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._scan_loop(), name="notification_dispatcher")
        logger.info("dispatcher_started", interval_s=self.scan_interval_s,
                    near_threshold=self.near_threshold)

    async def stop(self) -> None:
        """Gracefully stop the scan loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("dispatcher_stopped")

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    @property
    def scan_in_progress(self) -> bool:
        return self._scan_lock.locked()

    async def _scan_loop(self) -> None:
        """Fixed-period loop. Ticks missed by a long scan are dropped, not queued."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while self._running:
            try:
                await self.run_scan()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scan_loop_error", error=str(e))

            next_tick += self.scan_interval_s
            now = loop.time()
            if now > next_tick:
                missed = int((now - next_tick) // self.scan_interval_s) + 1
                self.skipped_ticks += missed
                logger.warning("scan_overran_interval", missed_ticks=missed)
                next_tick += missed * self.scan_interval_s
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    # ── Scan ──────────────────────────────────────────────────

    async def run_scan(self, forced: bool = False) -> Optional[ScanResult]:
        """
        Run one scan.

        A timer scan returns None without doing anything if another scan is
        in progress. A forced scan waits for it and then runs.
        """
        if not forced and self._scan_lock.locked():
            self.skipped_ticks += 1
            logger.info("scan_skipped_overlap")
            return None
        async with self._scan_lock:
            return await self._scan(forced)

    async def _scan(self, forced: bool) -> ScanResult:
        result = ScanResult(forced=forced)
        start = time.monotonic()

        try:
            subscriptions = await self.repository.list_active_tracked()
        except Exception as e:
            logger.error("subscription_fetch_failed", error=str(e))
            result.failed = 1
            return self._finish(result, start)

        result.scanned = len(subscriptions)
        if subscriptions:
            logger.info("scan_started", subscribers=len(subscriptions), forced=forced)
            evaluations = await asyncio.gather(
                *(self._evaluate_isolated(sub) for sub in subscriptions)
            )
            for evaluation in evaluations:
                result.add(evaluation)

        return self._finish(result, start)

    def _finish(self, result: ScanResult, start: float) -> ScanResult:
        result.duration_ms = round((time.monotonic() - start) * 1000, 1)
        self.last_scan = result
        self.total_scans += 1
        if result.notified or result.failed:
            logger.info("scan_complete", **result.model_dump(exclude={"started_at"}))
        return result

    async def _evaluate_isolated(self, sub: Subscription) -> Evaluation:
        """Bounded, time-limited evaluation. Never raises."""
        async with self._semaphore:
            try:
                return await asyncio.wait_for(self.evaluate(sub), timeout=self.subscriber_timeout_s)
            except asyncio.TimeoutError:
                logger.warning("subscriber_evaluation_timeout",
                               subscriber=sub.subscriber_id[:10],
                               timeout_s=self.subscriber_timeout_s)
                reason = "timeout"
            except Exception as e:
                logger.error("subscriber_evaluation_failed",
                             subscriber=sub.subscriber_id[:10], error=str(e))
                reason = str(e)
        return Evaluation(
            subscriber_id=sub.subscriber_id,
            tracked_number=sub.tracked_number or "",
            outcome=SubscriberOutcome.FAILED,
            reason=reason,
        )

    # ── Per-subscriber evaluation ─────────────────────────────

    async def evaluate(self, sub: Subscription) -> Evaluation:
        """Classify one subscription and deliver its notification if due."""
        number = (sub.tracked_number or "").strip()
        evaluation = Evaluation(
            subscriber_id=sub.subscriber_id,
            tracked_number=number,
            outcome=SubscriberOutcome.SKIPPED,
        )

        counter_id = resolve_counter(number)
        if counter_id is None:
            evaluation.reason = "invalid_number"
            return evaluation
        evaluation.counter_id = counter_id

        latest = await self.oracle.latest_called(counter_id)
        if latest is None:
            evaluation.reason = "no_snapshot"
            return evaluation
        evaluation.latest_called = latest

        tracked = parse_queue_number(number)
        transition = classify(tracked, latest, self.near_threshold)
        evaluation.transition = transition
        logger.debug("subscriber_classified", subscriber=sub.subscriber_id[:10],
                     queue=tracked, latest=latest,
                     remaining=remaining(tracked, latest), transition=transition.value)
        if transition == Transition.NONE:
            evaluation.reason = "not_due"
            return evaluation

        key = NotificationKey(sub.subscriber_id, number, transition)
        if not await self.cache.reserve(key):
            evaluation.outcome = SubscriberOutcome.SUPPRESSED
            # Delivered earlier but the clear did not go through: try again.
            if transition.is_terminal and self.cache.has(key):
                evaluation.cleared = await self._clear(sub.subscriber_id)
            return evaluation

        delivered = False
        error = ""
        try:
            text = format_notification(self.locale, transition, number, counter_id, latest)
            delivery = await self.channel.push(sub.subscriber_id, text)
            delivered = delivery.ok
            error = delivery.error
        finally:
            if delivered:
                await self.cache.confirm(key)
            else:
                await self.cache.release(key)

        if not delivered:
            logger.warning("notification_delivery_failed",
                           subscriber=sub.subscriber_id[:10],
                           queue=number, transition=transition.value, error=error)
            evaluation.outcome = SubscriberOutcome.FAILED
            evaluation.reason = error or "delivery_failed"
            return evaluation

        evaluation.outcome = SubscriberOutcome.NOTIFIED
        logger.info("notification_sent", subscriber=sub.subscriber_id[:10],
                    queue=number, counter=counter_id, latest=latest,
                    transition=transition.value)

        if transition.is_terminal:
            evaluation.cleared = await self._clear(sub.subscriber_id)
        return evaluation

    async def _clear(self, subscriber_id: str) -> bool:
        try:
            await self.repository.clear_tracking(subscriber_id)
        except Exception as e:
            logger.error("subscription_clear_failed", subscriber=subscriber_id[:10], error=str(e))
            return False
        logger.info("tracking_cleared", subscriber=subscriber_id[:10])
        return True


# ──────────────────────────────────────────────────────────────
#  Cache Evictor
# ──────────────────────────────────────────────────────────────

class CacheEvictor:
    """
    Background task that periodically purges expired notification records,
    on its own schedule independent of the dispatcher.
    """

    def __init__(self, cache: NotificationCache, interval_seconds: float = 60.0):
        self.cache = cache
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run(), name="notification_cache_evictor")
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        logger.info("cache_evictor_started", interval=self.interval)
        while True:
            try:
                await self.cache.evict_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("cache_evictor_error", error=str(e))
            await asyncio.sleep(self.interval)
