"""
Delivery Channels — base infrastructure for outbound messaging.

Provides:
- ChannelError hierarchy for push failures
- PushRateLimiter: token bucket sized to the provider's push quota
- CircuitBreaker: stops hammering a provider that keeps failing
- PushMetrics: per-channel counters and recent latencies
- DeliveryResult: outcome of a single push
- RedeliveryFilter: remembers inbound event ids for a while
- DeliveryChannel: abstract base wrapping every push with the above

A push is attempted exactly once per call. Callers that need another try
come back on their next cycle.
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from collections import Counter, OrderedDict, deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """A provider call failed. `retryable` hints whether a later attempt may succeed."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        super().__init__(message)
        self.channel = channel
        self.retryable = retryable


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"{channel}: push quota exhausted", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"{channel}: circuit open, push not attempted", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  RATE LIMITER
# ══════════════════════════════════════════════════════════════

class PushRateLimiter:
    """
    Token bucket. `rate` tokens per second accrue up to `burst`; each push
    spends one. acquire() sleeps just long enough for the next token, or
    gives up once `timeout` would be exceeded.
    """

    def __init__(self, rate: float, burst: int = 10, clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.burst = max(1, burst)
        self._clock = clock
        self._tokens = float(self.burst)
        self._stamp = clock()
        self._lock = asyncio.Lock()

    def _top_up(self) -> None:
        now = self._clock()
        self._tokens = min(self.burst, self._tokens + (now - self._stamp) * self.rate)
        self._stamp = now

    async def acquire(self, timeout: float = 5.0) -> bool:
        async with self._lock:
            self._top_up()
            shortfall = 1.0 - self._tokens
            wait = shortfall / self.rate if shortfall > 0 else 0.0
            if wait > timeout:
                return False
            if wait:
                await asyncio.sleep(wait)
                self._top_up()
            self._tokens -= 1.0
            return True


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

CLOSED, OPEN, HALF_OPEN = "closed", "open", "half_open"


class CircuitBreaker:
    """
    Opens after `failure_threshold` consecutive failures. Once
    `recovery_timeout` has passed one trial push is let through: success
    closes the circuit, failure reopens it.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._consecutive = 0
        self._opened_at: Optional[float] = None
        self._trips = 0

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return CLOSED
        if self._clock() - self._opened_at >= self.recovery_timeout:
            return HALF_OPEN
        return OPEN

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    def record_success(self) -> None:
        self._consecutive = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._consecutive += 1
        if self.state == HALF_OPEN or self._consecutive >= self.failure_threshold:
            self._opened_at = self._clock()
            self._trips += 1
            logger.warning("circuit_opened", consecutive_failures=self._consecutive)

    def reset(self) -> None:
        self.record_success()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "consecutive_failures": self._consecutive,
            "trips": self._trips,
        }


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

class PushMetrics:
    """Outcome counters plus a window of recent latencies and errors."""

    def __init__(self, channel: str, window: int = 500):
        self.channel = channel
        self.outcomes: Counter[str] = Counter()
        self._latencies: deque[float] = deque(maxlen=window)
        self._errors: deque[str] = deque(maxlen=20)

    def record(self, result: "DeliveryResult") -> None:
        self.outcomes[result.status] += 1
        if result.ok:
            self._latencies.append(result.latency_ms)
        elif result.error:
            self._errors.append(result.error)

    @property
    def sent(self) -> int:
        return self.outcomes["sent"]

    @property
    def failed(self) -> int:
        return sum(n for status, n in self.outcomes.items() if status != "sent")

    def to_dict(self) -> dict[str, Any]:
        latencies = sorted(self._latencies)
        return {
            "channel": self.channel,
            "sent": self.sent,
            "failed": self.failed,
            "by_status": dict(self.outcomes),
            "p50_latency_ms": latencies[len(latencies) // 2] if latencies else 0.0,
            "recent_errors": list(self._errors)[-5:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY RESULT
# ══════════════════════════════════════════════════════════════

@dataclass
class DeliveryResult:
    ok: bool
    status: str = "sent"            # sent | failed | rate_limited | circuit_open
    error: str = ""
    latency_ms: float = 0.0


# ══════════════════════════════════════════════════════════════
#  REDELIVERY FILTER
# ══════════════════════════════════════════════════════════════

class RedeliveryFilter:
    """
    Remembers event ids for `ttl_seconds`, keeping at most `max_size`
    (oldest dropped first). seen() reports whether an id was already
    recorded and records it if not.
    """

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._ids: OrderedDict[str, float] = OrderedDict()

    def seen(self, event_id: str) -> bool:
        now = self._clock()
        while self._ids:
            stamp = next(iter(self._ids.values()))
            if now - stamp < self.ttl and len(self._ids) < self.max_size:
                break
            self._ids.popitem(last=False)
        if event_id in self._ids:
            return True
        self._ids[event_id] = now
        return False

    def __len__(self) -> int:
        return len(self._ids)


# ══════════════════════════════════════════════════════════════
#  DELIVERY CHANNEL — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryChannel(abc.ABC):
    """
    Base class for outbound delivery channels.

    Subclasses implement _do_push and raise on any failure. push() applies
    the rate limit and circuit breaker, records metrics and always returns
    a DeliveryResult.
    """

    name: str = "channel"

    def __init__(self, rate_per_second: float = 0.0, burst: int = 10):
        self._breaker = CircuitBreaker()
        self._limiter = PushRateLimiter(rate_per_second, burst) if rate_per_second > 0 else None
        self._metrics = PushMetrics(self.name)

    @abc.abstractmethod
    async def _do_push(self, subscriber_id: str, text: str) -> None:
        ...

    async def push(self, subscriber_id: str, text: str) -> DeliveryResult:
        result = await self._attempt(subscriber_id, text)
        self._metrics.record(result)
        return result

    async def _attempt(self, subscriber_id: str, text: str) -> DeliveryResult:
        if self._limiter and not await self._limiter.acquire(timeout=10.0):
            return DeliveryResult(ok=False, status="rate_limited", error=str(RateLimitedError(self.name)))
        if self._breaker.is_open:
            return DeliveryResult(ok=False, status="circuit_open", error=str(CircuitOpenError(self.name)))

        start = time.monotonic()
        try:
            await self._do_push(subscriber_id, text)
        except Exception as e:
            self._breaker.record_failure()
            logger.error("push_failed", channel=self.name,
                         subscriber=subscriber_id[:10], error=str(e))
            return DeliveryResult(ok=False, status="failed", error=str(e))

        self._breaker.record_success()
        return DeliveryResult(ok=True, latency_ms=round((time.monotonic() - start) * 1000, 1))

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.name,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
