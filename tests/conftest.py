"""Shared test fixtures for QueueWatch."""
import pytest

from channels.base import DeliveryChannel
from config.settings import Settings, LineConfig, DatabaseConfig, DispatchConfig
from core.dispatcher import NotificationDispatcher
from core.notification_cache import NotificationCache
from database.store_memory import InMemoryStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel(DeliveryChannel):
    """Delivery channel that records pushes and can be told to fail."""

    name = "recording"

    def __init__(self):
        super().__init__()
        self.pushes: list[tuple[str, str]] = []
        self.fail_for: set[str] = set()
        self.fail_all = False

    async def _do_push(self, subscriber_id: str, text: str) -> None:
        if self.fail_all or subscriber_id in self.fail_for:
            raise ConnectionError("push endpoint unavailable")
        self.pushes.append((subscriber_id, text))

    def pushes_to(self, subscriber_id: str) -> list[str]:
        return [t for s, t in self.pushes if s == subscriber_id]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> NotificationCache:
    return NotificationCache(retention_seconds=1800, clock=clock)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def dispatcher(store, channel, cache) -> NotificationDispatcher:
    return NotificationDispatcher(
        repository=store,
        oracle=store,
        channel=channel,
        cache=cache,
        near_threshold=5,
        scan_interval_s=30,
        max_concurrency=4,
        subscriber_timeout_s=2,
        locale="en",
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        line=LineConfig(channel_access_token="test-token", channel_secret="test-secret"),
        database=DatabaseConfig(store_backend="memory"),
        dispatch=DispatchConfig(locale="en"),
    )
