"""
Tests for the LINE channel adapter.

Covers:
  - Webhook signature verification
  - Event parsing and redelivery filtering
  - Push / reply / profile against a mocked LINE API
  - Base channel resilience: circuit breaker, rate limiter, metrics
"""
import base64
import hashlib
import hmac
import json
import pytest
from typing import Optional

import httpx

from channels.base import CircuitBreaker, PushRateLimiter, RedeliveryFilter
from channels.line_adapter import LineAdapter
from models.schemas import InboundEventType

SECRET = "test-secret"


def sign(body: bytes, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class FakeLineApi:
    def __init__(self, status: int = 200, body=None):
        self.status = status
        self.body = body if body is not None else {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)


def adapter(api: Optional[FakeLineApi] = None) -> LineAdapter:
    return LineAdapter(
        channel_access_token="test-token",
        channel_secret=SECRET,
        transport=httpx.MockTransport(api or FakeLineApi()),
    )


def text_event(user_id="U1", text="1234", event_id="ev-1", **extra):
    event = {
        "type": "message",
        "replyToken": "rt-1",
        "source": {"type": "user", "userId": user_id},
        "message": {"type": "text", "id": "m1", "text": text},
        "webhookEventId": event_id,
        "timestamp": 1_700_000_000_000,
    }
    event.update(extra)
    return event


class TestSignature:
    def test_valid_signature(self):
        body = json.dumps({"events": []}).encode()
        assert adapter().verify_signature(body, sign(body))

    def test_tampered_body(self):
        body = b'{"events": []}'
        assert not adapter().verify_signature(body + b" ", sign(body))

    def test_wrong_secret(self):
        body = b'{"events": []}'
        assert not adapter().verify_signature(body, sign(body, "other"))

    def test_missing_signature_or_body(self):
        assert not adapter().verify_signature(b"{}", "")
        assert not adapter().verify_signature(b"", sign(b""))


class TestParseEvents:
    def test_text_message(self):
        [event] = adapter().parse_events({"events": [text_event(text="  5010 ")]})
        assert event.type == InboundEventType.MESSAGE
        assert event.subscriber_id == "U1"
        assert event.reply_token == "rt-1"
        assert event.text == "5010"
        assert event.timestamp.year == 2023

    def test_follow_and_unfollow(self):
        events = adapter().parse_events({"events": [
            {"type": "follow", "replyToken": "rt", "source": {"userId": "U1"}, "webhookEventId": "a"},
            {"type": "unfollow", "source": {"userId": "U2"}, "webhookEventId": "b"},
        ]})
        assert [e.type for e in events] == [InboundEventType.FOLLOW, InboundEventType.UNFOLLOW]
        assert events[1].reply_token == ""

    def test_ignores_unhandled_events(self):
        events = adapter().parse_events({"events": [
            text_event(message={"type": "sticker", "id": "s1"}),
            {"type": "postback", "source": {"userId": "U1"}},
            {"type": "message", "source": {}, "message": {"type": "text", "text": "1234"}},
        ]})
        assert events == []

    def test_empty_payload(self):
        assert adapter().parse_events({}) == []
        assert adapter().parse_events({"events": None}) == []

    def test_redelivery_dropped(self):
        line = adapter()
        assert len(line.parse_events({"events": [text_event(event_id="ev-9")]})) == 1
        redelivered = text_event(event_id="ev-9", deliveryContext={"isRedelivery": True})
        assert line.parse_events({"events": [redelivered]}) == []

    def test_events_without_id_not_deduplicated(self):
        line = adapter()
        payload = {"events": [text_event(event_id="")]}
        assert len(line.parse_events(payload)) == 1
        assert len(line.parse_events(payload)) == 1


class TestOutbound:
    @pytest.mark.asyncio
    async def test_push_success(self):
        api = FakeLineApi()
        line = adapter(api)
        result = await line.push("U1", "hello")
        await line.shutdown()

        assert result.ok is True
        assert result.status == "sent"
        request = api.requests[0]
        assert request.url.path == "/v2/bot/message/push"
        assert request.headers["authorization"] == "Bearer test-token"
        assert json.loads(request.content) == {
            "to": "U1", "messages": [{"type": "text", "text": "hello"}],
        }

    @pytest.mark.asyncio
    async def test_push_failure_not_retried(self):
        api = FakeLineApi(status=500, body={"message": "error"})
        line = adapter(api)
        result = await line.push("U1", "hello")
        assert result.ok is False
        assert result.status == "failed"
        assert "500" in result.error
        assert len(api.requests) == 1

    @pytest.mark.asyncio
    async def test_long_text_truncated(self):
        api = FakeLineApi()
        line = adapter(api)
        await line.push("U1", "x" * 6000)
        sent = json.loads(api.requests[0].content)["messages"][0]["text"]
        assert len(sent) == 5000

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self):
        api = FakeLineApi(status=503)
        line = adapter(api)
        for _ in range(5):
            await line.push("U1", "hello")
        result = await line.push("U1", "hello")
        assert result.status == "circuit_open"
        assert len(api.requests) == 5
        health = await line.health_check()
        assert health["circuit_breaker"]["state"] == "open"
        assert health["metrics"]["failed"] == 6

    @pytest.mark.asyncio
    async def test_reply(self):
        api = FakeLineApi()
        line = adapter(api)
        assert await line.reply("rt-1", "ok") is True
        assert api.requests[0].url.path == "/v2/bot/message/reply"
        assert json.loads(api.requests[0].content)["replyToken"] == "rt-1"

    @pytest.mark.asyncio
    async def test_reply_failure_and_missing_token(self):
        line = adapter(FakeLineApi(status=400))
        assert await line.reply("rt-1", "ok") is False
        assert await line.reply("", "ok") is False

    @pytest.mark.asyncio
    async def test_get_profile(self):
        api = FakeLineApi(body={"displayName": "Alice", "userId": "U1"})
        line = adapter(api)
        profile = await line.get_profile("U1")
        assert profile["displayName"] == "Alice"
        assert api.requests[0].url.path == "/v2/bot/profile/U1"

    @pytest.mark.asyncio
    async def test_get_profile_failure_returns_none(self):
        api = FakeLineApi(status=404)
        line = adapter(api)
        assert await line.get_profile("U1") is None
        assert len(api.requests) == 2


class TestResilience:
    def test_circuit_breaker_half_open_and_close(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=0.0)
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == "half_open"
        breaker.record_success()
        assert breaker.state == "closed"

    def test_circuit_breaker_opens(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60.0)
        breaker.record_failure()
        assert not breaker.is_open
        breaker.record_failure()
        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_rate_limiter_burst(self):
        limiter = PushRateLimiter(rate=1.0, burst=2)
        assert await limiter.acquire(timeout=0.0)
        assert await limiter.acquire(timeout=0.0)
        assert not await limiter.acquire(timeout=0.0)

    def test_redelivery_filter_bounded(self):
        ids = RedeliveryFilter(ttl_seconds=300, max_size=3)
        for key in ("a", "b", "c", "d"):
            assert not ids.seen(key)
        assert ids.seen("d")
        assert not ids.seen("a")
