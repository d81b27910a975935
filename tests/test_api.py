"""
Tests for the FastAPI surface: health, stats, forced scan, status lookup
and the LINE webhook, with the in-memory store and a mocked LINE API.
"""
import asyncio
import base64
import hashlib
import hmac
import json
import pytest
from typing import Any

import httpx
from fastapi.testclient import TestClient

from api.main import create_app
from channels.line_adapter import LineAdapter
from config.settings import ConfigurationError, Settings
from database.store_memory import InMemoryStore


class FakeLineApi:
    def __init__(self):
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.startswith("/v2/bot/profile/"):
            return httpx.Response(200, json={"displayName": "Alice"})
        return httpx.Response(200, json={})

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def line_api():
    return FakeLineApi()


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture
def client(settings, memory_store, line_api):
    line = LineAdapter("test-token", "test-secret", transport=httpx.MockTransport(line_api))
    app = create_app(settings, store=memory_store, line=line, run_background=False)
    with TestClient(app) as test_client:
        yield test_client


def post_webhook(client, payload: Any, secret: str = "test-secret"):
    body = json.dumps(payload).encode()
    signature = base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()
    return client.post(
        "/webhook/line", content=body,
        headers={"X-Line-Signature": signature, "Content-Type": "application/json"},
    )


def text_event(user_id: str, text: str, event_id: str) -> dict:
    return {
        "type": "message",
        "replyToken": f"rt-{event_id}",
        "source": {"type": "user", "userId": user_id},
        "message": {"type": "text", "text": text},
        "webhookEventId": event_id,
    }


class TestHealthAndStats:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["near_threshold"] == 5
        assert body["scan_interval_s"] == 30

    def test_stats(self, client):
        body = client.get("/api/v1/stats").json()
        assert body["total_scans"] == 0
        assert body["last_scan"] is None
        assert body["cache"]["retention_seconds"] == 1800
        assert body["channel"]["channel"] == "line"
        assert body["store"]["subscribers"] == 0


class TestForcedScan:
    def test_forced_scan_notifies(self, client, memory_store, line_api):
        asyncio.run(memory_store.set_tracking("U1", "1234"))
        asyncio.run(memory_store.record_snapshot(1, 1234))

        body = client.post("/api/v1/scan").json()
        assert body["forced"] is True
        assert body["notified"] == 1
        assert body["cleared"] == 1
        assert "/v2/bot/message/push" in line_api.paths()

        body = client.post("/api/v1/scan").json()
        assert body["scanned"] == 0
        assert line_api.paths().count("/v2/bot/message/push") == 1

        stats = client.get("/api/v1/stats").json()
        assert stats["total_scans"] == 2
        assert stats["cache"]["records"] == 1

    def test_admin_token_required_when_configured(self, settings, memory_store, line_api):
        settings.api.admin_token = "admin"
        line = LineAdapter("test-token", "test-secret", transport=httpx.MockTransport(line_api))
        app = create_app(settings, store=memory_store, line=line, run_background=False)
        with TestClient(app) as client:
            assert client.post("/api/v1/scan").status_code == 401
            assert client.post("/api/v1/scan", headers={"X-Admin-Token": "nope"}).status_code == 401
            assert client.post("/api/v1/scan", headers={"X-Admin-Token": "admin"}).status_code == 200


class TestSubscriptionStatus:
    def test_unknown_subscriber(self, client):
        assert client.get("/api/v1/subscriptions/U404/status").status_code == 404

    def test_near_status(self, client, memory_store):
        asyncio.run(memory_store.set_tracking("U1", "5010"))
        asyncio.run(memory_store.record_snapshot(5, 5008))

        body = client.get("/api/v1/subscriptions/U1/status").json()
        assert body["tracked_number"] == "5010"
        assert body["counter_id"] == 5
        assert body["latest_called"] == 5008
        assert body["remaining"] == 2
        assert body["transition"] == "near"

    def test_status_without_snapshot(self, client, memory_store):
        asyncio.run(memory_store.set_tracking("U1", "4001"))
        body = client.get("/api/v1/subscriptions/U1/status").json()
        assert body["counter_id"] == 4
        assert body["latest_called"] is None
        assert body["transition"] is None


class TestWebhook:
    def test_bad_signature_rejected(self, client, memory_store):
        response = post_webhook(client, {"events": [text_event("U1", "1234", "e1")]}, secret="wrong")
        assert response.status_code == 403

    def test_missing_signature_rejected(self, client):
        assert client.post("/webhook/line", content=b"{}").status_code == 403

    def test_invalid_json(self, client):
        body = b"not json"
        signature = base64.b64encode(hmac.new(b"test-secret", body, hashlib.sha256).digest()).decode()
        response = client.post("/webhook/line", content=body, headers={"X-Line-Signature": signature})
        assert response.status_code == 400

    def test_registration_via_webhook(self, client, memory_store, line_api):
        response = post_webhook(client, {"events": [text_event("U1", "1234", "e1")]})
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "events": 1}

        sub = asyncio.run(memory_store.get_subscription("U1"))
        assert sub.tracked_number == "1234"
        assert "/v2/bot/message/reply" in line_api.paths()

    def test_redelivered_event_ignored(self, client, line_api):
        post_webhook(client, {"events": [text_event("U1", "1234", "e1")]})
        response = post_webhook(client, {"events": [text_event("U1", "1234", "e1")]})
        assert response.json()["events"] == 0
        assert line_api.paths().count("/v2/bot/message/reply") == 1

    def test_follow_via_webhook(self, client, memory_store):
        post_webhook(client, {"events": [{
            "type": "follow", "replyToken": "rt", "source": {"userId": "U9"}, "webhookEventId": "f1",
        }]})
        sub = asyncio.run(memory_store.get_subscription("U9"))
        assert sub.display_name == "Alice"

    def test_verification_ping(self, client):
        response = post_webhook(client, {"destination": "Uabc", "events": []})
        assert response.json() == {"status": "ok", "events": 0}

    @pytest.mark.parametrize("payload", [
        [text_event("U1", "1234", "e1")],
        "events",
        42,
        None,
    ])
    def test_signed_non_object_body_rejected(self, client, memory_store, payload):
        response = post_webhook(client, payload)
        assert response.status_code == 400
        assert asyncio.run(memory_store.get_subscription("U1")) is None

    @pytest.mark.parametrize("events", ["text", {"type": "follow"}, [1, None, "x"]])
    def test_malformed_events_field_is_ignored(self, client, events):
        response = post_webhook(client, {"events": events})
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "events": 0}


class TestStartup:
    def test_missing_credentials_abort_startup(self, memory_store):
        app = create_app(Settings(), store=memory_store, run_background=False)
        with pytest.raises(ConfigurationError):
            with TestClient(app):
                pass

    def test_background_loops_started_and_stopped(self, settings, memory_store, line_api):
        line = LineAdapter("test-token", "test-secret", transport=httpx.MockTransport(line_api))
        app = create_app(settings, store=memory_store, line=line)
        with TestClient(app) as client:
            assert client.get("/health").json()["dispatcher_running"] is True
        assert app.state.service.dispatcher.is_running is False
