"""
LINE Channel Adapter — LINE Messaging API integration.

Provides:
- Outbound push (scheduled notifications) and reply (command responses)
- Profile lookup for display names
- Webhook signature verification (X-Line-Signature, HMAC-SHA256 base64)
- Inbound parsing: text messages, follow, unfollow
- Redelivery filtering by webhookEventId

API Docs: https://developers.line.biz/en/reference/messaging-api/
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from channels.base import ChannelError, DeliveryChannel, RedeliveryFilter
from models.schemas import InboundEvent, InboundEventType

logger = structlog.get_logger()

MAX_TEXT_LENGTH = 5000


class LineAdapter(DeliveryChannel):
    """
    LINE Messaging API client.

    Push is sent once per call and never retried here: LINE does not
    deduplicate pushes, so a retry after an ambiguous failure could
    notify the subscriber twice. Profile lookups are idempotent and retried.
    """

    name = "line"

    def __init__(
        self,
        channel_access_token: str,
        channel_secret: str,
        api_base_url: str = "https://api.line.me",
        timeout: float = 10.0,
        rate_per_second: float = 0.0,
        burst: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(rate_per_second=rate_per_second, burst=burst)
        self._access_token = channel_access_token
        self._channel_secret = channel_secret
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._redeliveries = RedeliveryFilter()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.api_base_url,
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                transport=self._transport,
            )
        return self._client

    async def _post(self, path: str, payload: dict[str, Any]) -> None:
        client = await self._get_client()
        resp = await client.post(path, json=payload)
        if resp.status_code >= 400:
            logger.error("line_api_error", status=resp.status_code,
                         path=path, body=resp.text[:500])
            raise ChannelError(
                f"LINE API {path} returned {resp.status_code}",
                channel=self.name,
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            )

    @staticmethod
    def _text_messages(text: str) -> list[dict[str, str]]:
        return [{"type": "text", "text": text[:MAX_TEXT_LENGTH]}]

    # ── Send ──────────────────────────────────────────────────

    async def _do_push(self, subscriber_id: str, text: str) -> None:
        await self._post("/v2/bot/message/push", {
            "to": subscriber_id,
            "messages": self._text_messages(text),
        })
        logger.info("line_push_sent", to=subscriber_id[:10])

    async def reply(self, reply_token: str, text: str) -> bool:
        """Answer a webhook event. Failures are logged, not raised."""
        if not reply_token:
            return False
        try:
            await self._post("/v2/bot/message/reply", {
                "replyToken": reply_token,
                "messages": self._text_messages(text),
            })
            return True
        except (ChannelError, httpx.HTTPError) as e:
            logger.error("line_reply_failed", error=str(e))
            return False

    @retry(stop=stop_after_attempt(2), wait=wait_exponential(min=0.5, max=2), reraise=True)
    async def _fetch_profile(self, user_id: str) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.get(f"/v2/bot/profile/{user_id}")
        resp.raise_for_status()
        return resp.json()

    async def get_profile(self, user_id: str) -> Optional[dict[str, Any]]:
        """Return the LINE profile ({displayName, pictureUrl, ...}) or None."""
        try:
            return await self._fetch_profile(user_id)
        except httpx.HTTPError as e:
            logger.error("line_profile_failed", user=user_id[:10], error=str(e))
            return None

    # ── Webhook verification ──────────────────────────────────

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        """Check X-Line-Signature against the channel secret."""
        if not signature or not raw_body:
            return False
        digest = hmac.new(
            self._channel_secret.encode("utf-8"), raw_body, hashlib.sha256,
        ).digest()
        expected = base64.b64encode(digest).decode("utf-8")
        return hmac.compare_digest(expected, signature)

    # ── Inbound parsing ───────────────────────────────────────

    def parse_events(self, payload: dict[str, Any]) -> list[InboundEvent]:
        """Normalize a webhook body into events we handle, dropping redeliveries."""
        raw_events = payload.get("events") or []
        if not isinstance(raw_events, list):
            logger.warning("line_events_not_a_list", events_type=type(raw_events).__name__)
            return []
        events = []
        for raw in raw_events:
            if not isinstance(raw, dict):
                continue
            event = self._parse_event(raw)
            if event is None:
                continue
            if event.event_id and self._redeliveries.seen(event.event_id):
                logger.info("line_event_redelivered", event_id=event.event_id)
                continue
            events.append(event)
        return events

    def _parse_event(self, raw: dict[str, Any]) -> Optional[InboundEvent]:
        user_id = (raw.get("source") or {}).get("userId", "")
        if not user_id:
            return None

        event_type = raw.get("type", "")
        text = ""
        if event_type == "message":
            message = raw.get("message") or {}
            if message.get("type") != "text":
                return None
            text = message.get("text", "").strip()
        elif event_type not in ("follow", "unfollow"):
            return None

        timestamp = None
        if isinstance(raw.get("timestamp"), (int, float)):
            timestamp = datetime.fromtimestamp(raw["timestamp"] / 1000, tz=timezone.utc)

        return InboundEvent(
            type=InboundEventType(event_type),
            subscriber_id=user_id,
            reply_token=raw.get("replyToken", ""),
            text=text,
            event_id=raw.get("webhookEventId", ""),
            timestamp=timestamp,
        )

    # ── Lifecycle ─────────────────────────────────────────────

    async def shutdown(self) -> None:
        if self._client:
            await self._client.aclose()
