"""
Command Handler — turns LINE webhook events into subscription changes.

Text commands:
    4–5 digit number        start tracking that ticket
    check / status / เช็ค   show the tracked ticket's status
    stop / cancel / หยุด     stop tracking
    anything else           help text

Platform events:
    follow                  create the subscriber (with LINE display name)
    unfollow                deactivate the subscriber
"""
from __future__ import annotations

import re
import structlog
from typing import Optional

from channels.line_adapter import LineAdapter
from core.counter import resolve_counter
from core.messages import describe_status, text
from database.store_base import BaseStore, TrackingConflictError
from models.schemas import InboundEvent, InboundEventType

logger = structlog.get_logger()

QUEUE_NUMBER_PATTERN = re.compile(r"^(\d{4,5})$")
STATUS_COMMANDS = {"เช็ค", "ตรวจสอบ", "สถานะ", "check", "status"}
STOP_COMMANDS = {"หยุด", "ยกเลิก", "stop", "cancel"}


class CommandHandler:
    """Applies inbound events to the store and replies through LINE."""

    def __init__(self, store: BaseStore, line: LineAdapter,
                 near_threshold: int = 5, locale: str = "th"):
        self.store = store
        self.line = line
        self.near_threshold = near_threshold
        self.locale = locale

    async def handle_events(self, events: list[InboundEvent]) -> int:
        """Process a webhook batch. One failing event does not stop the rest."""
        logger.info("processing_events", count=len(events))
        handled = 0
        for event in events:
            try:
                await self.handle_event(event)
                handled += 1
            except Exception as e:
                logger.error("event_handling_failed", event_type=event.type.value,
                             subscriber=event.subscriber_id[:10], error=str(e))
        return handled

    async def handle_event(self, event: InboundEvent) -> None:
        if event.type == InboundEventType.MESSAGE:
            await self.handle_text(event)
        elif event.type == InboundEventType.FOLLOW:
            await self.handle_follow(event)
        elif event.type == InboundEventType.UNFOLLOW:
            await self.handle_unfollow(event)

    # ── Text commands ─────────────────────────────────────────

    async def handle_text(self, event: InboundEvent) -> None:
        message = event.text.strip()
        logger.info("text_received", subscriber=event.subscriber_id[:10], text=message[:50])

        match = QUEUE_NUMBER_PATTERN.match(message)
        command = message.lower()
        if match:
            reply = await self.register(event.subscriber_id, match.group(1))
        elif command in STATUS_COMMANDS:
            reply = await self.status_text(event.subscriber_id)
        elif command in STOP_COMMANDS:
            await self.store.clear_tracking(event.subscriber_id)
            logger.info("tracking_stopped", subscriber=event.subscriber_id[:10])
            reply = text(self.locale, "stopped")
        else:
            reply = text(self.locale, "help")

        await self.line.reply(event.reply_token, reply)

    async def register(self, subscriber_id: str, number: str) -> str:
        """Track a number unless someone else already does. Returns the reply text."""
        try:
            number = await self.store.register_tracking(subscriber_id, number)
        except TrackingConflictError as e:
            logger.info("tracking_conflict", queue=number,
                        subscriber=subscriber_id[:10],
                        existing=e.existing_subscriber_id[:10])
            name = e.existing_display_name or text(self.locale, "unknown_name")
            return text(self.locale, "conflict", number=e.number, name=name)
        except Exception as e:
            logger.error("tracking_register_failed", queue=number,
                         subscriber=subscriber_id[:10], error=str(e))
            return text(self.locale, "register_error")

        logger.info("tracking_registered", queue=number, subscriber=subscriber_id[:10])
        return text(self.locale, "registered", number=number, threshold=self.near_threshold)

    async def status_text(self, subscriber_id: str) -> str:
        sub = await self.store.get_subscription(subscriber_id)
        if not sub or not sub.tracked_number:
            return text(self.locale, "not_tracking")
        status = await self.describe(sub.tracked_number)
        return text(self.locale, "status_header", number=sub.tracked_number, status=status)

    async def describe(self, number: str) -> str:
        counter_id = resolve_counter(number)
        latest: Optional[int] = None
        if counter_id is not None:
            latest = await self.store.latest_called(counter_id)
        return describe_status(self.locale, number, latest, self.near_threshold)

    # ── Follow / unfollow ─────────────────────────────────────

    async def handle_follow(self, event: InboundEvent) -> None:
        logger.info("subscriber_followed", subscriber=event.subscriber_id[:10])
        profile = await self.line.get_profile(event.subscriber_id)
        display_name = (profile or {}).get("displayName", "")
        await self.store.upsert_subscriber(
            event.subscriber_id, display_name or text(self.locale, "unknown_name"),
        )
        await self.line.reply(
            event.reply_token,
            text(self.locale, "welcome", name=display_name or text(self.locale, "default_name")),
        )

    async def handle_unfollow(self, event: InboundEvent) -> None:
        logger.info("subscriber_unfollowed", subscriber=event.subscriber_id[:10])
        await self.store.deactivate(event.subscriber_id)
