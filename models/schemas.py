"""
Core data models for the QueueWatch system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Transition(str, Enum):
    CURRENT = "current"
    NEAR = "near"
    PASSED = "passed"
    NONE = "none"

    @property
    def is_terminal(self) -> bool:
        """Terminal transitions end tracking once delivered."""
        return self in (Transition.CURRENT, Transition.PASSED)


class SubscriberOutcome(str, Enum):
    NOTIFIED = "notified"
    SUPPRESSED = "suppressed"
    SKIPPED = "skipped"
    FAILED = "failed"


class InboundEventType(str, Enum):
    MESSAGE = "message"
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"


# ──────────────────────────────────────────────────────────────
#  Subscription: a subscriber and the ticket they track
# ──────────────────────────────────────────────────────────────

class Subscription(BaseModel):
    """A messaging-platform user and the queue number they are tracking."""
    subscriber_id: str
    tracked_number: Optional[str] = None      # raw text as sent by the user
    active: bool = True
    display_name: str = ""
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_tracking(self) -> bool:
        return self.active and bool(self.tracked_number)


# ──────────────────────────────────────────────────────────────
#  Queue state
# ──────────────────────────────────────────────────────────────

class CounterSnapshot(BaseModel):
    """One observation of the latest called number at a counter."""
    counter_id: int
    latest_called: int
    observed_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Notifications
# ──────────────────────────────────────────────────────────────

class NotificationKey(NamedTuple):
    subscriber_id: str
    tracked_number: str
    transition: Transition


class Evaluation(BaseModel):
    """Result of evaluating one subscription during a scan."""
    subscriber_id: str
    tracked_number: str = ""
    outcome: SubscriberOutcome
    transition: Transition = Transition.NONE
    counter_id: Optional[int] = None
    latest_called: Optional[int] = None
    cleared: bool = False
    reason: str = ""


class ScanResult(BaseModel):
    """Summary of one dispatch scan."""
    scanned: int = 0
    notified: int = 0
    suppressed: int = 0
    skipped: int = 0
    failed: int = 0
    cleared: int = 0
    forced: bool = False
    started_at: datetime = Field(default_factory=_utcnow)
    duration_ms: float = 0.0

    def add(self, evaluation: Evaluation) -> None:
        if evaluation.outcome == SubscriberOutcome.NOTIFIED:
            self.notified += 1
        elif evaluation.outcome == SubscriberOutcome.SUPPRESSED:
            self.suppressed += 1
        elif evaluation.outcome == SubscriberOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        if evaluation.cleared:
            self.cleared += 1


# ──────────────────────────────────────────────────────────────
#  Inbound webhook events
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    """A normalized event from the messaging platform webhook."""
    type: InboundEventType
    subscriber_id: str
    reply_token: str = ""
    text: str = ""
    event_id: str = ""
    timestamp: Optional[datetime] = None
