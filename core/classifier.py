"""Transition classification for a tracked ticket against the latest called number."""
from __future__ import annotations

from models.schemas import Transition


def remaining(tracked: int, latest_called: int) -> int:
    """Tickets still ahead of the tracked one (negative once passed)."""
    return tracked - latest_called


def classify(tracked: int, latest_called: int, near_threshold: int) -> Transition:
    """
    Decide which notification, if any, applies.

    Equality wins over everything else. Any ticket below the latest called
    number is passed, however far back it is.
    """
    if tracked == latest_called:
        return Transition.CURRENT
    ahead = remaining(tracked, latest_called)
    if 0 < ahead <= near_threshold:
        return Transition.NEAR
    if ahead < 0:
        return Transition.PASSED
    return Transition.NONE
