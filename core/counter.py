"""
Counter resolution — maps a queue number to the counter that serves it.

Queue numbers are partitioned by thousands: 1001–1999 belong to counter 1,
2000–2999 to counter 2, and so on up to 10999 (counter 10).
"""
from __future__ import annotations

from typing import Any, Optional

MIN_QUEUE_NUMBER = 1001
MAX_QUEUE_NUMBER = 10999
NUMBERS_PER_COUNTER = 1000


def parse_queue_number(value: Any) -> Optional[int]:
    """Parse a tracked number from user text or a stored value. None if not an integer."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text or not (text.isdigit() or (text[0] in "+-" and text[1:].isdigit())):
        return None
    return int(text)


def normalize_queue_number(value: Any) -> str:
    """Canonical text for a tracked number: "01234" and " 1234" both become "1234".

    Text that is not an integer is returned stripped and otherwise unchanged.
    """
    number = parse_queue_number(value)
    if number is None:
        return str(value).strip()
    return str(number)


def resolve_counter(queue_number: Any) -> Optional[int]:
    """Return the counter id for a queue number, or None if it has no counter."""
    number = parse_queue_number(queue_number)
    if number is None or number < MIN_QUEUE_NUMBER or number > MAX_QUEUE_NUMBER:
        return None
    return number // NUMBERS_PER_COUNTER
