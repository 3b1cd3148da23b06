"""Minute-boundary helpers shared by the cooldown rules."""
from typing import Optional

MINUTE_MS = 60_000
SECOND_MS = 1_000


def minute_index(at_ms: int) -> int:
    return at_ms // MINUTE_MS


def next_minute_start_ms(at_ms: int) -> int:
    return (minute_index(at_ms) + 1) * MINUTE_MS


def has_crossed_minute(anchor_ms: Optional[int], at_ms: int) -> bool:
    """True once ``at_ms`` lies in a later minute than ``anchor_ms``."""
    if anchor_ms is None:
        return False
    return minute_index(at_ms) > minute_index(anchor_ms)


def is_first_second_of_later_minute(anchor_ms: Optional[int], at_ms: int) -> bool:
    """True when ``at_ms`` is within the first second of a minute after the anchor's minute."""
    if not has_crossed_minute(anchor_ms, at_ms):
        return False
    return at_ms % MINUTE_MS < SECOND_MS
