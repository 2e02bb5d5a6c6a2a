"""
Timestamp utilities for consistent time handling across the system.

All timestamps are Unix epoch seconds (float).
"""

import time
from datetime import datetime
from typing import Optional

SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR


def now_seconds(now: Optional[float] = None) -> float:
    """Return `now` if given, otherwise the current time."""
    return time.time() if now is None else now


def hours_since(timestamp: float, now: Optional[float] = None) -> float:
    return (now_seconds(now) - timestamp) / SECONDS_PER_HOUR


def days_since(timestamp: float, now: Optional[float] = None) -> float:
    return (now_seconds(now) - timestamp) / SECONDS_PER_DAY


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert timestamp to datetime object.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp)
