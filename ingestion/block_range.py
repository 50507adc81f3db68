"""
Work range resolution: cursor, explicit bounds, or a wall-clock lookback.

A lookback such as ``"2h"`` is converted to milliseconds and then to a start
position with a binary search over the (monotonic) position -> timestamp
mapping of the work source.
"""

import re
import time
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from core.exceptions import TimeRangeError
from schemas.batch import RunBounds

logger = logging.getLogger(__name__)

TIME_RANGE_PATTERN = re.compile(r"^(\d+)(h|d|w|m|y)$")

_UNIT_MS = {
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
    "m": 30 * 24 * 60 * 60 * 1000,
    "y": 365 * 24 * 60 * 60 * 1000,
}


@dataclass
class WorkRange:
    start: int
    end: int
    bounded: bool

    @property
    def is_empty(self) -> bool:
        return self.end < self.start

    def __len__(self) -> int:
        return 0 if self.is_empty else self.end - self.start + 1


def parse_time_range(time_range: str) -> int:
    """Convert ``<n>(h|d|w|m|y)`` to milliseconds (m = 30 days, y = 365 days)."""
    match = TIME_RANGE_PATTERN.match(time_range or "")
    if not match:
        raise TimeRangeError(
            f"Invalid time range format: {time_range}. Expected format like 2h, 3d, 1w, 1m, 1y",
            context={"time_range": time_range},
        )
    value, unit = match.groups()
    return int(value) * _UNIT_MS[unit]


async def find_position_at_or_after(
    target_ms: int,
    low: int,
    high: int,
    timestamp_at: Callable[[int], Awaitable[int]],
) -> int:
    """
    Smallest position in [low, high] whose timestamp is >= ``target_ms``.

    Returns ``high + 1`` if every position is older than the target.
    """
    result = high + 1
    while low <= high:
        mid = (low + high) // 2
        if await timestamp_at(mid) >= target_ms:
            result = mid
            high = mid - 1
        else:
            low = mid + 1
    return result


async def resolve_range(
    stage,
    cursor: Optional[int],
    bounds: Optional[RunBounds] = None,
    now_ms: Optional[int] = None,
) -> WorkRange:
    """
    Decide which positions a run covers.

    - lookback: binary search for the first position inside the window, to latest
    - start and end: exactly that range
    - start only: start to latest
    - end only: 0 to end
    - nothing: the position after ``cursor`` to latest
    """
    bounds = bounds or RunBounds()

    if bounds.time_range is not None:
        lookback_ms = parse_time_range(bounds.time_range)
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        target_ms = now_ms - lookback_ms
        latest = await stage.latest_position()
        start = await find_position_at_or_after(target_ms, 0, latest, stage.timestamp_at)
        logger.info(f"Time range {bounds.time_range} maps to positions {start}..{latest}")
        return WorkRange(start=start, end=latest, bounded=True)

    if bounds.start is not None and bounds.end is not None:
        return WorkRange(start=bounds.start, end=bounds.end, bounded=True)

    if bounds.start is not None:
        latest = await stage.latest_position()
        logger.info(f"Processing from {bounds.start} to latest ({latest})")
        return WorkRange(start=bounds.start, end=latest, bounded=True)

    if bounds.end is not None:
        return WorkRange(start=0, end=bounds.end, bounded=True)

    latest = await stage.latest_position()
    start = 0 if cursor is None else cursor + 1
    logger.info(f"Auto-determined range: {start} to {latest}")
    return WorkRange(start=start, end=latest, bounded=False)
