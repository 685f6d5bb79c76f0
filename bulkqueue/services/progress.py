"""
Progress / ETA for bulk jobs.

Linear extrapolation from cumulative throughput: the average time per
processed item so far, multiplied by the number of items left. Recomputed on
every item update.
"""
import math
from datetime import datetime, timezone
from typing import Optional


def as_utc(ts: datetime) -> datetime:
    """SQLite hands back naive datetimes; they were written as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def estimate_time_remaining(
    total: int,
    processed: int,
    start_time: datetime,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """Seconds left for the job, or None when nothing has been processed yet"""
    if processed <= 0:
        return None
    now = now or datetime.now(timezone.utc)
    elapsed = max((as_utc(now) - as_utc(start_time)).total_seconds(), 0.0)
    remaining = max(total - processed, 0)
    return math.ceil(remaining * (elapsed / processed))


def percent_complete(total: int, processed: int) -> int:
    if total <= 0:
        return 100
    return min(100, int(processed * 100 / total))
