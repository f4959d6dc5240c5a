import time
from datetime import datetime, timezone, timedelta
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[float]:
    """Parse an ISO date or datetime into epoch seconds (UTC when naive)."""
    if not value:
        return None
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def end_of_day_ts(value: Optional[str]) -> Optional[float]:
    # a bare date as an upper bound means "through the end of that day"
    ts = from_iso(value)
    if ts is None:
        return None
    if len(value.strip()) == 10:
        return ts + 24 * 3600 - 1e-6
    return ts


def day_start_ts(ts: float) -> float:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0).timestamp()


def month_start_ts(ts: float) -> float:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.replace(
        day=1, hour=0, minute=0, second=0, microsecond=0
    ).timestamp()


def previous_month_start_ts(ts: float) -> float:
    first = datetime.fromtimestamp(month_start_ts(ts), tz=timezone.utc)
    last_of_prev = first - timedelta(days=1)
    return last_of_prev.replace(day=1).timestamp()
