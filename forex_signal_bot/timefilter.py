from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional, List
import re
import time


_TZ_RE = re.compile(r"^UTC([+-])(\d{1,2})$")
_INTERVAL_RE = re.compile(r"^(\d+)\s*(min|m|h|day|d|week|w)$")

HOUR_MS = 3_600_000


def now_ms() -> int:
    return int(time.time() * 1000)


def _parse_tz(tz_str: str) -> timezone:
    tz_str = (tz_str or "UTC").strip().upper()
    if tz_str == "UTC":
        return timezone.utc
    m = _TZ_RE.match(tz_str)
    if not m:
        raise ValueError(f"Unsupported timezone format: {tz_str} (use 'UTC' or 'UTC+3' etc.)")
    sign = 1 if m.group(1) == "+" else -1
    hours = int(m.group(2))
    return timezone(timedelta(hours=sign * hours))


def interval_minutes(interval: str) -> int:
    """Minutes in a candle interval such as "5min", "1h", "1day", "1week"."""
    m = _INTERVAL_RE.match((interval or "").strip().lower())
    if not m:
        raise ValueError(f"Unsupported interval: {interval}")
    n = int(m.group(1))
    unit = m.group(2)
    if unit in ("min", "m"):
        return n
    if unit == "h":
        return n * 60
    if unit in ("day", "d"):
        return n * 1440
    return n * 10080


def interval_ms(interval: str) -> int:
    return interval_minutes(interval) * 60_000


@dataclass
class NewsWindow:
    """Fixed hours-of-day blackout around scheduled macro releases."""

    enabled: bool = True
    timezone: str = "UTC"
    start_hour: int = 12
    end_hour: int = 14
    days: Optional[List[int]] = None  # 0=Mon..6=Sun, None = every day

    def within(self, ts_ms: int) -> bool:
        if not self.enabled:
            return False
        tz = _parse_tz(self.timezone)
        dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).astimezone(tz)
        if self.days is not None and dt.weekday() not in set(self.days):
            return False

        h = dt.hour
        s = self.start_hour
        e = self.end_hour

        # Inclusive hour buckets; start == end is a single hour.
        if s <= e:
            return s <= h <= e
        # Cross-midnight window (e.g., 22 -> 1)
        return (h >= s) or (h <= e)
