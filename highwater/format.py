from __future__ import annotations

import datetime as dt
import math
import time


def now_ms() -> int:
    return int(time.time() * 1000)


def format_price(value: float | None) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"${float(value):.6f}"


def format_pct(value: float | None, *, signed: bool = False) -> str:
    """Format a value that is already in percent units."""
    if value is None or math.isnan(value):
        return "-"
    if signed:
        return f"{float(value):+.2f}%"
    return f"{float(value):.2f}%"


def format_ts_utc(ts_ms: int | None) -> str:
    if not ts_ms:
        return "-"
    try:
        value = dt.datetime.fromtimestamp(int(ts_ms) / 1000, tz=dt.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return "-"
    return value.strftime("%Y-%m-%d %H:%M UTC")


def human_age(age_ms: int | float | None) -> str:
    if age_ms is None:
        return "-"
    seconds = max(int(age_ms) // 1000, 0)
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    minutes = (seconds % 3600) // 60

    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes:02d}m"
    return f"{minutes}m"
