from __future__ import annotations

import datetime as dt
from dataclasses import dataclass

DAY_MS = 24 * 3600 * 1000

# USD-M perpetual futures went live in September 2019; nothing older exists.
ALL_TIME_START_MS = int(dt.datetime(2019, 9, 1, tzinfo=dt.timezone.utc).timestamp() * 1000)


@dataclass(frozen=True)
class TimeframeConfig:
    interval: str
    window_ms: int | None
    display_name: str


TIMEFRAME_CONFIGS: dict[str, TimeframeConfig] = {
    "1w": TimeframeConfig(interval="1h", window_ms=7 * DAY_MS, display_name="1 week"),
    "1m": TimeframeConfig(interval="1d", window_ms=30 * DAY_MS, display_name="1 month"),
    "6m": TimeframeConfig(interval="1d", window_ms=180 * DAY_MS, display_name="6 months"),
    "1y": TimeframeConfig(interval="1d", window_ms=365 * DAY_MS, display_name="1 year"),
    "all": TimeframeConfig(interval="1d", window_ms=None, display_name="all-time"),
}

TIMEFRAMES: tuple[str, ...] = tuple(TIMEFRAME_CONFIGS.keys())

_TIMEFRAME_MINUTES: dict[str, int] = {
    "1w": 7 * 24 * 60,
    "1m": 30 * 24 * 60,
    "6m": 180 * 24 * 60,
    "1y": 365 * 24 * 60,
    "all": 365 * 24 * 60,
}

COOLDOWN_SHORT_MS = 60 * 1000
COOLDOWN_MEDIUM_MS = 5 * 60 * 1000
COOLDOWN_LONG_MS = 30 * 60 * 1000


def parse_timeframe(raw: str | None) -> str:
    key = (raw or "").strip().lower()
    if key not in TIMEFRAME_CONFIGS:
        raise ValueError(f"Unsupported timeframe: {raw}")
    return key


def get_timeframe_config(timeframe: str) -> TimeframeConfig:
    return TIMEFRAME_CONFIGS[parse_timeframe(timeframe)]


def window_start_ms(timeframe: str, now_ms: int) -> int:
    cfg = get_timeframe_config(timeframe)
    if cfg.window_ms is None:
        return ALL_TIME_START_MS
    return int(now_ms) - int(cfg.window_ms)


def display_name(timeframe: str) -> str:
    cfg = TIMEFRAME_CONFIGS.get((timeframe or "").strip().lower())
    return cfg.display_name if cfg is not None else str(timeframe)


def supported_timeframes() -> list[dict]:
    return [{"key": key, "display_name": cfg.display_name} for key, cfg in TIMEFRAME_CONFIGS.items()]


def timeframe_minutes(timeframe: str) -> int:
    return _TIMEFRAME_MINUTES.get((timeframe or "").strip().lower(), 60)


def cooldown_ms_for_timeframe(timeframe: str | None) -> int:
    """Re-notification cooldown; shorter look-backs re-alert sooner."""
    if not timeframe:
        return COOLDOWN_LONG_MS

    minutes = timeframe_minutes(timeframe)
    if minutes <= 10:
        return COOLDOWN_SHORT_MS
    if minutes <= 60:
        return COOLDOWN_MEDIUM_MS
    return COOLDOWN_LONG_MS
