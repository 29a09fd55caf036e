from __future__ import annotations

import pytest

from highwater.cache import HighWaterMarkCache
from highwater.collector import CollectorConfig
from highwater.market_data import CandleSourceError
from highwater.models import Candle, HighWaterMarkRecord
from highwater.service import HistoricalHighService

NOW_MS = 1_760_000_000_000
HOUR_MS = 3600 * 1000
DAY_MS = 24 * HOUR_MS


def make_candles(start_ms: int, highs: list[float], *, interval_ms: int = DAY_MS) -> list[Candle]:
    out = []
    for idx, high in enumerate(highs):
        open_time = start_ms + idx * interval_ms
        out.append(
            Candle(
                open_time=open_time,
                open=high * 0.95,
                high=float(high),
                low=high * 0.9,
                close=high * 0.97,
                volume=1000.0,
                close_time=open_time + interval_ms - 1,
            )
        )
    return out


def make_record(symbol: str, timeframe: str, *, current: float, high: float, high_ts: int = NOW_MS - DAY_MS) -> HighWaterMarkRecord:
    return HighWaterMarkRecord.build(
        symbol=symbol,
        timeframe=timeframe,
        current_price=current,
        high_price=high,
        high_timestamp=high_ts,
        now_ms=NOW_MS,
    )


class FakeCandleSource:
    """Scripted candle source; candles are keyed by (symbol, interval)."""

    name = "fake"

    def __init__(self, prices: dict[str, float], candles: dict[tuple[str, str], list[Candle]] | None = None, *, failing=()):
        self.prices = dict(prices)
        self.candles = dict(candles or {})
        self.failing = set(failing)
        self.calls: list[tuple[str, str, int, int, int]] = []

    def get_candles(self, symbol, interval, start_time, end_time, limit=1000):
        self.calls.append((symbol, interval, int(start_time), int(end_time), int(limit)))
        if symbol in self.failing:
            raise CandleSourceError(f"source unavailable for {symbol}")
        rows = [c for c in self.candles.get((symbol, interval), []) if start_time <= c.open_time <= end_time]
        return rows[:limit]

    def get_live_price(self, symbol):
        if symbol in self.failing or symbol not in self.prices:
            raise CandleSourceError(f"no price for {symbol}")
        return self.prices[symbol]

    def get_live_prices(self):
        return dict(self.prices)

    def list_tracked_symbols(self):
        return sorted(self.prices)


def default_candles(symbol: str, *, daily_high: float, hourly_high: float) -> dict[tuple[str, str], list[Candle]]:
    return {
        (symbol, "1d"): make_candles(NOW_MS - 20 * DAY_MS, [daily_high * 0.8, daily_high, daily_high * 0.9]),
        (symbol, "1h"): make_candles(NOW_MS - 5 * DAY_MS, [hourly_high * 0.9, hourly_high], interval_ms=HOUR_MS),
    }


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append


@pytest.fixture
def clock():
    return lambda: NOW_MS


@pytest.fixture
def cache(tmp_path, clock):
    return HighWaterMarkCache(tmp_path / "data" / "historical-high-cache.json", clock=clock)


@pytest.fixture
def source():
    candles = {}
    candles.update(default_candles("BTCUSDT", daily_high=70000.0, hourly_high=65000.0))
    candles.update(default_candles("ETHUSDT", daily_high=4000.0, hourly_high=3500.0))
    return FakeCandleSource({"BTCUSDT": 60000.0, "ETHUSDT": 3000.0}, candles)


@pytest.fixture
def service(source, cache, clock, fake_sleep):
    return HistoricalHighService(source, cache, collector_cfg=CollectorConfig(), clock=clock, sleep=fake_sleep)
