from __future__ import annotations

from types import SimpleNamespace

import pytest

import highwater.discord as discord
from highwater.discord import send_webhook
from highwater.format import format_pct, format_price, format_ts_utc, human_age
from highwater.ratelimit import TokenBucket
from highwater.symbols import (
    base_asset,
    filter_historical_pairs,
    normalize_symbol,
    parse_symbols,
)
from highwater.timeframes import (
    ALL_TIME_START_MS,
    DAY_MS,
    get_timeframe_config,
    parse_timeframe,
    window_start_ms,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestTokenBucket:
    def test_disabled_never_waits(self):
        bucket = TokenBucket(0)
        assert bucket.enabled is False
        assert bucket.acquire() == 0.0

    def test_waits_when_drained(self):
        clock = FakeClock()
        bucket = TokenBucket(2, clock=clock, sleep=clock.sleep)

        assert bucket.acquire() == 0.0
        assert bucket.acquire() == 0.0
        assert bucket.acquire() == pytest.approx(0.5)
        assert clock.sleeps == [pytest.approx(0.5)]

    def test_refills_over_time(self):
        clock = FakeClock()
        bucket = TokenBucket(1, burst=3, clock=clock, sleep=clock.sleep)
        for _ in range(3):
            bucket.acquire()
        assert bucket.remaining() == 0.0

        clock.now += 10
        assert bucket.remaining() == 3.0


class TestSymbols:
    def test_normalize(self):
        assert normalize_symbol(" btc ") == "BTCUSDT"
        assert normalize_symbol("ethusdt") == "ETHUSDT"
        assert normalize_symbol(None) == ""
        assert base_asset("SOLUSDT") == "SOL"

    def test_parse_symbols_dedupes(self):
        assert parse_symbols("btc, ETHUSDT,, btcusdt") == ["BTCUSDT", "ETHUSDT"]
        assert parse_symbols(None) == []

    def test_historical_filter_drops_delisted_only(self):
        assert filter_historical_pairs(["BTCUSDT", "MKRUSDT", "LUNAUSDT"]) == ["BTCUSDT", "LUNAUSDT"]


class TestTimeframes:
    def test_parse(self):
        assert parse_timeframe(" 1W ") == "1w"
        with pytest.raises(ValueError):
            parse_timeframe("2w")

    def test_windows(self):
        now = 1_760_000_000_000
        assert get_timeframe_config("1w").interval == "1h"
        assert get_timeframe_config("1y").interval == "1d"
        assert window_start_ms("1m", now) == now - 30 * DAY_MS
        assert window_start_ms("all", now) == ALL_TIME_START_MS
        assert ALL_TIME_START_MS == 1_567_296_000_000


class TestFormat:
    def test_values(self):
        assert format_price(1.5) == "$1.500000"
        assert format_price(None) == "-"
        assert format_pct(-2.25) == "-2.25%"
        assert format_pct(5, signed=True) == "+5.00%"
        assert format_ts_utc(1_567_296_000_000) == "2019-09-01 00:00 UTC"
        assert format_ts_utc(None) == "-"

    def test_human_age(self):
        assert human_age(90 * 1000) == "1m"
        assert human_age(2 * 3600 * 1000 + 5 * 60 * 1000) == "2h 05m"
        assert human_age(DAY_MS + 3600 * 1000) == "1d 1h"


class TestDiscord:
    def test_missing_webhook(self, monkeypatch):
        monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
        assert send_webhook("hello") is False

    def test_truncates_and_retries(self, monkeypatch):
        bodies = []

        def fake_post(url, json=None, timeout=None):
            bodies.append(json["content"])
            return SimpleNamespace(status_code=500 if len(bodies) == 1 else 204)

        monkeypatch.setattr(discord.requests, "post", fake_post)
        monkeypatch.setattr(discord.time, "sleep", lambda _: None)

        assert send_webhook("x" * 2500, webhook_url="https://discord.invalid/hook") is True
        assert len(bodies) == 2
        assert len(bodies[0]) == 2000
        assert bodies[0].endswith("...")
