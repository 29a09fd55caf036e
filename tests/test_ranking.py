from __future__ import annotations

import pytest
from conftest import make_record

from highwater.ranking import RankingEngine


@pytest.fixture
def ranked_cache(cache):
    cache.upsert_many(
        [
            make_record("AAAUSDT", "1w", current=90.0, high=100.0),
            make_record("BBBUSDT", "1w", current=99.0, high=100.0),
            make_record("CCCUSDT", "1w", current=50.0, high=100.0),
            make_record("DDDUSDT", "1w", current=100.0, high=100.0),
            make_record("EEEUSDT", "1m", current=100.0, high=100.0),
        ]
    )
    return cache


class TestRank:
    def test_closest_to_high_first(self, ranked_cache):
        entries = RankingEngine(ranked_cache).rank("1w")

        assert [entry.symbol for entry in entries] == ["DDDUSDT", "BBBUSDT", "AAAUSDT", "CCCUSDT"]
        assert entries[0].distance_percent == 0.0
        assert entries[1].distance_percent == pytest.approx(-1.0)
        assert entries[1].needed_gain_percent == pytest.approx(1.0)

    def test_limit_truncates(self, ranked_cache):
        entries = RankingEngine(ranked_cache).rank("1w", 2)
        assert [entry.symbol for entry in entries] == ["DDDUSDT", "BBBUSDT"]

    def test_no_limit_returns_everything(self, ranked_cache):
        assert len(RankingEngine(ranked_cache).rank("1w", None)) == 4

    def test_timeframe_isolated(self, ranked_cache):
        entries = RankingEngine(ranked_cache).rank("1m")
        assert [entry.symbol for entry in entries] == ["EEEUSDT"]
        assert RankingEngine(ranked_cache).rank("6m") == []

    def test_ties_break_on_symbol(self, cache):
        cache.upsert_many(
            [
                make_record("ZZZUSDT", "1w", current=95.0, high=100.0),
                make_record("MMMUSDT", "1w", current=95.0, high=100.0),
            ]
        )
        assert [entry.symbol for entry in RankingEngine(cache).rank("1w")] == ["MMMUSDT", "ZZZUSDT"]


class TestAboveHigh:
    def test_uses_live_prices(self, ranked_cache):
        live = {"AAAUSDT": 110.0, "BBBUSDT": 101.0, "CCCUSDT": 60.0}
        entries = RankingEngine(ranked_cache).above_high("1w", live)

        assert [entry.symbol for entry in entries] == ["AAAUSDT", "BBBUSDT"]
        assert entries[0].current_price == 110.0
        assert entries[0].distance_percent == pytest.approx(10.0)
        assert entries[0].needed_gain_percent == 0.0

    def test_cached_prices_never_exceed_high(self, ranked_cache):
        assert RankingEngine(ranked_cache).above_high("1w") == []

    def test_does_not_mutate_cache(self, ranked_cache):
        RankingEngine(ranked_cache).above_high("1w", {"AAAUSDT": 150.0})
        assert ranked_cache.query("AAAUSDT", "1w").current_price == 90.0

    def test_timeframe_case_is_ignored(self, ranked_cache):
        engine = RankingEngine(ranked_cache)
        assert [entry.symbol for entry in engine.rank("1W", None)] == ["DDDUSDT", "BBBUSDT", "AAAUSDT", "CCCUSDT"]
        assert [entry.symbol for entry in engine.above_high(" 1W ", {"AAAUSDT": 110.0})] == ["AAAUSDT"]
