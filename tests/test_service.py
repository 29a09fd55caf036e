from __future__ import annotations

import json

import pytest
from conftest import DAY_MS, HOUR_MS, NOW_MS, FakeCandleSource, default_candles, make_candles, make_record

from highwater.cache import HighWaterMarkCache
from highwater.service import HistoricalHighService
from highwater.timeframes import TIMEFRAMES


class TestBeforeInitialize:
    def test_queries_are_empty(self, service):
        assert service.is_initialized is False
        assert service.query_historical_high("BTCUSDT", "1w") is None
        assert service.get_ranking_by_proximity_to_high("1w") == []
        assert service.get_symbols_above_high("1w") == []
        assert service.check_breakthrough("BTCUSDT", 1.0, "1w") is None
        assert service.check_multi_breakthrough("1w") == []
        assert service.get_cache_status()["cache_healthy"] is False

    def test_recollect_reports_everything_failed(self, service):
        assert service.recollect_symbols(["BTCUSDT", "ETHUSDT"]) == {
            "success": [],
            "failed": ["BTCUSDT", "ETHUSDT"],
        }

    def test_manual_update_refused(self, service):
        assert service.trigger_manual_update()["success"] is False

    def test_incremental_update_raises(self, service):
        with pytest.raises(RuntimeError):
            service.incremental_update_symbol("BTCUSDT")


class TestInitialize:
    def test_collects_when_no_snapshot(self, service):
        result = service.initialize()

        assert result["source"] == "collection"
        assert result["entries"] == 10
        assert service.is_initialized is True
        assert service.cache.snapshot_path.exists()

    def test_second_call_is_a_noop(self, service, source):
        service.initialize()
        calls = len(source.calls)

        assert service.initialize()["source"] == "memory"
        assert len(source.calls) == calls

    def test_loads_fresh_snapshot(self, service, source, cache, clock, fake_sleep):
        service.initialize()

        restarted = HistoricalHighService(
            source,
            HighWaterMarkCache(cache.snapshot_path, clock=clock),
            clock=clock,
            sleep=fake_sleep,
        )
        calls = len(source.calls)
        result = restarted.initialize()

        assert result == {"source": "snapshot", "entries": 10}
        assert len(source.calls) == calls

    def test_force_rebuild_recollects(self, service, source):
        service.initialize()
        calls = len(source.calls)

        assert service.initialize(force_rebuild=True)["source"] == "collection"
        assert len(source.calls) > calls


class TestQueries:
    def test_query_and_ranking(self, service):
        service.initialize()

        record = service.query_historical_high("btc", "1w")
        assert record.high_price == 65000.0
        assert record.current_price == 60000.0

        ranking = service.get_ranking_by_proximity_to_high("1w", 1)
        assert [entry.symbol for entry in ranking] == ["BTCUSDT"]

    def test_breakthrough_with_live_prices(self, service):
        service.initialize()

        results = service.check_multi_breakthrough("1w", 0.1, {"BTCUSDT": 66000.0, "ETHUSDT": 3000.0})
        assert [result.symbol for result in results] == ["BTCUSDT"]
        assert [entry.symbol for entry in service.get_symbols_above_high("1w", {"BTCUSDT": 66000.0})] == ["BTCUSDT"]

    def test_stats(self, service):
        service.initialize()
        stats = service.get_stats()

        assert stats == {
            "is_initialized": True,
            "cache_size": 10,
            "timeframes": list(TIMEFRAMES),
            "symbol_count": 2,
        }
        assert [item["key"] for item in service.get_supported_timeframes()] == list(TIMEFRAMES)

    def test_timeframe_case_is_ignored(self, service):
        service.initialize()

        assert [entry.symbol for entry in service.get_ranking_by_proximity_to_high("1W")] == ["BTCUSDT", "ETHUSDT"]
        results = service.check_multi_breakthrough("1W", 0.1, {"BTCUSDT": 66000.0})
        assert [result.symbol for result in results] == ["BTCUSDT"]


class TestRecollect:
    def test_adds_new_symbol_without_touching_others(self, service, source):
        service.initialize()
        before = {key: json.dumps(service.cache.query(*key.split(":")).to_dict()) for key in service.cache.keys()}

        source.prices["XYZUSDT"] = 2.0
        source.candles.update(default_candles("XYZUSDT", daily_high=3.0, hourly_high=2.5))
        result = service.recollect_symbols(["XYZUSDT"])

        assert result == {"success": ["XYZUSDT"], "failed": []}
        added = set(service.cache.keys()) - set(before)
        assert added == {f"XYZUSDT:{timeframe}" for timeframe in TIMEFRAMES}
        for key, raw in before.items():
            assert json.dumps(service.cache.query(*key.split(":")).to_dict()) == raw

    def test_failed_symbol_leaves_cache_alone(self, service, source):
        service.initialize()
        size = len(service.cache)
        source.failing.add("BTCUSDT")

        result = service.recollect_symbols(["BTCUSDT"])

        assert result == {"success": [], "failed": ["BTCUSDT"]}
        assert len(service.cache) == size
        assert service.query_historical_high("BTCUSDT", "1w").high_price == 65000.0


class TestIncrementalUpdate:
    def test_new_recent_high_raises_every_timeframe(self, service, source):
        service.initialize()
        source.prices["BTCUSDT"] = 75000.0
        source.candles[("BTCUSDT", "1h")] = make_candles(NOW_MS - DAY_MS, [76000.0], interval_ms=HOUR_MS)

        result = service.incremental_update_symbol("BTCUSDT")

        assert result == {"success": True, "new_high_found": True, "current_price": 75000.0}
        for record in service.cache.records_for_symbol("BTCUSDT"):
            assert record.high_price == 76000.0
            assert record.current_price == 75000.0
            assert record.high_timestamp == NOW_MS - DAY_MS + HOUR_MS - 1

    def test_no_new_high_refreshes_price(self, service, source):
        service.initialize()
        source.prices["BTCUSDT"] = 62000.0

        result = service.incremental_update_symbol("BTCUSDT")

        assert result["new_high_found"] is False
        record = service.query_historical_high("BTCUSDT", "all")
        assert record.high_price == 70000.0
        assert record.current_price == 62000.0

    def test_failure_is_reported(self, service, source):
        service.initialize()
        source.failing.add("BTCUSDT")

        assert service.incremental_update_symbol("BTCUSDT")["success"] is False

    def test_batch(self, service, source, sleeps):
        service.initialize()
        source.failing.add("ETHUSDT")

        result = service.batch_incremental_update(["BTCUSDT", "ETHUSDT"])

        assert result["success"] == ["BTCUSDT"]
        assert result["failed"] == ["ETHUSDT"]
        assert result["total_updated"] == 1
        assert sleeps.count(0.2) == 1


class TestManualUpdate:
    def test_nothing_outdated(self, service):
        service.initialize()
        result = service.trigger_manual_update(hours_threshold=24)

        assert result["success"] is True
        assert "update_result" not in result

    def test_outdated_symbols_are_refreshed(self, source, tmp_path, fake_sleep):
        cache = HighWaterMarkCache(tmp_path / "snap.json", clock=lambda: NOW_MS)
        service = HistoricalHighService(source, cache, clock=lambda: NOW_MS + 2 * DAY_MS, sleep=fake_sleep)
        service.initialize()
        cache.upsert(make_record("BTCUSDT", "1w", current=60000.0, high=65000.0))

        result = service.trigger_manual_update(hours_threshold=24)

        assert result["success"] is True
        assert result["update_result"]["success"] == ["BTCUSDT"]
        assert cache.query("BTCUSDT", "1w").last_updated == NOW_MS + 2 * DAY_MS


class TestStop:
    def test_stop_persists_and_resets(self, service):
        service.initialize()
        service.stop()

        assert service.is_initialized is False
        assert len(service.cache) == 0
        assert service.cache.snapshot_path.exists()


def test_empty_universe(cache, clock, fake_sleep):
    service = HistoricalHighService(FakeCandleSource({}), cache, clock=clock, sleep=fake_sleep)
    result = service.initialize()

    assert result["source"] == "collection"
    assert result["entries"] == 0
    assert service.is_initialized is True
