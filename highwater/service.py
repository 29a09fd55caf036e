from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .breakthrough import DEFAULT_MIN_BREAK_PERCENTAGE, BreakthroughDetector
from .cache import HighWaterMarkCache
from .collector import CollectionPipeline, CollectorConfig
from .format import now_ms as _now_ms
from .market_data import CandleSource
from .models import BreakthroughCheckResult, HighWaterMarkRecord, RankingEntry, split_cache_key
from .ranking import RankingEngine
from .symbols import normalize_symbol
from .timeframes import TIMEFRAMES, supported_timeframes

logger = logging.getLogger(__name__)

INCREMENTAL_DELAY_SECONDS = 0.2


class HistoricalHighService:
    """Query surface over one explicitly constructed cache."""

    def __init__(
        self,
        source: CandleSource,
        cache: HighWaterMarkCache | None = None,
        *,
        collector_cfg: CollectorConfig | None = None,
        clock: Callable[[], int] = _now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source
        self.cache = cache if cache is not None else HighWaterMarkCache(clock=clock)
        self.pipeline = CollectionPipeline(source, self.cache, collector_cfg, clock=clock, sleep=sleep)
        self.ranking = RankingEngine(self.cache)
        self.detector = BreakthroughDetector(self.cache, self.ranking)
        self._clock = clock
        self._sleep = sleep
        self._initialized = False
        self._init_lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self, *, force_rebuild: bool = False) -> dict:
        with self._init_lock:
            if self._initialized and not force_rebuild:
                return {"source": "memory", "entries": len(self.cache)}

            if not force_rebuild and self.cache.load():
                self._initialized = True
                logger.info("Historical high cache loaded from snapshot: %s entries", len(self.cache))
                return {"source": "snapshot", "entries": len(self.cache)}

            logger.info("Starting full historical high collection")
            symbols = self.source.list_tracked_symbols()
            logger.info("Found %s symbols to process", len(symbols))
            result = self.pipeline.collect(symbols, replace=True)
            self._initialized = True
            return {"source": "collection", "entries": len(self.cache), **result.to_dict()}

    def query_historical_high(self, symbol: str, timeframe: str) -> HighWaterMarkRecord | None:
        if not self._initialized:
            logger.warning("Historical high cache not initialized yet")
            return None
        return self.cache.query(symbol, timeframe)

    def get_ranking_by_proximity_to_high(self, timeframe: str, limit: int = 20) -> list[RankingEntry]:
        if not self._initialized:
            logger.warning("Historical high cache not initialized yet")
            return []
        return self.ranking.rank(timeframe, limit)

    def get_symbols_above_high(self, timeframe: str, live_prices: dict[str, float] | None = None) -> list[RankingEntry]:
        if not self._initialized:
            return []
        return self.ranking.above_high(timeframe, live_prices)

    def check_breakthrough(
        self,
        symbol: str,
        current_price: float,
        timeframe: str,
        last_check_price: float | None = None,
    ) -> BreakthroughCheckResult | None:
        if not self._initialized:
            return None
        return self.detector.check_breakthrough(symbol, current_price, timeframe, last_check_price)

    def check_multi_breakthrough(
        self,
        timeframe: str,
        min_break_percentage: float = DEFAULT_MIN_BREAK_PERCENTAGE,
        live_prices: dict[str, float] | None = None,
    ) -> list[BreakthroughCheckResult]:
        if not self._initialized:
            return []
        return self.detector.check_multi_breakthrough(timeframe, min_break_percentage, live_prices)

    def recollect_symbols(self, symbols: list[str]) -> dict:
        if not self._initialized:
            logger.warning("Cache not initialized, cannot recollect symbols")
            return {"success": [], "failed": list(symbols)}

        logger.info("Starting recollection for %s symbols: %s", len(symbols), ", ".join(symbols))
        result = self.pipeline.collect(symbols, replace=False)
        logger.info("Recollection completed: %s success, %s failed", len(result.succeeded), len(result.failed))
        return {"success": result.succeeded, "failed": result.failed}

    def incremental_update_symbol(self, symbol: str, *, days_behind: int = 3) -> dict:
        if not self._initialized:
            raise RuntimeError("Cache not initialized")

        normalized = normalize_symbol(symbol)
        try:
            current_price, recent_high, recent_high_ts = self.pipeline.collect_recent_high(
                normalized, days_behind=days_behind
            )
        except Exception as exc:
            logger.warning("Failed to incrementally update %s: %s", normalized, exc)
            return {"success": False, "new_high_found": False, "current_price": 0.0}

        now = self._clock()
        new_high_found = False
        refreshed: list[HighWaterMarkRecord] = []
        for existing in self.cache.records_for_symbol(normalized):
            high_price = existing.high_price
            high_ts = existing.high_timestamp
            if recent_high > high_price:
                high_price = recent_high
                high_ts = recent_high_ts
                new_high_found = True
            refreshed.append(
                HighWaterMarkRecord.build(
                    symbol=normalized,
                    timeframe=existing.timeframe,
                    current_price=current_price,
                    high_price=high_price,
                    high_timestamp=high_ts,
                    now_ms=now,
                )
            )
        self.cache.upsert_many(refreshed)
        return {"success": True, "new_high_found": new_high_found, "current_price": current_price}

    def batch_incremental_update(self, symbols: list[str], *, days_behind: int = 3) -> dict:
        if not self._initialized:
            raise RuntimeError("Cache not initialized")

        success: list[str] = []
        failed: list[str] = []
        new_highs: list[str] = []
        logger.info("Starting batch incremental update for %s symbols (%s days)", len(symbols), days_behind)

        for idx, symbol in enumerate(symbols):
            result = self.incremental_update_symbol(symbol, days_behind=days_behind)
            if result["success"]:
                success.append(symbol)
                if result["new_high_found"]:
                    new_highs.append(symbol)
            else:
                failed.append(symbol)
            if idx < len(symbols) - 1:
                self._sleep(INCREMENTAL_DELAY_SECONDS)

        if success:
            self.cache.persist()

        logger.info(
            "Batch update completed: %s success, %s failed, %s new highs",
            len(success),
            len(failed),
            len(new_highs),
        )
        return {
            "success": success,
            "failed": failed,
            "new_highs": new_highs,
            "total_updated": len(success),
        }

    def trigger_manual_update(self, *, hours_threshold: float = 24) -> dict:
        if not self._initialized:
            return {"success": False, "message": "Cache not initialized"}

        threshold_ms = float(hours_threshold) * 3600 * 1000
        now = self._clock()
        outdated: list[str] = []
        for record in self.cache.records():
            if now - record.last_updated > threshold_ms and record.symbol not in outdated:
                outdated.append(record.symbol)

        if not outdated:
            return {"success": True, "message": f"All cache entries updated within {hours_threshold}h"}

        logger.info("Manual update triggered for %s outdated symbols", len(outdated))
        update_result = self.batch_incremental_update(outdated, days_behind=3)
        return {
            "success": True,
            "message": (
                f"Updated {update_result['total_updated']} symbols, "
                f"{len(update_result['failed'])} failed, {len(update_result['new_highs'])} new highs"
            ),
            "update_result": update_result,
        }

    def get_stats(self) -> dict:
        symbols = {split_cache_key(key)[0] for key in self.cache.keys()}
        return {
            "is_initialized": self._initialized,
            "cache_size": len(self.cache),
            "timeframes": list(TIMEFRAMES),
            "symbol_count": len(symbols),
        }

    def get_cache_status(self) -> dict:
        if not self._initialized:
            return {
                "total_entries": 0,
                "oldest_update": 0,
                "newest_update": 0,
                "average_age": 0,
                "cache_healthy": False,
            }
        return self.cache.status()

    def get_supported_timeframes(self) -> list[dict]:
        return supported_timeframes()

    def stop(self) -> None:
        if len(self.cache) > 0:
            self.cache.persist()
        self.cache.clear()
        self._initialized = False
        logger.info("Historical high service stopped")
