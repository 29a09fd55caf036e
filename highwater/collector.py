from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from .cache import HighWaterMarkCache
from .format import now_ms as _now_ms
from .market_data import KLINES_MAX_LIMIT, CandleSource
from .models import Candle, HighWaterMarkRecord
from .symbols import normalize_symbol
from .timeframes import TIMEFRAMES, get_timeframe_config, window_start_ms

logger = logging.getLogger(__name__)

RECENT_INTERVAL = "1h"


@dataclass
class CollectorConfig:
    group_size: int = 8
    group_delay_seconds: float = 0.8
    page_delay_seconds: float = 0.1
    timeframe_delay_seconds: float = 0.05
    page_limit: int = KLINES_MAX_LIMIT


@dataclass
class CollectionResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    records: int = 0

    def to_dict(self) -> dict:
        return {
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "records": int(self.records),
        }


def reduce_high_water_mark(
    symbol: str,
    timeframe: str,
    candles: list[Candle],
    *,
    current_price: float,
    now_ms: int,
) -> HighWaterMarkRecord:
    # The live price is a candidate too, so high_price >= current_price at creation.
    high_price = float(current_price)
    high_ts = int(now_ms)
    for candle in candles:
        if candle.high > high_price:
            high_price = float(candle.high)
            high_ts = int(candle.close_time)

    return HighWaterMarkRecord.build(
        symbol=symbol,
        timeframe=timeframe,
        current_price=current_price,
        high_price=high_price,
        high_timestamp=high_ts,
        now_ms=now_ms,
    )


def build_collector_config() -> CollectorConfig:
    return CollectorConfig(
        group_size=max(int(os.getenv("COLLECT_GROUP_SIZE", "8")), 1),
        group_delay_seconds=max(float(os.getenv("COLLECT_GROUP_DELAY_SECONDS", "0.8")), 0.0),
    )


class CollectionPipeline:
    def __init__(
        self,
        source: CandleSource,
        cache: HighWaterMarkCache,
        cfg: CollectorConfig | None = None,
        *,
        clock: Callable[[], int] = _now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source
        self.cache = cache
        self.cfg = cfg or CollectorConfig()
        self._clock = clock
        self._sleep = sleep

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    def fetch_candles(self, symbol: str, interval: str, start_time: int, end_time: int) -> list[Candle]:
        page_limit = max(int(self.cfg.page_limit), 1)
        out: list[Candle] = []
        cursor = int(start_time)

        while cursor < end_time:
            page = self.source.get_candles(symbol, interval, cursor, end_time, page_limit)
            if not page:
                break
            out.extend(page)
            if len(page) < page_limit:
                break

            next_cursor = int(page[-1].close_time) + 1
            if next_cursor <= cursor:
                logger.warning("Kline cursor did not advance for %s %s at %s", symbol, interval, cursor)
                break
            cursor = next_cursor
            self._pause(self.cfg.page_delay_seconds)

        logger.debug("Collected %s klines for %s %s from %s to %s", len(out), symbol, interval, start_time, end_time)
        return out

    def collect_timeframe(
        self,
        symbol: str,
        timeframe: str,
        *,
        current_price: float,
        now_ms: int,
    ) -> HighWaterMarkRecord | None:
        tf_cfg = get_timeframe_config(timeframe)
        start_time = window_start_ms(timeframe, now_ms)
        candles = self.fetch_candles(symbol, tf_cfg.interval, start_time, now_ms)
        if not candles:
            logger.debug("No kline data for %s %s", symbol, timeframe)
            return None
        return reduce_high_water_mark(symbol, timeframe, candles, current_price=current_price, now_ms=now_ms)

    def collect_symbol(self, symbol: str) -> list[HighWaterMarkRecord]:
        """Collect every timeframe of one symbol; any failure fails the whole symbol."""
        current_price = self.source.get_live_price(symbol)
        now = self._clock()

        records: list[HighWaterMarkRecord] = []
        for idx, timeframe in enumerate(TIMEFRAMES):
            record = self.collect_timeframe(symbol, timeframe, current_price=current_price, now_ms=now)
            if record is not None:
                records.append(record)
            if idx < len(TIMEFRAMES) - 1:
                self._pause(self.cfg.timeframe_delay_seconds)
        return records

    def collect(self, symbols: list[str], *, replace: bool = False) -> CollectionResult:
        """Run the grouped pipeline.

        With `replace` the cache is cleared first (full rebuild); otherwise
        results are merged over existing entries. Records are written as each
        symbol completes and a snapshot is persisted at the end.
        """
        targets = list(dict.fromkeys(normalize_symbol(symbol) for symbol in symbols if normalize_symbol(symbol)))
        result = CollectionResult()
        if replace:
            self.cache.clear()
        if not targets:
            return result

        group_size = max(int(self.cfg.group_size), 1)
        total = len(targets)
        processed = 0
        started = time.monotonic()

        with ThreadPoolExecutor(max_workers=group_size, thread_name_prefix="collect") as executor:
            for offset in range(0, total, group_size):
                group = targets[offset : offset + group_size]
                futures = [(symbol, executor.submit(self.collect_symbol, symbol)) for symbol in group]

                for symbol, future in futures:
                    try:
                        records = future.result()
                    except Exception as exc:
                        result.failed.append(symbol)
                        logger.warning("Failed to collect data for %s: %s", symbol, exc)
                        continue
                    result.records += self.cache.upsert_many(records)
                    result.succeeded.append(symbol)

                processed += len(group)
                logger.info(
                    "Collection progress: %s/%s (%s%%) cache_size=%s",
                    processed,
                    total,
                    round(processed / total * 100),
                    len(self.cache),
                )
                if offset + group_size < total:
                    self._pause(self.cfg.group_delay_seconds)

        self.cache.persist()
        logger.info(
            "Collection finished: succeeded=%s failed=%s records=%s elapsed=%.1fs",
            len(result.succeeded),
            len(result.failed),
            result.records,
            time.monotonic() - started,
        )
        if result.failed:
            logger.warning("Failed symbols (first 10): %s", ", ".join(result.failed[:10]))
        return result

    def collect_recent_high(self, symbol: str, *, days_behind: int = 3) -> tuple[float, float, int]:
        """Return (live_price, recent_high, recent_high_ts) over the last `days_behind` days."""
        current_price = self.source.get_live_price(symbol)
        now = self._clock()
        start_time = now - max(int(days_behind), 1) * 24 * 3600 * 1000
        candles = self.source.get_candles(symbol, RECENT_INTERVAL, start_time, now, self.cfg.page_limit)

        recent_high = float(current_price)
        recent_high_ts = int(now)
        for candle in candles:
            if candle.high > recent_high:
                recent_high = float(candle.high)
                recent_high_ts = int(candle.close_time)
        return current_price, recent_high, recent_high_ts
