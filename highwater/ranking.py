from __future__ import annotations

import logging

from .cache import HighWaterMarkCache
from .models import RankingEntry, distance_from_high

logger = logging.getLogger(__name__)


class RankingEngine:
    """Read-only ranking over the cache; never refreshes prices itself."""

    def __init__(self, cache: HighWaterMarkCache) -> None:
        self.cache = cache

    def rank(self, timeframe: str, limit: int | None = 20) -> list[RankingEntry]:
        entries = [RankingEntry.from_record(record) for record in self.cache.records_for_timeframe(timeframe)]
        entries.sort(key=lambda entry: (abs(entry.distance_percent), entry.symbol))

        if entries:
            logger.debug(
                "Top closest to %s high: %s",
                timeframe,
                ", ".join(f"{entry.symbol}({entry.distance_percent:.2f}%)" for entry in entries[:5]),
            )
        if limit is None:
            return entries
        return entries[: max(int(limit), 0)]

    def above_high(self, timeframe: str, live_prices: dict[str, float] | None = None) -> list[RankingEntry]:
        """Entries priced above their cached high; live prices override cached ones where present."""
        out: list[RankingEntry] = []
        for entry in self.rank(timeframe, limit=None):
            price = entry.current_price
            if live_prices is not None and entry.symbol in live_prices:
                price = float(live_prices[entry.symbol])
            if price > entry.high_price:
                distance, needed_gain = distance_from_high(price, entry.high_price)
                entry.current_price = price
                entry.distance_percent = distance
                entry.needed_gain_percent = needed_gain
                out.append(entry)
        out.sort(key=lambda entry: entry.distance_percent, reverse=True)
        return out
