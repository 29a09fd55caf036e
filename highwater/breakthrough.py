from __future__ import annotations

import logging
from dataclasses import replace

from .cache import HighWaterMarkCache
from .format import format_pct, format_price, format_ts_utc
from .models import BreakthroughCheckResult, BreakthroughWatchState
from .ranking import RankingEngine
from .symbols import base_asset, normalize_symbol
from .timeframes import cooldown_ms_for_timeframe, display_name

logger = logging.getLogger(__name__)

DEFAULT_MIN_BREAK_PERCENTAGE = 0.1


def is_breakthrough_condition_met(
    current_price: float,
    high_price: float,
    last_check_price: float | None = None,
) -> bool:
    """Fire only on the crossing: above the high now, not above it on the previous check."""
    if current_price <= high_price:
        return False
    if last_check_price is not None and last_check_price > high_price:
        return False
    return True


def build_result(symbol: str, current_price: float, high_price: float, high_timestamp: int) -> BreakthroughCheckResult:
    break_amount = float(current_price) - float(high_price)
    return BreakthroughCheckResult(
        symbol=symbol,
        current_price=float(current_price),
        timeframe_high=float(high_price),
        high_timestamp=int(high_timestamp),
        is_breakthrough=True,
        break_amount=break_amount,
        break_percentage=break_amount / float(high_price) * 100,
    )


def should_skip_check(state: BreakthroughWatchState, *, now_ms: int, cooldown_ms: int | None = None) -> bool:
    if state.last_triggered_time is None:
        return False
    window = cooldown_ms if cooldown_ms is not None else cooldown_ms_for_timeframe(state.timeframe)
    return (int(now_ms) - int(state.last_triggered_time)) < int(window)


def next_watch_state(
    state: BreakthroughWatchState,
    current_price: float,
    *,
    fired: bool,
    now_ms: int,
) -> BreakthroughWatchState:
    """State to persist after an evaluation, fired or not."""
    return replace(
        state,
        last_check_price=float(current_price),
        last_triggered_time=int(now_ms) if fired else state.last_triggered_time,
    )


class BreakthroughDetector:
    """Stateless evaluator; the caller owns and persists BreakthroughWatchState."""

    def __init__(self, cache: HighWaterMarkCache, ranking: RankingEngine | None = None) -> None:
        self.cache = cache
        self.ranking = ranking or RankingEngine(cache)

    def check_breakthrough(
        self,
        symbol: str,
        current_price: float,
        timeframe: str,
        last_check_price: float | None = None,
    ) -> BreakthroughCheckResult | None:
        normalized = normalize_symbol(symbol)
        record = self.cache.query(normalized, timeframe)
        if record is None:
            logger.debug("No cached high for %s %s", normalized, timeframe)
            return None

        if not is_breakthrough_condition_met(current_price, record.high_price, last_check_price):
            return None
        return build_result(normalized, current_price, record.high_price, record.high_timestamp)

    def check_multi_breakthrough(
        self,
        timeframe: str,
        min_break_percentage: float = DEFAULT_MIN_BREAK_PERCENTAGE,
        live_prices: dict[str, float] | None = None,
    ) -> list[BreakthroughCheckResult]:
        """Every symbol above its high by at least `min_break_percentage`, strongest first.

        Without `live_prices` the cached collection-time prices are used.
        No per-symbol memory is kept here; suppression is up to the caller.
        """
        out: list[BreakthroughCheckResult] = []
        for entry in self.ranking.rank(timeframe, limit=None):
            price = entry.current_price
            if live_prices is not None and entry.symbol in live_prices:
                price = float(live_prices[entry.symbol])
            if not price or not entry.high_price or price <= entry.high_price:
                continue

            result = build_result(entry.symbol, price, entry.high_price, entry.high_timestamp)
            if result.break_percentage >= float(min_break_percentage):
                out.append(result)

        out.sort(key=lambda result: result.break_percentage, reverse=True)
        logger.debug("Found %s breakthroughs for %s timeframe", len(out), timeframe)
        return out


def generate_breakthrough_message(
    result: BreakthroughCheckResult,
    timeframe: str,
    *,
    watch_all: bool = False,
    detected_at_ms: int | None = None,
) -> str:
    title = "Market breakthrough" if watch_all else "Breakthrough alert"
    lines = [
        f"**{title}: {base_asset(result.symbol)} broke its {display_name(timeframe)} high**",
        f"Current price: {format_price(result.current_price)}",
        f"Previous high: {format_price(result.timeframe_high)}",
        f"Break: {format_pct(result.break_percentage, signed=True)}",
        f"High set at: {format_ts_utc(result.high_timestamp)}",
    ]
    if detected_at_ms is not None:
        lines.append(f"Detected at: {format_ts_utc(detected_at_ms)}")
    return "\n".join(lines)
