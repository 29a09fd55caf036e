from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from .breakthrough import (
    DEFAULT_MIN_BREAK_PERCENTAGE,
    BreakthroughDetector,
    generate_breakthrough_message,
    next_watch_state,
    should_skip_check,
)
from .db import BreakthroughWatch, get_breakthrough_watches, insert_alerts_sent
from .discord import get_webhook_url, send_webhook
from .models import BreakthroughCheckResult, BreakthroughWatchState

logger = logging.getLogger(__name__)

ALERT_TYPE_BREAKTHROUGH = "BREAKTHROUGH"
ALERT_TYPE_MULTI_BREAKTHROUGH = "MULTI_BREAKTHROUGH"


@dataclass
class AlertsConfig:
    enabled: bool = True
    min_break_percentage: float = DEFAULT_MIN_BREAK_PERCENTAGE
    max_alerts_per_tick: int = 20


class AlertSink:
    def __init__(self, *, webhook_url: str | None) -> None:
        self.webhook_url = str(webhook_url or "").strip()

    @property
    def is_noop(self) -> bool:
        return self.webhook_url == ""

    def emit(self, message: str) -> bool:
        if self.is_noop:
            logger.info("Alert (no sink configured): %s", message.splitlines()[0] if message else "")
            return True
        return bool(send_webhook(message, webhook_url=self.webhook_url))


class BreakthroughAlertsService:
    """Evaluates every enabled watch against fresh prices and owns their state updates."""

    def __init__(self, cfg: AlertsConfig, detector: BreakthroughDetector, *, sink: AlertSink | None = None) -> None:
        self.cfg = cfg
        self.detector = detector
        self.sink = sink or AlertSink(webhook_url=get_webhook_url())

    def _alert_row(self, watch: BreakthroughWatch, result: BreakthroughCheckResult, *, alert_type: str, now_ms: int) -> dict:
        return {
            "ts": int(now_ms),
            "alert_type": alert_type,
            "watch_id": int(watch.id),
            "symbol": result.symbol,
            "payload": json.dumps({"timeframe": watch.timeframe, **result.to_dict()}, separators=(",", ":")),
        }

    def _check_single(
        self,
        watch: BreakthroughWatch,
        state: BreakthroughWatchState,
        *,
        live_prices: dict[str, float],
    ) -> tuple[float | None, list[BreakthroughCheckResult]]:
        price = live_prices.get(str(watch.symbol or ""))
        if price is None:
            return None, []

        result = self.detector.check_breakthrough(watch.symbol, price, watch.timeframe, state.last_check_price)
        return price, ([result] if result is not None else [])

    def _check_watch_all(
        self,
        watch: BreakthroughWatch,
        state: BreakthroughWatchState,
        *,
        live_prices: dict[str, float],
    ) -> list[BreakthroughCheckResult]:
        min_pct = watch.min_break_percentage
        if min_pct is None:
            min_pct = self.cfg.min_break_percentage

        results = self.detector.check_multi_breakthrough(watch.timeframe, min_pct, live_prices)
        # Symbols that fell back under their high re-arm.
        above_now = {entry.symbol for entry in self.detector.ranking.above_high(watch.timeframe, live_prices)}
        state.triggered_symbols = set(state.triggered_symbols) & above_now
        return [result for result in results if result.symbol not in state.triggered_symbols]

    def _settle_state(
        self,
        watch: BreakthroughWatch,
        state: BreakthroughWatchState,
        *,
        price: float | None,
        results: list[BreakthroughCheckResult],
        delivered: list[BreakthroughCheckResult],
        now_ms: int,
    ) -> None:
        """Record only what reached the sink; undelivered breakthroughs stay pending."""
        if watch.watch_all_symbols:
            state.triggered_symbols.update(result.symbol for result in delivered)
            if delivered:
                state.last_triggered_time = int(now_ms)
        elif price is not None and (delivered or not results):
            state = next_watch_state(state, price, fired=bool(delivered), now_ms=now_ms)
        watch.apply_state(state)

    def run(self, session, *, live_prices: dict[str, float], now_ms: int) -> dict:
        watches = get_breakthrough_watches(session, enabled_only=True)
        if not self.cfg.enabled:
            return {
                "enabled": False,
                "watches": len(watches),
                "fired": 0,
                "sent": 0,
                "skipped_cooldown": 0,
                "skipped_budget": 0,
                "skipped_sink": 0,
                "sink": "noop" if self.sink.is_noop else "discord",
            }

        budget = max(int(self.cfg.max_alerts_per_tick), 0)
        fired = 0
        skipped_cooldown = 0
        skipped_budget = 0
        skipped_sink = 0
        rows: list[dict] = []

        for watch in watches:
            state = watch.to_state()
            if should_skip_check(state, now_ms=now_ms, cooldown_ms=int(watch.cooldown_ms)):
                skipped_cooldown += 1
                continue

            price: float | None = None
            if watch.watch_all_symbols:
                results = self._check_watch_all(watch, state, live_prices=live_prices)
                alert_type = ALERT_TYPE_MULTI_BREAKTHROUGH
            else:
                price, results = self._check_single(watch, state, live_prices=live_prices)
                alert_type = ALERT_TYPE_BREAKTHROUGH

            delivered: list[BreakthroughCheckResult] = []
            for result in results:
                fired += 1
                if budget <= 0:
                    skipped_budget += 1
                    continue
                message = generate_breakthrough_message(
                    result,
                    watch.timeframe,
                    watch_all=bool(watch.watch_all_symbols),
                    detected_at_ms=now_ms,
                )
                if not self.sink.emit(message):
                    skipped_sink += 1
                    continue
                rows.append(self._alert_row(watch, result, alert_type=alert_type, now_ms=now_ms))
                delivered.append(result)
                budget -= 1

            self._settle_state(watch, state, price=price, results=results, delivered=delivered, now_ms=now_ms)
            session.add(watch)

        sent = insert_alerts_sent(session, rows)
        if fired:
            logger.info(
                "Breakthrough alerts run: watches=%s fired=%s sent=%s cooldown_skips=%s budget_skips=%s sink_skips=%s",
                len(watches),
                fired,
                sent,
                skipped_cooldown,
                skipped_budget,
                skipped_sink,
            )

        return {
            "enabled": True,
            "watches": len(watches),
            "fired": int(fired),
            "sent": int(sent),
            "skipped_cooldown": int(skipped_cooldown),
            "skipped_budget": int(skipped_budget),
            "skipped_sink": int(skipped_sink),
            "sink": "noop" if self.sink.is_noop else "discord",
        }
