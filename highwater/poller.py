from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass

from .alerts import BreakthroughAlertsService
from .db import session_scope
from .format import now_ms
from .service import HistoricalHighService

logger = logging.getLogger(__name__)


@dataclass
class PollerStatus:
    running: bool = False
    last_ok_ts: int | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    backoff_until_ts: int | None = None
    last_prices_seen: int = 0
    last_fired: int = 0
    last_sent: int = 0
    ticks: int = 0


class BreakthroughPoller:
    """Single background thread, so ticks for one watch never overlap."""

    def __init__(
        self,
        *,
        service: HistoricalHighService,
        alerts_service: BreakthroughAlertsService,
        poll_seconds: int = 30,
    ) -> None:
        self.service = service
        self.alerts_service = alerts_service
        self.poll_seconds = max(int(poll_seconds), 5)

        self._status = PollerStatus()
        self._status_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._next_run_ts = time.time() + 2.0

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="breakthrough-poller", daemon=True)
        self._thread.start()
        self._set_status(running=True)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=3)
        self._set_status(running=False)

    def get_status(self) -> dict:
        with self._status_lock:
            out = asdict(self._status)
        out["poll_seconds"] = self.poll_seconds
        return out

    def _set_status(self, **kwargs) -> None:
        with self._status_lock:
            for key, value in kwargs.items():
                setattr(self._status, key, value)

    def run_tick(self) -> dict:
        if not self.service.is_initialized:
            return {"ok": False, "reason": "cache not initialized"}

        tick_ms = now_ms()
        live_prices = self.service.source.get_live_prices()
        with session_scope() as session:
            alerts_result = self.alerts_service.run(session, live_prices=live_prices, now_ms=tick_ms)

        with self._status_lock:
            self._status.ticks += 1
            self._status.last_ok_ts = tick_ms
            self._status.last_error = None
            self._status.consecutive_failures = 0
            self._status.backoff_until_ts = None
            self._status.last_prices_seen = len(live_prices)
            self._status.last_fired = int(alerts_result.get("fired") or 0)
            self._status.last_sent = int(alerts_result.get("sent") or 0)

        return {"ok": True, "now_ms": tick_ms, "prices": len(live_prices), "alerts": alerts_result}

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            now = time.time()
            if now >= self._next_run_ts:
                try:
                    result = self.run_tick()
                    logger.debug(
                        "Breakthrough poller tick: prices=%s fired=%s sent=%s",
                        result.get("prices"),
                        (result.get("alerts") or {}).get("fired"),
                        (result.get("alerts") or {}).get("sent"),
                    )
                    self._next_run_ts = time.time() + self.poll_seconds
                except Exception as exc:
                    with self._status_lock:
                        self._status.consecutive_failures += 1
                        fail_count = self._status.consecutive_failures
                    backoff_seconds = min(self.poll_seconds * (2 ** min(fail_count, 5)), 600)
                    self._set_status(
                        last_error=str(exc),
                        backoff_until_ts=int((time.time() + backoff_seconds) * 1000),
                    )
                    logger.error("Breakthrough poller tick failed: %s", exc)
                    self._next_run_ts = time.time() + backoff_seconds

            self._stop_event.wait(1)
