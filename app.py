from __future__ import annotations

import logging
import os
import threading

from dotenv import load_dotenv
from flask import Flask, jsonify, request

load_dotenv()

from highwater.alerts import AlertsConfig, BreakthroughAlertsService  # noqa: E402
from highwater.cache import HighWaterMarkCache  # noqa: E402
from highwater.collector import build_collector_config  # noqa: E402
from highwater.db import (  # noqa: E402
    add_breakthrough_watch,
    get_breakthrough_watches,
    get_recent_alerts,
    init_db,
    remove_breakthrough_watch,
    session_scope,
)
from highwater.format import human_age, now_ms  # noqa: E402
from highwater.market_data import CandleSourceError, build_candle_source  # noqa: E402
from highwater.poller import BreakthroughPoller  # noqa: E402
from highwater.service import HistoricalHighService  # noqa: E402
from highwater.symbols import parse_symbols  # noqa: E402
from highwater.timeframes import parse_timeframe  # noqa: E402


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return raw.strip().lower() in {"1", "true", "yes", "on"}


LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
DEBUG = env_bool("FLASK_DEBUG", False)
POLL_SECONDS = env_int("POLL_SECONDS", 30)
POLLER_ENABLED = env_bool("POLLER_ENABLED", True)
ALERTS_ENABLED = env_bool("ALERTS_ENABLED", True)
ALERTS_MIN_BREAK_PERCENTAGE = env_float("ALERTS_MIN_BREAK_PERCENTAGE", 0.1)
ALERTS_MAX_PER_TICK = env_int("ALERTS_MAX_PER_TICK", 20)
RANKING_MAX_LIMIT = 500

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger("highwater")

init_db()
source = build_candle_source()
service = HistoricalHighService(source, HighWaterMarkCache(), collector_cfg=build_collector_config())
alerts_service = BreakthroughAlertsService(
    AlertsConfig(
        enabled=ALERTS_ENABLED,
        min_break_percentage=ALERTS_MIN_BREAK_PERCENTAGE,
        max_alerts_per_tick=ALERTS_MAX_PER_TICK,
    ),
    service.detector,
)
poller = BreakthroughPoller(service=service, alerts_service=alerts_service, poll_seconds=POLL_SECONDS)

app = Flask(__name__)
_background_started = False
_background_lock = threading.Lock()
_init_error: str | None = None


def _initialize_cache() -> None:
    global _init_error
    try:
        result = service.initialize()
        _init_error = None
        logger.info("Historical high cache ready: %s", result)
    except Exception as exc:
        _init_error = str(exc)
        logger.error("Historical high cache initialization failed: %s", exc)


def start_background_if_needed() -> None:
    global _background_started
    with _background_lock:
        if _background_started:
            return
        threading.Thread(target=_initialize_cache, name="cache-init", daemon=True).start()
        if POLLER_ENABLED:
            poller.start()
        _background_started = True
    logger.info("highwater background workers started (poller=%s)", POLLER_ENABLED)


@app.before_request
def _ensure_background_workers() -> None:
    start_background_if_needed()


def _timeframe_arg(default: str = "all") -> str:
    return parse_timeframe(request.args.get("tf") or default)


def _bad_request(message: str):
    return jsonify({"ok": False, "error": message}), 400


def _not_ready():
    return jsonify({"ok": False, "error": "cache not initialized", "init_error": _init_error}), 503


@app.get("/api/status")
def api_status() -> object:
    cache_status = service.get_cache_status()
    cache_status["average_age_text"] = human_age(cache_status["average_age"]) if cache_status["total_entries"] else "-"
    return jsonify(
        {
            "provider": str(getattr(source, "name", "unknown")),
            "stats": service.get_stats(),
            "cache_status": cache_status,
            "init_error": _init_error,
            "poller": poller.get_status(),
        }
    )


@app.get("/api/timeframes")
def api_timeframes() -> object:
    return jsonify(service.get_supported_timeframes())


@app.get("/api/high/<symbol>")
def api_high(symbol: str) -> object:
    try:
        timeframe = _timeframe_arg()
    except ValueError as exc:
        return _bad_request(str(exc))
    if not service.is_initialized:
        return _not_ready()

    record = service.query_historical_high(symbol, timeframe)
    if record is None:
        return jsonify({"ok": False, "error": f"no cached data for {symbol} ({timeframe})"}), 404
    return jsonify({"ok": True, "record": record.to_dict()})


@app.get("/api/ranking")
def api_ranking() -> object:
    try:
        timeframe = _timeframe_arg("1w")
        limit = min(max(int(request.args.get("limit", 20)), 1), RANKING_MAX_LIMIT)
    except ValueError as exc:
        return _bad_request(str(exc))
    if not service.is_initialized:
        return _not_ready()

    entries = service.get_ranking_by_proximity_to_high(timeframe, limit)
    return jsonify({"ok": True, "timeframe": timeframe, "entries": [entry.to_dict() for entry in entries]})


@app.get("/api/breakthroughs")
def api_breakthroughs() -> object:
    try:
        timeframe = _timeframe_arg("1w")
        min_pct = float(request.args.get("min_pct", ALERTS_MIN_BREAK_PERCENTAGE))
    except ValueError as exc:
        return _bad_request(str(exc))
    if not service.is_initialized:
        return _not_ready()

    try:
        live_prices = source.get_live_prices()
    except CandleSourceError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 502

    results = service.check_multi_breakthrough(timeframe, min_pct, live_prices)
    return jsonify({"ok": True, "timeframe": timeframe, "results": [result.to_dict() for result in results]})


@app.post("/api/recollect")
def api_recollect() -> object:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _bad_request("json body required")
    raw_symbols = payload.get("symbols")
    if isinstance(raw_symbols, list):
        symbols = parse_symbols(",".join(str(symbol) for symbol in raw_symbols))
    else:
        symbols = parse_symbols(str(raw_symbols or ""))
    if not symbols:
        return _bad_request("symbols is required")
    if not service.is_initialized:
        return _not_ready()

    return jsonify({"ok": True, **service.recollect_symbols(symbols)})


@app.post("/api/cache/refresh")
def api_cache_refresh() -> object:
    payload = request.get_json(silent=True) or {}
    try:
        hours = float(payload.get("hours", 24))
    except (TypeError, ValueError):
        return _bad_request("hours must be a number")
    if not service.is_initialized:
        return _not_ready()
    return jsonify(service.trigger_manual_update(hours_threshold=hours))


@app.get("/api/watches")
def api_watches() -> object:
    with session_scope() as session:
        watches = [watch.to_dict() for watch in get_breakthrough_watches(session)]
        alerts = [
            {"ts": row.ts, "alert_type": row.alert_type, "watch_id": row.watch_id, "symbol": row.symbol}
            for row in get_recent_alerts(session, limit=20)
        ]
    return jsonify({"ok": True, "watches": watches, "recent_alerts": alerts})


@app.post("/api/watches")
def api_add_watch() -> object:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _bad_request("json body required")

    min_pct = payload.get("min_break_percentage")
    try:
        with session_scope() as session:
            watch = add_breakthrough_watch(
                session,
                timeframe=str(payload.get("timeframe") or ""),
                symbol=payload.get("symbol"),
                created_ts=now_ms(),
                min_break_percentage=(float(min_pct) if min_pct is not None else None),
                label=payload.get("label"),
            )
            out = watch.to_dict()
    except (TypeError, ValueError) as exc:
        return _bad_request(str(exc))
    return jsonify({"ok": True, "watch": out}), 201


@app.delete("/api/watches/<int:watch_id>")
def api_remove_watch(watch_id: int) -> object:
    with session_scope() as session:
        removed = remove_breakthrough_watch(session, watch_id=watch_id)
    if not removed:
        return jsonify({"ok": False, "error": "watch not found"}), 404
    return jsonify({"ok": True})


if __name__ == "__main__":
    start_background_if_needed()
    port = int(os.getenv("PORT", 5003))
    logger.info("Starting highwater flask runtime on port=%s", port)
    app.run(host="0.0.0.0", port=port, debug=DEBUG)
