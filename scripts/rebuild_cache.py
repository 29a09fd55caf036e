from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from highwater.cache import HighWaterMarkCache  # noqa: E402
from highwater.collector import build_collector_config  # noqa: E402
from highwater.market_data import build_candle_source  # noqa: E402
from highwater.service import HistoricalHighService  # noqa: E402
from highwater.symbols import parse_symbols  # noqa: E402


def main() -> int:
    load_dotenv()
    ap = argparse.ArgumentParser(description="Discard the snapshot and run a full historical high collection.")
    ap.add_argument("--snapshot", default="", help="Snapshot path (default: $HIGHWATER_DATA_DIR/historical-high-cache.json)")
    ap.add_argument("--symbols", default="", help="Optional comma-separated universe instead of the exchange list")
    args = ap.parse_args()

    logging.basicConfig(
        level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )

    source = build_candle_source()
    cache = HighWaterMarkCache(args.snapshot or None)
    service = HistoricalHighService(source, cache, collector_cfg=build_collector_config())

    symbols = parse_symbols(args.symbols)
    if symbols:
        result = service.pipeline.collect(symbols, replace=True)
        summary = result.to_dict()
    else:
        summary = service.initialize(force_rebuild=True)

    stats = service.get_stats()
    print(
        f"Rebuilt cache: entries={stats['cache_size']} symbols={stats['symbol_count']} "
        f"failed={len(summary.get('failed') or [])}"
    )
    return 0 if stats["cache_size"] > 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
