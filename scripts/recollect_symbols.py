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
    ap = argparse.ArgumentParser(description="Re-collect historical highs for a few symbols and merge them into the snapshot.")
    ap.add_argument("symbols", nargs="+", help="Symbols, e.g. BTC ETHUSDT")
    ap.add_argument("--snapshot", default="", help="Snapshot path (default: $HIGHWATER_DATA_DIR/historical-high-cache.json)")
    args = ap.parse_args()

    logging.basicConfig(
        level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )

    symbols = parse_symbols(",".join(args.symbols))
    if not symbols:
        raise SystemExit("No symbols given.")

    service = HistoricalHighService(
        build_candle_source(),
        HighWaterMarkCache(args.snapshot or None),
        collector_cfg=build_collector_config(),
    )
    service.initialize()
    result = service.recollect_symbols(symbols)

    print(f"Recollected: {', '.join(result['success']) or '-'}")
    if result["failed"]:
        print(f"Failed: {', '.join(result['failed'])}")
    return 0 if not result["failed"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
