from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterable

from .format import now_ms as _now_ms
from .models import HighWaterMarkRecord, cache_key, split_cache_key
from .symbols import normalize_symbol
from .timeframes import TIMEFRAMES

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "2.0"
SNAPSHOT_FILENAME = "historical-high-cache.json"
SNAPSHOT_MAX_AGE_MS = 7 * 24 * 3600 * 1000
HEALTHY_AVERAGE_AGE_MS = 24 * 3600 * 1000


def default_snapshot_path() -> Path:
    return Path(os.getenv("HIGHWATER_DATA_DIR", "data")) / SNAPSHOT_FILENAME


class HighWaterMarkCache:
    """In-memory table of high-water marks backed by a whole-file JSON snapshot.

    Memory is authoritative; the snapshot only exists to skip a full
    collection on restart. Staleness is judged for the snapshot as a whole.
    """

    def __init__(
        self,
        snapshot_path: str | Path | None = None,
        *,
        max_age_ms: int = SNAPSHOT_MAX_AGE_MS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.snapshot_path = Path(snapshot_path) if snapshot_path is not None else default_snapshot_path()
        self.max_age_ms = int(max_age_ms)
        self._clock = clock
        self._records: dict[str, HighWaterMarkRecord] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: str) -> bool:
        return key in self._records

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._records.keys())

    def records(self) -> list[HighWaterMarkRecord]:
        with self._lock:
            return list(self._records.values())

    def symbols(self) -> set[str]:
        with self._lock:
            return {split_cache_key(key)[0] for key in self._records}

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def query(self, symbol: str, timeframe: str) -> HighWaterMarkRecord | None:
        normalized = normalize_symbol(symbol)
        if not normalized:
            return None
        return self._records.get(cache_key(normalized, str(timeframe or "").strip().lower()))

    def records_for_timeframe(self, timeframe: str) -> list[HighWaterMarkRecord]:
        suffix = f":{str(timeframe or '').strip().lower()}"
        with self._lock:
            return [record for key, record in self._records.items() if key.endswith(suffix)]

    def records_for_symbol(self, symbol: str) -> list[HighWaterMarkRecord]:
        normalized = normalize_symbol(symbol)
        with self._lock:
            return [
                self._records[cache_key(normalized, timeframe)]
                for timeframe in TIMEFRAMES
                if cache_key(normalized, timeframe) in self._records
            ]

    def upsert(self, record: HighWaterMarkRecord) -> None:
        with self._lock:
            self._records[record.key] = record

    def upsert_many(self, records: Iterable[HighWaterMarkRecord]) -> int:
        count = 0
        with self._lock:
            for record in records:
                self._records[record.key] = record
                count += 1
        return count

    def load(self) -> bool:
        """Load the snapshot; False means the caller has to run a full collection."""
        path = self.snapshot_path
        if not path.exists():
            logger.debug("No snapshot at %s", path)
            return False

        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Snapshot %s unreadable, will rebuild: %s", path, exc)
            return False

        if not isinstance(data, dict):
            logger.warning("Snapshot %s has unexpected shape, will rebuild", path)
            return False
        if data.get("version") != SNAPSHOT_VERSION or "timestamp" not in data or not isinstance(data.get("cache"), dict):
            logger.warning("Snapshot %s format invalid (version=%s), will rebuild", path, data.get("version"))
            return False

        try:
            snapshot_ts = int(data["timestamp"])
        except (TypeError, ValueError):
            logger.warning("Snapshot %s has invalid timestamp, will rebuild", path)
            return False

        age_ms = self._clock() - snapshot_ts
        if age_ms > self.max_age_ms:
            logger.info("Snapshot %s expired (age=%.1f days), will rebuild", path, age_ms / 86_400_000)
            return False

        try:
            loaded = {str(key): HighWaterMarkRecord.from_dict(raw) for key, raw in data["cache"].items()}
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Snapshot %s has malformed records, will rebuild: %s", path, exc)
            return False

        with self._lock:
            self._records = loaded
        logger.info("Loaded %s entries from snapshot (age=%.1f days)", len(loaded), age_ms / 86_400_000)
        return True

    def persist(self) -> bool:
        """Rewrite the whole snapshot. Failures are logged, never raised."""
        path = self.snapshot_path
        with self._lock:
            payload = {
                "version": SNAPSHOT_VERSION,
                "timestamp": int(self._clock()),
                "cache": {key: record.to_dict() for key, record in self._records.items()},
            }

        tmp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".snapshot-", suffix=".json", dir=str(path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_name, path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to save snapshot %s: %s", path, exc)
            return False
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

        logger.info("Snapshot saved: %s entries -> %s", len(payload["cache"]), path)
        return True

    def status(self) -> dict:
        with self._lock:
            updated = [record.last_updated for record in self._records.values()]
        if not updated:
            return {
                "total_entries": 0,
                "oldest_update": 0,
                "newest_update": 0,
                "average_age": 0,
                "cache_healthy": False,
            }

        now = self._clock()
        average_age = now - (sum(updated) / len(updated))
        return {
            "total_entries": len(updated),
            "oldest_update": min(updated),
            "newest_update": max(updated),
            "average_age": average_age,
            "cache_healthy": average_age < HEALTHY_AVERAGE_AGE_MS,
        }
