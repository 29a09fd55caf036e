from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Protocol

import requests

from .models import Candle
from .ratelimit import TokenBucket
from .symbols import QUOTE_ASSET, filter_historical_pairs, parse_symbols

logger = logging.getLogger(__name__)

DEFAULT_FUTURES_BASE_URL = "https://fapi.binance.com"
KLINES_MAX_LIMIT = 1000


class CandleSourceError(RuntimeError):
    pass


@dataclass
class BinanceClientConfig:
    base_url: str = DEFAULT_FUTURES_BASE_URL
    timeout_seconds: float = 10.0
    retry_attempts: int = 1
    retry_backoff_seconds: float = 1.0
    requests_per_second: float = 0.0


class CandleSource(Protocol):
    name: str

    def get_candles(
        self,
        symbol: str,
        interval: str,
        start_time: int,
        end_time: int,
        limit: int = KLINES_MAX_LIMIT,
    ) -> list[Candle]:
        raise NotImplementedError

    def get_live_price(self, symbol: str) -> float:
        raise NotImplementedError

    def get_live_prices(self) -> dict[str, float]:
        raise NotImplementedError

    def list_tracked_symbols(self) -> list[str]:
        raise NotImplementedError


def parse_kline_row(row: list) -> Candle:
    # [openTime, open, high, low, close, volume, closeTime, ...]
    try:
        return Candle(
            open_time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time=int(row[6]),
        )
    except (IndexError, TypeError, ValueError) as exc:
        raise CandleSourceError(f"Malformed kline row: {row!r}") from exc


class BinanceFuturesClient:
    name = "binance-futures"

    def __init__(
        self,
        cfg: BinanceClientConfig,
        *,
        session: requests.Session | None = None,
        limiter: TokenBucket | None = None,
    ) -> None:
        self.cfg = cfg
        self.session = session or requests.Session()
        self.limiter = limiter or TokenBucket(cfg.requests_per_second)

    def _get(self, path: str, params: dict | None = None):
        url = f"{self.cfg.base_url.rstrip('/')}{path}"
        attempts = max(int(self.cfg.retry_attempts), 1)
        delay_base = max(float(self.cfg.retry_backoff_seconds), 0.1)

        last_err: Exception | None = None
        for attempt in range(1, attempts + 1):
            self.limiter.acquire()
            try:
                response = self.session.get(url, params=params, timeout=self.cfg.timeout_seconds)
                if response.status_code >= 300:
                    raise CandleSourceError(f"Binance returned HTTP {response.status_code} for {path}")
                return response.json()
            except (requests.RequestException, ValueError, CandleSourceError) as exc:
                last_err = exc
                if attempts > 1:
                    logger.warning("Binance %s attempt %s/%s failed: %s", path, attempt, attempts, exc)
                if attempt < attempts:
                    time.sleep(delay_base * attempt)

        if isinstance(last_err, CandleSourceError):
            raise last_err
        raise CandleSourceError(f"Binance request {path} failed: {last_err}") from last_err

    def get_candles(
        self,
        symbol: str,
        interval: str,
        start_time: int,
        end_time: int,
        limit: int = KLINES_MAX_LIMIT,
    ) -> list[Candle]:
        payload = self._get(
            "/fapi/v1/klines",
            {
                "symbol": symbol,
                "interval": interval,
                "startTime": int(start_time),
                "endTime": int(end_time),
                "limit": min(max(int(limit), 1), KLINES_MAX_LIMIT),
            },
        )
        if not isinstance(payload, list):
            raise CandleSourceError(f"Unexpected klines payload for {symbol}: {type(payload).__name__}")
        return [parse_kline_row(row) for row in payload]

    def get_live_price(self, symbol: str) -> float:
        payload = self._get("/fapi/v1/ticker/price", {"symbol": symbol})
        try:
            price = float(payload["price"])
        except (KeyError, TypeError, ValueError) as exc:
            raise CandleSourceError(f"Unexpected price payload for {symbol}: {payload!r}") from exc
        if price <= 0:
            raise CandleSourceError(f"Non-positive price for {symbol}: {price}")
        return price

    def get_live_prices(self) -> dict[str, float]:
        payload = self._get("/fapi/v1/ticker/price")
        if not isinstance(payload, list):
            raise CandleSourceError("Unexpected bulk price payload")

        out: dict[str, float] = {}
        for row in payload:
            try:
                symbol = str(row["symbol"]).upper()
                price = float(row["price"])
            except (KeyError, TypeError, ValueError):
                continue
            if symbol and price > 0:
                out[symbol] = price
        return out

    def list_tracked_symbols(self) -> list[str]:
        payload = self._get("/fapi/v1/exchangeInfo")
        rows = (payload or {}).get("symbols") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            raise CandleSourceError("Unexpected exchangeInfo payload")

        all_symbols = [
            str(row.get("symbol") or "").upper()
            for row in rows
            if row.get("status") == "TRADING"
            and row.get("contractType") == "PERPETUAL"
            and row.get("quoteAsset") == QUOTE_ASSET
            and row.get("symbol")
        ]
        filtered = filter_historical_pairs(all_symbols)
        logger.info(
            "Tracked symbols: %s -> %s (removed %s delisted)",
            len(all_symbols),
            len(filtered),
            len(all_symbols) - len(filtered),
        )
        return filtered


class StaticUniverseSource:
    """Wraps a source and pins its universe to an explicit symbol list."""

    def __init__(self, source: CandleSource, symbols: list[str]) -> None:
        self.source = source
        self.symbols = list(symbols)
        self.name = f"{source.name}+static"

    def get_candles(self, symbol, interval, start_time, end_time, limit=KLINES_MAX_LIMIT):
        return self.source.get_candles(symbol, interval, start_time, end_time, limit)

    def get_live_price(self, symbol: str) -> float:
        return self.source.get_live_price(symbol)

    def get_live_prices(self) -> dict[str, float]:
        return self.source.get_live_prices()

    def list_tracked_symbols(self) -> list[str]:
        return list(self.symbols)


def build_candle_source() -> CandleSource:
    cfg = BinanceClientConfig(
        base_url=(os.getenv("BINANCE_FUTURES_BASE_URL") or DEFAULT_FUTURES_BASE_URL).strip(),
        timeout_seconds=float(os.getenv("BINANCE_TIMEOUT_SECONDS", "10")),
        retry_attempts=int(os.getenv("BINANCE_RETRY_ATTEMPTS", "1")),
        retry_backoff_seconds=float(os.getenv("BINANCE_RETRY_BACKOFF_SECONDS", "1.0")),
        requests_per_second=float(os.getenv("BINANCE_REQUESTS_PER_SECOND", "0")),
    )
    source: CandleSource = BinanceFuturesClient(cfg)

    pinned = parse_symbols(os.getenv("TRACKED_SYMBOLS"))
    if pinned:
        logger.info("Tracked universe pinned by TRACKED_SYMBOLS: %s symbols", len(pinned))
        source = StaticUniverseSource(source, pinned)

    logger.info("Candle source selected: %s (%s)", source.name, cfg.base_url)
    return source
