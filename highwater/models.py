from __future__ import annotations

from dataclasses import asdict, dataclass, field


def cache_key(symbol: str, timeframe: str) -> str:
    return f"{symbol}:{timeframe}"


def split_cache_key(key: str) -> tuple[str, str]:
    symbol, _, timeframe = str(key).rpartition(":")
    return symbol, timeframe


def distance_from_high(current_price: float, high_price: float) -> tuple[float, float]:
    """Return (distance_percent, needed_gain_percent) for a price against its high."""
    if high_price <= 0:
        return 0.0, 0.0
    distance = (float(current_price) - float(high_price)) / float(high_price) * 100
    needed_gain = 0.0 if distance >= 0 else abs(distance)
    return float(distance), float(needed_gain)


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int


@dataclass
class HighWaterMarkRecord:
    symbol: str
    timeframe: str
    current_price: float
    high_price: float
    high_timestamp: int
    distance_percent: float
    needed_gain_percent: float
    last_updated: int

    @classmethod
    def build(
        cls,
        *,
        symbol: str,
        timeframe: str,
        current_price: float,
        high_price: float,
        high_timestamp: int,
        now_ms: int,
    ) -> HighWaterMarkRecord:
        distance, needed_gain = distance_from_high(current_price, high_price)
        return cls(
            symbol=symbol,
            timeframe=timeframe,
            current_price=float(current_price),
            high_price=float(high_price),
            high_timestamp=int(high_timestamp),
            distance_percent=distance,
            needed_gain_percent=needed_gain,
            last_updated=int(now_ms),
        )

    @property
    def key(self) -> str:
        return cache_key(self.symbol, self.timeframe)

    # Snapshot files keep camelCase field names.
    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "currentPrice": self.current_price,
            "highPrice": self.high_price,
            "highTimestamp": self.high_timestamp,
            "distancePercent": self.distance_percent,
            "neededGainPercent": self.needed_gain_percent,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> HighWaterMarkRecord:
        return cls(
            symbol=str(raw["symbol"]),
            timeframe=str(raw["timeframe"]),
            current_price=float(raw["currentPrice"]),
            high_price=float(raw["highPrice"]),
            high_timestamp=int(raw["highTimestamp"]),
            distance_percent=float(raw["distancePercent"]),
            needed_gain_percent=float(raw["neededGainPercent"]),
            last_updated=int(raw["lastUpdated"]),
        )


@dataclass
class RankingEntry:
    symbol: str
    current_price: float
    high_price: float
    high_timestamp: int
    distance_percent: float
    needed_gain_percent: float
    last_updated: int

    @classmethod
    def from_record(cls, record: HighWaterMarkRecord) -> RankingEntry:
        return cls(
            symbol=record.symbol,
            current_price=record.current_price,
            high_price=record.high_price,
            high_timestamp=record.high_timestamp,
            distance_percent=record.distance_percent,
            needed_gain_percent=record.needed_gain_percent,
            last_updated=record.last_updated,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BreakthroughCheckResult:
    symbol: str
    current_price: float
    timeframe_high: float
    high_timestamp: int
    is_breakthrough: bool
    break_amount: float
    break_percentage: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BreakthroughWatchState:
    timeframe: str
    watch_all_symbols: bool = False
    last_check_price: float | None = None
    last_triggered_time: int | None = None
    triggered_symbols: set[str] = field(default_factory=set)
