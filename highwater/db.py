from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager

from sqlalchemy import Float, Index, Integer, Text, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import BreakthroughWatchState
from .symbols import normalize_symbol
from .timeframes import cooldown_ms_for_timeframe, parse_timeframe

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class BreakthroughWatch(Base):
    __tablename__ = "breakthrough_watches"
    __table_args__ = (
        Index("idx_watches_enabled", "enabled"),
        Index("idx_watches_symbol_tf", "symbol", "timeframe"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    symbol: Mapped[str | None] = mapped_column(Text, nullable=True)
    timeframe: Mapped[str] = mapped_column(Text, nullable=False)
    watch_all_symbols: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_break_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    cooldown_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    last_check_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_triggered_ts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    triggered_symbols: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    enabled: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_ts: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    def get_triggered_symbols(self) -> set[str]:
        try:
            raw = json.loads(self.triggered_symbols or "[]")
        except json.JSONDecodeError:
            return set()
        if not isinstance(raw, list):
            return set()
        return {str(symbol) for symbol in raw if symbol}

    def set_triggered_symbols(self, symbols: set[str]) -> None:
        self.triggered_symbols = json.dumps(sorted(symbols))

    def to_state(self) -> BreakthroughWatchState:
        return BreakthroughWatchState(
            timeframe=self.timeframe,
            watch_all_symbols=bool(self.watch_all_symbols),
            last_check_price=self.last_check_price,
            last_triggered_time=self.last_triggered_ts,
            triggered_symbols=self.get_triggered_symbols(),
        )

    def apply_state(self, state: BreakthroughWatchState) -> None:
        self.last_check_price = state.last_check_price
        self.last_triggered_ts = state.last_triggered_time
        self.set_triggered_symbols(set(state.triggered_symbols))

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "label": self.label,
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "watch_all_symbols": bool(self.watch_all_symbols),
            "min_break_percentage": self.min_break_percentage,
            "cooldown_ms": int(self.cooldown_ms),
            "last_check_price": self.last_check_price,
            "last_triggered_ts": self.last_triggered_ts,
            "triggered_symbols": sorted(self.get_triggered_symbols()),
            "enabled": bool(self.enabled),
            "created_ts": int(self.created_ts),
        }


class AlertSent(Base):
    __tablename__ = "alerts_sent"
    __table_args__ = (Index("idx_alerts_watch_symbol_ts", "watch_id", "symbol", "ts"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    alert_type: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    watch_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)


_ENGINE = None
SessionLocal = None


def get_default_db_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///highwater.db")


def init_db(db_url: str | None = None, *, reset: bool = False) -> None:
    global _ENGINE, SessionLocal
    if _ENGINE is not None and not reset:
        return
    if _ENGINE is not None:
        SessionLocal.remove()
        _ENGINE.dispose()

    url = db_url or get_default_db_url()
    engine_kwargs: dict = {"future": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool

    _ENGINE = create_engine(url, **engine_kwargs)
    SessionLocal = scoped_session(
        sessionmaker(bind=_ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)
    )
    Base.metadata.create_all(bind=_ENGINE)
    logger.debug("Database ready: %s", url)


def get_session():
    if SessionLocal is None:
        init_db()
    return SessionLocal()


@contextmanager
def session_scope():
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def add_breakthrough_watch(
    session,
    *,
    timeframe: str,
    symbol: str | None,
    created_ts: int,
    min_break_percentage: float | None = None,
    label: str | None = None,
) -> BreakthroughWatch:
    tf = parse_timeframe(timeframe)
    watch_all = symbol is None or str(symbol).strip().lower() == "all"
    normalized = None if watch_all else normalize_symbol(symbol)
    if not watch_all and not normalized:
        raise ValueError("symbol is required")

    watch = BreakthroughWatch(
        label=(str(label or "").strip() or f"{normalized or 'ALL'} {tf}"),
        symbol=normalized,
        timeframe=tf,
        watch_all_symbols=1 if watch_all else 0,
        min_break_percentage=(float(min_break_percentage) if min_break_percentage is not None else None),
        cooldown_ms=cooldown_ms_for_timeframe(tf),
        triggered_symbols="[]",
        enabled=1,
        created_ts=int(created_ts),
    )
    session.add(watch)
    session.flush()
    return watch


def get_breakthrough_watches(session, *, enabled_only: bool = False, limit: int = 500) -> list[BreakthroughWatch]:
    bounded_limit = min(max(int(limit), 1), 5000)
    query = select(BreakthroughWatch)
    if enabled_only:
        query = query.where(BreakthroughWatch.enabled == 1)
    return (
        session.execute(query.order_by(BreakthroughWatch.id.asc()).limit(bounded_limit))
        .scalars()
        .all()
    )


def get_breakthrough_watch(session, *, watch_id: int) -> BreakthroughWatch | None:
    return session.get(BreakthroughWatch, int(watch_id))


def remove_breakthrough_watch(session, *, watch_id: int) -> int:
    result = session.execute(delete(BreakthroughWatch).where(BreakthroughWatch.id == int(watch_id)))
    return int(result.rowcount or 0)


def set_watch_enabled(session, *, watch_id: int, enabled: bool) -> bool:
    watch = get_breakthrough_watch(session, watch_id=watch_id)
    if watch is None:
        return False
    watch.enabled = 1 if enabled else 0
    session.add(watch)
    return True


def insert_alerts_sent(session, rows: list[dict]) -> int:
    if not rows:
        return 0
    session.add_all([AlertSent(**row) for row in rows])
    session.flush()
    return len(rows)


def get_recent_alerts(session, *, limit: int = 50) -> list[AlertSent]:
    bounded_limit = min(max(int(limit), 1), 1000)
    return (
        session.execute(select(AlertSent).order_by(AlertSent.ts.desc(), AlertSent.id.desc()).limit(bounded_limit))
        .scalars()
        .all()
    )
