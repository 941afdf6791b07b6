"""Candle store — the durable, idempotent OHLCV time-series.

Architecture position
─────────────────────

  ┌─────────────────────────────────────────────────────────┐
  │  Backfiller  │  LiveIngestor  │  Read API  │  Engine    │
  └──────────────┴───────┬────────┴────────────┴────────────┘
                         │  uses
  ┌──────────────────────▼──────────────────────────────────┐
  │                CandleStore  (this module)               │
  │  • upsert() / upsert_many() – last-write-wins by key    │
  │  • query_range()            – ascending, paged          │
  │  • latest_timestamp()       – MAX(open_time)            │
  │  • timestamps()             – key-only scan for gaps    │
  └──────────────────────┬──────────────────────────────────┘
                         │  queries
  ┌──────────────────────▼──────────────────────────────────┐
  │          SQLite candle table (WITHOUT ROWID)            │
  │  Clustered B-tree on (symbol, timeframe, open_time)     │
  └─────────────────────────────────────────────────────────┘

Upsert strategy
───────────────
INSERT … ON CONFLICT (symbol, timeframe, open_time) DO UPDATE rewrites the
value columns with the incoming row.  Re-applying identical data is a no-op
in effect; applying different data for the same key leaves exactly one row
holding the values of the most recent write.

Batching
────────
SQLite's default SQLITE_MAX_VARIABLE_NUMBER is 999 on older builds.  With 9
bind variables per row the safe ceiling is 111; we use 100.

Error model
───────────
Every SQLAlchemy failure surfaces as ``PersistenceError`` so callers can
apply the "no progress, no broadcast" rule without knowing about the ORM.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from candlesync.data.database import Database
from candlesync.data.models import CandleRow
from candlesync.errors import PersistenceError
from candlesync.timeframes import now_ms

logger = logging.getLogger(__name__)

# Hard ceiling on rows returned by one query_range() call.
PAGE_BOUND = 1000

_INSERT_BATCH_SIZE = 100


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar.  ``timestamp`` is the open time in epoch ms."""

    symbol:    str
    timeframe: str
    timestamp: int
    open:      float
    high:      float
    low:       float
    close:     float
    volume:    float

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.symbol, self.timeframe, self.timestamp)

    def as_row(self) -> list[float]:
        """Wire form used by broadcasts and the read API: [ts, o, h, l, c, v]."""
        return [self.timestamp, self.open, self.high, self.low, self.close, self.volume]


@dataclass(frozen=True)
class CandlePage:
    candles:     list[Candle]
    next_cursor: int | None   # pass as ``start`` to continue; None when exhausted


def _to_candle(row: CandleRow) -> Candle:
    return Candle(
        symbol=row.symbol,
        timeframe=row.timeframe,
        timestamp=row.open_time,
        open=row.open,
        high=row.high,
        low=row.low,
        close=row.close,
        volume=row.volume,
    )


class CandleStore:
    """DB-backed candle storage.  Holds no in-memory cache."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # ── Writes ────────────────────────────────────────────────────────────────

    def upsert(self, candle: Candle) -> None:
        self.upsert_many([candle])

    def upsert_many(self, candles: Iterable[Candle]) -> int:
        """Insert-or-update every candle in one transaction.  Returns row count.

        Raises
        ------
        PersistenceError
            When the transaction fails; nothing from the call is committed.
        """
        stamp = now_ms()
        rows = [
            {
                "symbol":     c.symbol,
                "timeframe":  c.timeframe,
                "open_time":  c.timestamp,
                "open":       c.open,
                "high":       c.high,
                "low":        c.low,
                "close":      c.close,
                "volume":     c.volume,
                "updated_at": stamp,
            }
            for c in candles
        ]
        if not rows:
            return 0

        try:
            with self._db.session() as session:
                for i in range(0, len(rows), _INSERT_BATCH_SIZE):
                    batch = rows[i : i + _INSERT_BATCH_SIZE]
                    stmt = sqlite_insert(CandleRow).values(batch)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["symbol", "timeframe", "open_time"],
                        set_={
                            "open":       stmt.excluded.open,
                            "high":       stmt.excluded.high,
                            "low":        stmt.excluded.low,
                            "close":      stmt.excluded.close,
                            "volume":     stmt.excluded.volume,
                            "updated_at": stmt.excluded.updated_at,
                        },
                    )
                    session.execute(stmt)
        except SQLAlchemyError as exc:
            first = rows[0]
            raise PersistenceError(
                f"upsert of {len(rows)} candle(s) {first['symbol']}/{first['timeframe']} "
                f"from {first['open_time']} failed: {exc}"
            ) from exc
        return len(rows)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def query_range(
        self,
        symbol: str,
        timeframe: str,
        start: int,
        end: int,
        limit: int = PAGE_BOUND,
    ) -> CandlePage:
        """Return candles with ``start <= open_time <= end`` in ascending order.

        At most ``min(limit, PAGE_BOUND)`` rows come back.  When more rows
        remain in the interval, ``next_cursor`` is the open time to pass as
        *start* for the following page.
        """
        if limit <= 0 or start > end:
            return CandlePage(candles=[], next_cursor=None)
        take = min(limit, PAGE_BOUND)

        try:
            with self._db.session() as session:
                rows = session.execute(
                    select(CandleRow)
                    .where(CandleRow.symbol    == symbol)
                    .where(CandleRow.timeframe == timeframe)
                    .where(CandleRow.open_time >= start)
                    .where(CandleRow.open_time <= end)
                    .order_by(CandleRow.open_time.asc())
                    .limit(take + 1)
                ).scalars().all()
                # Materialise while the session is open; ORM objects expire on close.
                candles = [_to_candle(r) for r in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"query_range {symbol}/{timeframe} failed: {exc}") from exc

        if len(candles) > take:
            return CandlePage(candles=candles[:take], next_cursor=candles[take].timestamp)
        return CandlePage(candles=candles, next_cursor=None)

    def latest_timestamp(self, symbol: str, timeframe: str) -> int | None:
        """MAX(open_time) for the partition, or None when it is empty."""
        try:
            with self._db.session() as session:
                return session.execute(
                    select(func.max(CandleRow.open_time))
                    .where(CandleRow.symbol    == symbol)
                    .where(CandleRow.timeframe == timeframe)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"latest_timestamp {symbol}/{timeframe} failed: {exc}") from exc

    def timestamps(self, symbol: str, timeframe: str, start: int, end: int) -> list[int]:
        """Stored open times in ``[start, end]``, ascending.  Key columns only."""
        try:
            with self._db.session() as session:
                return list(
                    session.execute(
                        select(CandleRow.open_time)
                        .where(CandleRow.symbol    == symbol)
                        .where(CandleRow.timeframe == timeframe)
                        .where(CandleRow.open_time >= start)
                        .where(CandleRow.open_time <= end)
                        .order_by(CandleRow.open_time.asc())
                    ).scalars().all()
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"timestamps {symbol}/{timeframe} failed: {exc}") from exc

    def count(self, symbol: str, timeframe: str) -> int:
        try:
            with self._db.session() as session:
                return session.execute(
                    select(func.count())
                    .select_from(CandleRow)
                    .where(CandleRow.symbol    == symbol)
                    .where(CandleRow.timeframe == timeframe)
                ).scalar_one()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"count {symbol}/{timeframe} failed: {exc}") from exc
