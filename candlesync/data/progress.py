"""Durable per-series sync cursor.

The cursor for a (symbol, timeframe) is the open time of the next bar we
expect to fetch or confirm.  Everything strictly before it has been written
to the candle table at least once.

Invariants
──────────
• The in-memory map is the source of truth while the process runs; the
  ``sync_progress`` table is its durable copy.
• A cursor only moves forward.  ``set()`` with a smaller value is ignored.
• ``set()`` never raises.  A failed write is logged, remembered as dirty,
  and retried by the next write for that series or by ``flush()``.
"""
from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from candlesync.data.database import Database
from candlesync.data.models import SyncProgress
from candlesync.errors import ConfigError
from candlesync.timeframes import floor_to_grid, now_ms, retention_ms

logger = logging.getLogger(__name__)


class ProgressTracker:

    def __init__(
        self,
        db: Database,
        clock: Callable[[], int] = now_ms,
        horizon: Callable[[str], int] = retention_ms,
    ) -> None:
        self._db = db
        self._clock = clock
        self._horizon = horizon
        self._cursors: dict[str, dict[str, int]] = {}
        self._dirty: set[tuple[str, str]] = set()

    def load(self) -> None:
        """Read persisted cursors.  Unreadable state means an empty map."""
        try:
            with self._db.session() as session:
                rows = session.execute(select(SyncProgress)).scalars().all()
                cursors: dict[str, dict[str, int]] = {}
                for r in rows:
                    if not isinstance(r.next_open_time, int):
                        raise ConfigError(
                            f"corrupt cursor for {r.symbol}/{r.timeframe}: {r.next_open_time!r}"
                        )
                    cursors.setdefault(r.symbol, {})[r.timeframe] = r.next_open_time
        except (SQLAlchemyError, ConfigError, ValueError) as exc:
            logger.warning(
                "[Progress] Could not load sync progress (%s) — starting from default horizons",
                exc,
            )
            cursors = {}

        self._cursors = cursors
        self._dirty.clear()
        logger.info(
            "[Progress] Loaded %d cursor(s)",
            sum(len(tfs) for tfs in cursors.values()),
        )

    def default_cursor(self, timeframe: str) -> int:
        return floor_to_grid(self._clock() - self._horizon(timeframe), timeframe)

    def get(self, symbol: str, timeframe: str) -> int:
        stored = self._cursors.get(symbol, {}).get(timeframe)
        if stored is not None:
            return stored
        return self.default_cursor(timeframe)

    def has(self, symbol: str, timeframe: str) -> bool:
        return timeframe in self._cursors.get(symbol, {})

    def set(self, symbol: str, timeframe: str, timestamp: int) -> bool:
        """Advance the cursor and persist it.

        Returns False (and changes nothing) when *timestamp* is behind the
        current cursor.  Call only after the data before *timestamp* is stored.
        """
        current = self._cursors.get(symbol, {}).get(timeframe)
        if current is not None and timestamp < current:
            logger.debug(
                "[Progress] Ignoring backwards move %s/%s %d → %d",
                symbol, timeframe, current, timestamp,
            )
            return False

        self._cursors.setdefault(symbol, {})[timeframe] = timestamp
        self._persist(symbol, timeframe, timestamp)
        return True

    def snapshot(self) -> dict[str, dict[str, int]]:
        return {sym: dict(tfs) for sym, tfs in self._cursors.items()}

    def flush(self) -> None:
        """Retry every cursor whose last write failed."""
        for symbol, timeframe in sorted(self._dirty):
            self._persist(symbol, timeframe, self._cursors[symbol][timeframe])

    # ── Internal ──────────────────────────────────────────────────────────────

    def _persist(self, symbol: str, timeframe: str, timestamp: int) -> None:
        try:
            with self._db.session() as session:
                stmt = sqlite_insert(SyncProgress).values(
                    symbol=symbol,
                    timeframe=timeframe,
                    next_open_time=timestamp,
                    updated_at=self._clock(),
                )
                session.execute(
                    stmt.on_conflict_do_update(
                        index_elements=["symbol", "timeframe"],
                        set_={
                            "next_open_time": stmt.excluded.next_open_time,
                            "updated_at":     stmt.excluded.updated_at,
                        },
                    )
                )
        except SQLAlchemyError as exc:
            self._dirty.add((symbol, timeframe))
            logger.error(
                "[Progress] Failed to persist cursor %s/%s=%d (will retry on next write): %s",
                symbol, timeframe, timestamp, exc,
            )
            return
        self._dirty.discard((symbol, timeframe))
