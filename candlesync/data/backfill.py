"""Historical backfill of one gap.

Algorithm overview
──────────────────
                 ┌─────────────────────────────────────────┐
                 │  Backfiller.fill(symbol, tf, gap)       │
                 └──────────────────┬──────────────────────┘
                                    │
                 ┌──────────────────▼──────────────────────┐
                 │  1. cursor = max(gap.start, progress)   │
                 │     (repair pass: cursor = gap.start)   │
                 └──────────────────┬──────────────────────┘
                                    │
              ┌─────────────────────▼───────────────────────────┐
              │  2. while cursor <= gap.end:                    │
              │       a. fetch min(page, (end-cursor)/d+1) bars │
              │       b. drop trailing bar if ts + d > now      │
              │       c. empty page → stop                      │
              │       d. upsert page under series lock          │
              │       e. cursor = last + d, persist progress    │
              │       f. sleep page_delay                       │
              └─────────────────────┬───────────────────────────┘
                                    │
                 ┌──────────────────▼──────────────────────┐
                 │  3. BackfillResult(filled/empty/aborted)│
                 └─────────────────────────────────────────┘

Failure handling
────────────────
• TransientFetchError  – the client already retried; abort this gap.  The
                         persisted cursor makes the next pass resume here.
• MalformedPageError   – log and abort this gap; re-attempted on next scan.
• PersistenceError     – abort without advancing progress.

None of these propagate out of ``fill()``.  Progress is only ever advanced
after the page that justifies it has been committed.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from candlesync.data.binance_client import MAX_PAGE_SIZE, HistoricalSource
from candlesync.data.candle_store import Candle, CandleStore
from candlesync.data.gaps import GapInterval
from candlesync.data.progress import ProgressTracker
from candlesync.errors import MalformedPageError, PersistenceError, TransientFetchError
from candlesync.locks import SeriesLocks
from candlesync.timeframes import ms_to_iso, now_ms, timeframe_to_ms

logger = logging.getLogger(__name__)


class BackfillStatus(str, Enum):
    FILLED  = "filled"
    EMPTY   = "empty"
    ABORTED = "aborted"


@dataclass
class BackfillResult:
    symbol:    str
    timeframe: str
    pages:     int
    stored:    int
    cursor:    int
    status:    BackfillStatus
    error:     str | None = None


# ── Row parsing ───────────────────────────────────────────────────────────────

def parse_history_row(symbol: str, timeframe: str, row: Any) -> Candle:
    """``[openTime, o, h, l, c, v, …]`` → Candle.  Extra columns are ignored."""
    if not isinstance(row, (list, tuple)) or len(row) < 6:
        raise MalformedPageError(f"kline row has unexpected shape: {row!r:.120}")
    try:
        ts = int(row[0])
        o, h, l, c, v = (float(x) for x in row[1:6])
    except (TypeError, ValueError) as exc:
        raise MalformedPageError(f"kline row has non-numeric field: {row!r:.120}") from exc
    if not all(math.isfinite(x) for x in (o, h, l, c, v)):
        raise MalformedPageError(f"kline row has non-finite value: {row!r:.120}")
    return Candle(symbol, timeframe, ts, o, h, l, c, v)


def parse_history_page(symbol: str, timeframe: str, page: Any) -> list[Candle]:
    if not isinstance(page, (list, tuple)):
        raise MalformedPageError(f"kline page is {type(page).__name__}, expected a list")
    return [parse_history_row(symbol, timeframe, row) for row in page]


# ── Backfiller ────────────────────────────────────────────────────────────────

class Backfiller:

    def __init__(
        self,
        source: HistoricalSource,
        store: CandleStore,
        tracker: ProgressTracker,
        locks: SeriesLocks,
        *,
        page_size: int = MAX_PAGE_SIZE,
        page_delay: float = 0.3,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._source = source
        self._store = store
        self._tracker = tracker
        self._locks = locks
        self._page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        self._page_delay = page_delay
        self._clock = clock
        self._sleep = sleep

    async def fill(
        self,
        symbol: str,
        timeframe: str,
        gap: GapInterval,
        *,
        respect_cursor: bool = True,
    ) -> BackfillResult:
        """Fetch and store every available bar in *gap*.

        With *respect_cursor* the fill starts at the persisted cursor when
        that is later than ``gap.start``, so nothing below it is re-fetched.
        """
        d = timeframe_to_ms(timeframe)
        cursor = max(gap.start, self._tracker.get(symbol, timeframe)) if respect_cursor else gap.start

        pages = 0
        stored = 0
        status = BackfillStatus.EMPTY
        error: str | None = None

        if cursor > gap.end:
            logger.debug(
                "[Backfill] %s/%s gap %s → %s already below cursor — skipping",
                symbol, timeframe, ms_to_iso(gap.start), ms_to_iso(gap.end),
            )
            return BackfillResult(symbol, timeframe, 0, 0, cursor, BackfillStatus.FILLED)

        logger.info(
            "[Backfill] %s/%s filling %s → %s from %s",
            symbol, timeframe, ms_to_iso(gap.start), ms_to_iso(gap.end), ms_to_iso(cursor),
        )

        while cursor <= gap.end:
            limit = min(self._page_size, (gap.end - cursor) // d + 1)
            try:
                raw = await self._source.fetch_ohlcv(symbol, timeframe, cursor, limit)
                candles = parse_history_page(symbol, timeframe, raw)
            except TransientFetchError as exc:
                status, error = BackfillStatus.ABORTED, str(exc)
                logger.warning(
                    "[Backfill] %s/%s fetch failed at %s — resumable from cursor: %s",
                    symbol, timeframe, ms_to_iso(cursor), exc,
                )
                break
            except MalformedPageError as exc:
                status, error = BackfillStatus.ABORTED, str(exc)
                logger.warning(
                    "[Backfill] %s/%s malformed page at %s — gap left for next scan: %s",
                    symbol, timeframe, ms_to_iso(cursor), exc,
                )
                break
            pages += 1

            if candles and candles[-1].timestamp + d > self._clock():
                logger.debug(
                    "[Backfill] Dropping forming bar %s/%s @ %s",
                    symbol, timeframe, ms_to_iso(candles[-1].timestamp),
                )
                candles.pop()

            if not candles:
                logger.debug(
                    "[Backfill] %s/%s empty page at %s — stopping",
                    symbol, timeframe, ms_to_iso(cursor),
                )
                break

            next_cursor = candles[-1].timestamp + d
            try:
                async with self._locks.for_series(symbol, timeframe):
                    stored += self._store.upsert_many(candles)
                    self._tracker.set(symbol, timeframe, next_cursor)
            except PersistenceError as exc:
                status, error = BackfillStatus.ABORTED, str(exc)
                logger.error(
                    "[Backfill] %s/%s store failed at %s — progress not advanced: %s",
                    symbol, timeframe, ms_to_iso(cursor), exc,
                )
                break

            logger.info(
                "[Backfill] %s/%s page #%d: %d raw → %d stored | cursor now %s",
                symbol, timeframe, pages, len(raw), len(candles), ms_to_iso(next_cursor),
            )

            if next_cursor <= cursor:
                logger.warning(
                    "[Backfill] %s/%s cursor did not advance (%d) — stopping",
                    symbol, timeframe, cursor,
                )
                break
            cursor = next_cursor

            if cursor <= gap.end:
                await self._sleep(self._page_delay)

        if status is not BackfillStatus.ABORTED and (stored > 0 or cursor > gap.end):
            status = BackfillStatus.FILLED

        logger.info(
            "[Backfill] %s/%s gap done: status=%s, %d pages, %d rows",
            symbol, timeframe, status.value, pages, stored,
        )
        return BackfillResult(symbol, timeframe, pages, stored, cursor, status, error)

    async def fill_all(
        self,
        symbol: str,
        timeframe: str,
        gaps: Sequence[GapInterval],
        *,
        respect_cursor: bool = True,
    ) -> list[BackfillResult]:
        """Fill *gaps* in ascending order; one aborted gap does not stop the rest."""
        return [
            await self.fill(symbol, timeframe, gap, respect_cursor=respect_cursor)
            for gap in gaps
        ]
