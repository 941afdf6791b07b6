"""CandleSyncEngine — one owner for every piece of sync state.

Lifecycle
─────────
    load()        progress cursors from the DB
    sync_all()    gap scan + backfill per timeframe, strictly one at a time;
                  startup, seed and repair passes share one backfill lock
    run()         load → sync_all → live stream (supervised) + repair loop
    shutdown()    stop subscribers, live stream and repair loop, wait for
                  in-flight writes, flush progress, close the HTTP client

``seed()`` is the one-shot variant used by the CLI: load + sync_all, no live
stream.  The live connection only starts after every timeframe has been
backfilled to "now", so live closes never race the initial catch-up.

Cursor reconciliation
─────────────────────
After a timeframe is processed its cursor is raised to ``latest stored + d``
(``set()`` ignores backward moves).  Bars the backfill skipped because they
were already stored therefore still count as confirmed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

import websockets

from candlesync.data.backfill import Backfiller, BackfillResult, BackfillStatus
from candlesync.data.binance_client import BinanceClient, HistoricalSource
from candlesync.data.candle_store import CandleStore
from candlesync.data.database import Database
from candlesync.data.gaps import GapInterval, scan_gaps
from candlesync.data.progress import ProgressTracker
from candlesync.errors import PersistenceError
from candlesync.live.broadcaster import Broadcaster
from candlesync.live.ingestor import LiveIngestor
from candlesync.live.supervisor import ReconnectSupervisor
from candlesync.locks import SeriesLocks
from candlesync.timeframes import floor_to_grid, ms_to_iso, now_ms, retention_ms, timeframe_to_ms

logger = logging.getLogger(__name__)


@dataclass
class TimeframeSummary:
    timeframe: str
    gaps:      int = 0
    pages:     int = 0
    stored:    int = 0
    aborted:   int = 0
    cursor:    int | None = None
    latest:    int | None = None
    results:   list[BackfillResult] = field(default_factory=list, repr=False)

    def as_dict(self) -> dict[str, Any]:
        return {
            "timeframe": self.timeframe,
            "gaps":      self.gaps,
            "pages":     self.pages,
            "stored":    self.stored,
            "aborted":   self.aborted,
            "cursor":    self.cursor,
            "latest":    self.latest,
        }


class CandleSyncEngine:

    def __init__(
        self,
        db: Database,
        source: HistoricalSource,
        *,
        symbol: str = "BTCUSDT",
        timeframes: Iterable[str] = ("1m", "5m", "30m", "1h", "2h", "1d", "1w"),
        page_size: int = 1000,
        page_delay: float = 0.3,
        ws_url: str = "wss://stream.binance.com:9443",
        reconnect_delay: float = 5.0,
        repair_interval: float = 900.0,
        send_timeout: float = 5.0,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.symbol = symbol.upper()
        self.timeframes = tuple(timeframes)
        for tf in self.timeframes:
            timeframe_to_ms(tf)

        self.db = db
        self.source = source
        self.clock = clock
        self.store = CandleStore(db)
        self.tracker = ProgressTracker(db, clock=clock)
        self.locks = SeriesLocks()
        self.broadcaster = Broadcaster(send_timeout=send_timeout)
        self.backfiller = Backfiller(
            source, self.store, self.tracker, self.locks,
            page_size=page_size, page_delay=page_delay, clock=clock, sleep=sleep,
        )
        self.ingestor = LiveIngestor(
            self.store, self.tracker, self.broadcaster, self.locks,
            symbol=self.symbol, timeframes=self.timeframes, ws_url=ws_url, connect=connect,
        )
        self.supervisor = ReconnectSupervisor(self.ingestor, delay=reconnect_delay)

        self._repair_interval = repair_interval
        self._stopping = asyncio.Event()
        self._repair_lock = asyncio.Lock()
        self._backfill_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self.phase = "idle"
        self.last_repair_ms: int | None = None

    @classmethod
    def from_settings(cls, settings, db: Database | None = None) -> "CandleSyncEngine":
        """Production wiring: SQLite file from settings + Binance REST client."""
        client = BinanceClient(
            settings.binance_rest_url,
            timeout=settings.request_timeout_secs,
            max_retries=settings.max_retries,
            retry_base=settings.retry_base_secs,
        )
        return cls(
            db or Database(settings.database_url),
            client,
            symbol=settings.symbol,
            timeframes=settings.timeframes,
            page_size=settings.page_size,
            page_delay=settings.page_delay_secs,
            ws_url=settings.binance_ws_url,
            reconnect_delay=settings.reconnect_delay_secs,
            repair_interval=settings.repair_interval_secs,
            send_timeout=settings.ws_send_timeout_secs,
        )

    # ── Backfill pass ─────────────────────────────────────────────────────────

    def load(self) -> None:
        self.tracker.load()

    def window_start(self, timeframe: str) -> int:
        """Oldest open time the gap scan looks at for *timeframe*."""
        return floor_to_grid(self.clock() - retention_ms(timeframe), timeframe)

    def scan(self, timeframe: str) -> list[GapInterval]:
        """Current gaps for *timeframe* over its retention window.

        Raises PersistenceError when the stored timestamps cannot be read.
        """
        d = timeframe_to_ms(timeframe)
        now = self.clock()
        stored = self.store.timestamps(self.symbol, timeframe, self.window_start(timeframe), now)
        return scan_gaps(stored, d, now, start=self.tracker.get(self.symbol, timeframe))

    async def sync_timeframe(self, timeframe: str, *, respect_cursor: bool = True) -> TimeframeSummary:
        summary = TimeframeSummary(timeframe)
        d = timeframe_to_ms(timeframe)
        try:
            gaps = self.scan(timeframe)
        except PersistenceError as exc:
            logger.error("[Sync] %s/%s gap scan failed: %s", self.symbol, timeframe, exc)
            summary.aborted = 1
            return summary

        summary.gaps = len(gaps)
        if gaps:
            logger.info(
                "[Sync] %s/%s: %d gap(s), first %s → %s",
                self.symbol, timeframe, len(gaps),
                ms_to_iso(gaps[0].start), ms_to_iso(gaps[0].end),
            )

        for gap in gaps:
            if self._stopping.is_set():
                break
            result = await self.backfiller.fill(self.symbol, timeframe, gap, respect_cursor=respect_cursor)
            summary.results.append(result)
            summary.pages += result.pages
            summary.stored += result.stored
            if result.status is BackfillStatus.ABORTED:
                summary.aborted += 1

        try:
            summary.latest = self.store.latest_timestamp(self.symbol, timeframe)
        except PersistenceError as exc:
            logger.error("[Sync] %s/%s latest lookup failed: %s", self.symbol, timeframe, exc)
        if summary.latest is not None:
            async with self.locks.for_series(self.symbol, timeframe):
                self.tracker.set(self.symbol, timeframe, summary.latest + d)
        summary.cursor = self.tracker.get(self.symbol, timeframe)

        logger.info(
            "[Sync] %s/%s done: %d gap(s), %d pages, %d rows, %d aborted | cursor %s",
            self.symbol, timeframe, summary.gaps, summary.pages, summary.stored,
            summary.aborted, ms_to_iso(summary.cursor),
        )
        return summary

    async def sync_all(self, *, respect_cursor: bool = True) -> dict[str, TimeframeSummary]:
        """One backfill pass over every timeframe.  Concurrent callers queue."""
        async with self._backfill_lock:
            summaries: dict[str, TimeframeSummary] = {}
            for tf in self.timeframes:
                if self._stopping.is_set():
                    break
                summaries[tf] = await self.sync_timeframe(tf, respect_cursor=respect_cursor)
            return summaries

    async def seed(self) -> dict[str, TimeframeSummary]:
        """One-shot historical seed: load progress and backfill every timeframe."""
        self.phase = "seeding"
        self.load()
        try:
            return await self.sync_all()
        finally:
            self.phase = "idle"

    # ── Repair ────────────────────────────────────────────────────────────────

    @property
    def repair_running(self) -> bool:
        return self._repair_lock.locked()

    @property
    def backfill_running(self) -> bool:
        """True while any backfill pass (startup, seed or repair) is active."""
        return (
            self._backfill_lock.locked()
            or self._repair_lock.locked()
            or self.phase in ("backfilling", "seeding")
        )

    async def repair(self) -> dict[str, TimeframeSummary]:
        """Fill interior holes, including those below the progress cursor."""
        async with self._repair_lock:
            logger.info("[Sync] Repair scan starting")
            summaries = await self.sync_all(respect_cursor=False)
            self.last_repair_ms = self.clock()
            return summaries

    async def _repair_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._repair_interval)
                break
            except asyncio.TimeoutError:
                pass
            if self.backfill_running:
                continue
            try:
                await self.repair()
            except Exception:
                logger.exception("[Sync] Repair scan failed")

    # ── Service ───────────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Backfill to now, then stream live until ``shutdown()``."""
        self.phase = "backfilling"
        self.load()
        await self.sync_all()
        if self._stopping.is_set():
            return

        self.phase = "live"
        loops = [self.supervisor.run()]
        if self._repair_interval > 0:
            loops.append(self._repair_loop())
        await asyncio.gather(*loops)

    def start(self) -> asyncio.Task:
        """Schedule ``run()`` on the current loop."""
        self._task = asyncio.create_task(self.run(), name="candlesync-engine")
        return self._task

    async def shutdown(self) -> None:
        logger.info("[Sync] Shutting down")
        self.phase = "stopping"
        self._stopping.set()
        await self.broadcaster.close()
        await self.supervisor.stop()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        elif task is not None and not task.cancelled() and task.exception() is not None:
            logger.error("[Sync] Engine task had failed: %r", task.exception())

        await self.locks.drain()
        self.tracker.flush()
        close = getattr(self.source, "aclose", None)
        if close is not None:
            await close()
        self.phase = "stopped"
        logger.info("[Sync] Shutdown complete")

    # ── Status ────────────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        cursors = self.tracker.snapshot().get(self.symbol, {})
        series = []
        for tf in self.timeframes:
            cursor = cursors.get(tf)
            series.append({
                "timeframe":  tf,
                "cursor":     cursor,
                "cursor_iso": ms_to_iso(cursor) if cursor is not None else None,
                "stored":     self.store.count(self.symbol, tf),
                "latest":     self.store.latest_timestamp(self.symbol, tf),
            })
        return {
            "symbol":           self.symbol,
            "phase":            self.phase,
            "live":             self.ingestor.state.value,
            "subscribers":      len(self.broadcaster),
            "repair_running":   self.repair_running,
            "backfill_running": self.backfill_running,
            "last_repair":      self.last_repair_ms,
            "series":           series,
        }
