"""Live kline ingestion from the Binance combined stream.

One connection carries every configured timeframe:

    wss://stream.binance.com:9443/stream?streams=btcusdt@kline_1m/btcusdt@kline_1h/…

State machine
─────────────
    DISCONNECTED ──stream_once()──▶ CONNECTING ──open──▶ STREAMING
         ▲                                                   │
         └──────────── error / remote close ─────────────────┘

``stream_once()`` runs one connection to completion and always leaves the
state at DISCONNECTED; the reconnect loop lives in ``ReconnectSupervisor``.

Per-event handling
──────────────────
• ParseError  → log, drop, nothing else happens.
• FormingBar  → broadcast only.  No store write, no progress change.
• ClosedBar   → upsert under the series lock; only after the commit
                succeeds: advance progress to ts + d, then broadcast.
                A PersistenceError is logged and the event goes no further.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Iterable

import websockets
from websockets.exceptions import WebSocketException

from candlesync.data.candle_store import CandleStore
from candlesync.data.progress import ProgressTracker
from candlesync.errors import ParseError, PersistenceError, StreamConnectionError
from candlesync.live.broadcaster import Broadcaster
from candlesync.live.events import ClosedBar, LiveEvent, parse_kline_message
from candlesync.locks import SeriesLocks
from candlesync.timeframes import ms_to_iso, timeframe_to_ms

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING   = "connecting"
    STREAMING    = "streaming"


def stream_url(base_url: str, symbol: str, timeframes: Iterable[str]) -> str:
    streams = "/".join(f"{symbol.lower()}@kline_{tf}" for tf in timeframes)
    return f"{base_url.rstrip('/')}/stream?streams={streams}"


class LiveIngestor:

    def __init__(
        self,
        store: CandleStore,
        tracker: ProgressTracker,
        broadcaster: Broadcaster,
        locks: SeriesLocks,
        *,
        symbol: str,
        timeframes: Iterable[str],
        ws_url: str = "wss://stream.binance.com:9443",
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._broadcaster = broadcaster
        self._locks = locks
        self.symbol = symbol.upper()
        self.timeframes = tuple(timeframes)
        self.url = stream_url(ws_url, self.symbol, self.timeframes)
        self._connect = connect
        self._ws: Any = None
        self.state = ConnectionState.DISCONNECTED
        self.messages = 0
        self.last_event_ms: int | None = None

    # ── Event handling ────────────────────────────────────────────────────────

    async def handle_message(self, raw: str | bytes) -> LiveEvent | None:
        """Process one frame.  Returns the event that was published, if any."""
        self.messages += 1
        try:
            event = parse_kline_message(raw)
        except ParseError as exc:
            logger.warning("[Live] Discarding unparseable frame: %s", exc)
            return None
        if event is None:
            return None

        candle = event.candle
        if candle.symbol != self.symbol or candle.timeframe not in self.timeframes:
            logger.debug("[Live] Ignoring unsubscribed stream %s/%s", candle.symbol, candle.timeframe)
            return None

        if isinstance(event, ClosedBar):
            d = timeframe_to_ms(candle.timeframe)
            try:
                async with self._locks.for_series(candle.symbol, candle.timeframe):
                    self._store.upsert(candle)
                    self._tracker.set(candle.symbol, candle.timeframe, candle.timestamp + d)
            except PersistenceError as exc:
                logger.error(
                    "[Live] %s/%s close @ %s not stored — not broadcasting: %s",
                    candle.symbol, candle.timeframe, ms_to_iso(candle.timestamp), exc,
                )
                return None
            logger.info(
                "[Live] %s/%s closed @ %s c=%s",
                candle.symbol, candle.timeframe, ms_to_iso(candle.timestamp), candle.close,
            )

        self.last_event_ms = candle.timestamp
        await self._broadcaster.publish(event.payload())
        return event

    # ── Connection ────────────────────────────────────────────────────────────

    async def stream_once(self) -> None:
        """Connect, consume frames until the stream ends, then return.

        Raises
        ------
        StreamConnectionError
            The connection could not be opened or dropped abnormally.
        """
        self.state = ConnectionState.CONNECTING
        logger.info("[Live] Connecting to %s", self.url)
        try:
            async with self._connect(self.url, ping_interval=20, ping_timeout=20) as ws:
                self._ws = ws
                self.state = ConnectionState.STREAMING
                logger.info("[Live] Streaming %s (%s)", self.symbol, ", ".join(self.timeframes))
                async for raw in ws:
                    await self.handle_message(raw)
            logger.warning("[Live] Stream closed by remote")
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise StreamConnectionError(f"live stream failed: {exc!r}") from exc
        finally:
            self._ws = None
            self.state = ConnectionState.DISCONNECTED

    async def close(self) -> None:
        """Close the current socket, if any; ``stream_once`` then returns."""
        ws = self._ws
        if ws is not None:
            await ws.close()
