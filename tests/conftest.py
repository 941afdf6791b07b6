from __future__ import annotations

import asyncio
import json

import pytest

from candlesync.data.candle_store import Candle, CandleStore
from candlesync.data.database import Database
from candlesync.data.progress import ProgressTracker
from candlesync.locks import SeriesLocks

HOUR = 3_600_000
SYMBOL = "BTCUSDT"

# Small enough that every default retention horizon lands before epoch 0,
# so the default cursor never hides a test gap.
NOW = 15_000_000


class FakeClock:
    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def kline_row(ts: int, close: float = 100.0, d: int = HOUR) -> list:
    """A row shaped like Binance /api/v3/klines output."""
    return [ts, "100.0", str(max(close, 100.0) + 1), str(min(close, 100.0) - 1), str(close), "12.5", ts + d - 1]


class FakeSource:
    """In-memory HistoricalSource.  Serves bars with ts >= start, up to limit.

    *rows* are served for every timeframe; *by_timeframe* overrides per label.
    """

    def __init__(self, rows: list[list] | None = None, by_timeframe: dict[str, list[list]] | None = None) -> None:
        self.rows = sorted(rows or [], key=lambda r: r[0])
        self.by_timeframe = {tf: sorted(r, key=lambda x: x[0]) for tf, r in (by_timeframe or {}).items()}
        self.calls: list[tuple[str, str, int, int]] = []
        self.fail_with: Exception | None = None
        self.closed = False

    async def fetch_ohlcv(self, symbol: str, timeframe: str, start: int, limit: int) -> list[list]:
        self.calls.append((symbol, timeframe, start, limit))
        if self.fail_with is not None:
            raise self.fail_with
        rows = self.by_timeframe.get(timeframe, self.rows)
        return [r for r in rows if r[0] >= start][:limit]

    async def aclose(self) -> None:
        self.closed = True


class FakeSocket:
    """Stands in for a ``websockets`` client connection.

    Yields *frames*, then either ends (remote close) or, with *hold*, waits
    until ``close()`` is called.
    """

    def __init__(self, frames=(), *, hold: bool = False, on_enter=None) -> None:
        self.frames = list(frames)
        self.hold = hold
        self.on_enter = on_enter
        self.closed = asyncio.Event()

    async def __aenter__(self) -> "FakeSocket":
        if self.on_enter is not None:
            await self.on_enter()
        return self

    async def __aexit__(self, *exc) -> bool:
        return False

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame
        if self.hold:
            await self.closed.wait()

    async def close(self) -> None:
        self.closed.set()


class FakeConnect:
    """Replacement for ``websockets.connect`` handing out prepared sockets."""

    def __init__(self, *sockets) -> None:
        self.sockets = list(sockets)
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        item = self.sockets.pop(0) if self.sockets else FakeSocket()
        if isinstance(item, Exception):
            raise item
        return item


def kline_frame(ts: int, closed: bool, close: float = 100.0, tf: str = "1h", symbol: str = SYMBOL) -> str:
    return json.dumps({
        "stream": f"{symbol.lower()}@kline_{tf}",
        "data": {
            "e": "kline",
            "s": symbol,
            "k": {
                "t": ts, "i": tf,
                "o": "100.0", "h": "101.0", "l": "99.0", "c": str(close), "v": "12.5",
                "x": closed,
            },
        },
    })


async def no_sleep(_secs: float) -> None:
    return None


def make_candle(ts: int, close: float = 100.0, timeframe: str = "1h", symbol: str = SYMBOL) -> Candle:
    return Candle(symbol, timeframe, ts, 100.0, 101.0, 99.0, close, 12.5)


@pytest.fixture
def db():
    database = Database("sqlite:///:memory:")
    database.initialize()
    yield database
    database.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(db) -> CandleStore:
    return CandleStore(db)


@pytest.fixture
def tracker(db, clock) -> ProgressTracker:
    t = ProgressTracker(db, clock=clock)
    t.load()
    return t


@pytest.fixture
def locks() -> SeriesLocks:
    return SeriesLocks()
