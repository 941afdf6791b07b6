"""Per-series write locks.

Backfill page writes and live closes for the same (symbol, timeframe) both
run "upsert, then advance cursor".  Holding the series lock across that pair
keeps the two sequences from interleaving.
"""
from __future__ import annotations

import asyncio


class SeriesLocks:

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def for_series(self, symbol: str, timeframe: str) -> asyncio.Lock:
        key = (symbol, timeframe)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def drain(self) -> None:
        """Wait for every in-flight write to release its lock."""
        for lock in list(self._locks.values()):
            async with lock:
                pass
