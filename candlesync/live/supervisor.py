"""Reconnect loop for the live stream.

An explicit loop in one task: stream, wait, stream again.  The wait is on
a stop event with a timeout, so ``stop()`` ends it immediately instead of
sleeping out the delay.
"""
from __future__ import annotations

import asyncio
import logging

from candlesync.errors import StreamConnectionError
from candlesync.live.ingestor import LiveIngestor

logger = logging.getLogger(__name__)


class ReconnectSupervisor:

    def __init__(self, ingestor: LiveIngestor, delay: float = 5.0) -> None:
        self._ingestor = ingestor
        self._delay = delay
        self._stop = asyncio.Event()
        self.connects = 0

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> None:
        """Keep the ingestor connected until ``stop()``.  Retries are unbounded."""
        while not self._stop.is_set():
            self.connects += 1
            try:
                await self._ingestor.stream_once()
            except StreamConnectionError as exc:
                logger.warning("[Live] %s", exc)
            except Exception:
                logger.exception("[Live] Unexpected error in live stream")

            if self._stop.is_set():
                break
            logger.warning("[Live] Reconnecting in %.1fs (attempt %d)", self._delay, self.connects + 1)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._delay)
            except asyncio.TimeoutError:
                pass
        logger.info("[Live] Supervisor stopped after %d connection(s)", self.connects)

    async def stop(self) -> None:
        self._stop.set()
        await self._ingestor.close()
