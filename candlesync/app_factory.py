from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from candlesync.api import candles, health, live, sync
from candlesync.engine import CandleSyncEngine

logger = logging.getLogger(__name__)


def create_app(engine: CandleSyncEngine, *, start_sync: bool = True) -> FastAPI:
    """Build the API around *engine*.

    With *start_sync* the engine's backfill + live service runs for the
    lifetime of the app and is shut down with it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if start_sync:
            engine.start()
            logger.info("Sync engine started for %s (%s)", engine.symbol, ", ".join(engine.timeframes))
        else:
            engine.load()
        try:
            yield
        finally:
            await engine.shutdown()

    app = FastAPI(title="candlesync", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine
    app.include_router(health.router)
    app.include_router(candles.router)
    app.include_router(sync.router)
    app.include_router(live.router)
    return app
