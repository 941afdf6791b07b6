"""Sync maintenance API.

Endpoints
─────────
GET  /api/sync/status      — cursors, stored row counts, live state
GET  /api/sync/gaps/{tf}   — current gap report for one timeframe
POST /api/sync/repair      — schedule a repair scan (409 while any backfill runs)
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Path

from candlesync.api.auth import require_api_key
from candlesync.api.deps import get_engine
from candlesync.engine import CandleSyncEngine
from candlesync.errors import PersistenceError
from candlesync.timeframes import timeframe_to_ms

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/sync",
    tags=["sync"],
    dependencies=[Depends(require_api_key)],
)


async def _run_repair(engine: CandleSyncEngine) -> None:
    try:
        summaries = await engine.repair()
        total = sum(s.stored for s in summaries.values())
        logger.info("[Sync] Repair job finished — %d rows stored", total)
    except Exception:
        logger.exception("[Sync] Repair job crashed")


@router.get("/status")
def sync_status(engine: CandleSyncEngine = Depends(get_engine)) -> dict:
    try:
        return engine.status()
    except PersistenceError as exc:
        logger.exception("[API] Sync status failed")
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.get("/gaps/{timeframe}")
def sync_gaps(
    timeframe: str = Path(description="Timeframe e.g. 1h"),
    engine: CandleSyncEngine = Depends(get_engine),
) -> dict:
    """Gaps in the stored series over the timeframe's retention window."""
    try:
        d = timeframe_to_ms(timeframe)
        gaps = engine.scan(timeframe)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.exception("[API] Gap scan failed: %s", timeframe)
        raise HTTPException(status_code=500, detail="Internal server error") from exc

    return {
        "symbol":       engine.symbol,
        "timeframe":    timeframe,
        "window_start": engine.window_start(timeframe),
        "count":        len(gaps),
        "missing_bars": sum(g.missing_bars(d) for g in gaps),
        "gaps":         [g.as_dict(d) for g in gaps],
    }


@router.post("/repair", status_code=202)
async def trigger_repair(
    background_tasks: BackgroundTasks,
    engine: CandleSyncEngine = Depends(get_engine),
) -> dict:
    """Re-scan every timeframe and fill interior holes in the background."""
    if engine.backfill_running:
        raise HTTPException(
            status_code=409,
            detail="A backfill or repair pass is already running. Check /api/sync/status.",
        )
    background_tasks.add_task(_run_repair, engine)
    return {
        "message":    "Repair scan started in background",
        "timeframes": list(engine.timeframes),
        "status_url": "/api/sync/status",
    }
