"""Candle read API — stored bars for charting.

Endpoints
─────────
GET /api/candles   — ascending bars for (symbol, tf) in [since, to]

Query parameters
────────────────
tf           timeframe label, default 1h
symbol       default: the engine's symbol; "BTC/USDT" and "BTCUSDT" are equal
period       chart period label (1D 5D 1M 3M 6M YTD 1Y 5Y All); sets the
             default since (midnight UTC, ``period`` days back) and limit
since        epoch ms, default from period, else now - 30 days
to           epoch ms, default now (or since + 500 bars with fill_to_now=false)
limit        default from period, else (to - since) / d; capped at 10 000
fill_to_now  see ``to``

The response is assembled from pages of at most 1 000 rows.  This endpoint
NEVER calls external APIs.
"""
from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query

from candlesync.api.deps import get_engine
from candlesync.data.candle_store import Candle
from candlesync.engine import CandleSyncEngine
from candlesync.errors import PersistenceError
from candlesync.timeframes import DAY_MS, compute_limit, compute_since, ms_to_iso, period_to_days, timeframe_to_ms

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["candles"])

MAX_LIMIT = 10_000
_DEFAULT_LOOKBACK_MS = 30 * DAY_MS
_UNFILLED_BARS = 500


@router.get("/candles")
def get_candles(
    engine:      CandleSyncEngine = Depends(get_engine),
    tf:          str              = Query(default="1h", description="Timeframe e.g. 1h"),
    symbol:      str | None       = Query(default=None, description="Symbol e.g. BTCUSDT"),
    period:      str | None       = Query(default=None, description="Chart period e.g. 3M, YTD"),
    since:       int | None       = Query(default=None, description="Start, epoch ms (inclusive)"),
    to:          int | None       = Query(default=None, description="End, epoch ms (inclusive)"),
    limit:       int | None       = Query(default=None, description="Max bars, capped at 10000"),
    fill_to_now: bool             = Query(default=True, description="Default 'to' to now"),
) -> dict:
    try:
        d = timeframe_to_ms(tf)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    sym = (symbol or engine.symbol).replace("/", "").upper()
    now = engine.clock()
    default_since = now - _DEFAULT_LOOKBACK_MS
    default_limit: int | None = None
    if period is not None:
        try:
            days = period_to_days(period)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        default_since = compute_since(days, now)
        default_limit = compute_limit(tf, days)

    start = since if since is not None else default_since
    end = to if to is not None else (now if fill_to_now else start + d * _UNFILLED_BARS)
    if limit is None:
        limit = default_limit if default_limit is not None else (end - start) // d
    take = min(limit, MAX_LIMIT)

    if start >= end or take <= 0:
        raise HTTPException(status_code=400, detail="Invalid time range or limit")

    meta: dict[str, object] = {
        "symbol":      sym,
        "timeframe":   tf,
        "from":        start,
        "to":          end,
        "limit":       take,
        "period":      period,
        "msPerCandle": d,
    }

    if start > now:
        logger.warning("[API] since=%s is in the future — returning no candles", ms_to_iso(start))
        meta["warning"] = "since is in the future"
        return {"meta": meta, "data": []}

    candles: list[Candle] = []
    cursor: int | None = start
    try:
        while cursor is not None and len(candles) < take:
            page = engine.store.query_range(sym, tf, cursor, end, limit=take - len(candles))
            candles.extend(page.candles)
            cursor = page.next_cursor
    except PersistenceError as exc:
        logger.exception("[API] Candle query failed: %s/%s", sym, tf)
        raise HTTPException(status_code=500, detail="Internal server error") from exc

    meta["count"] = len(candles)
    meta["lastTimestamp"] = candles[-1].timestamp if candles else None
    return {"meta": meta, "data": [asdict(c) for c in candles]}
