from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from candlesync.api.deps import get_engine
from candlesync.engine import CandleSyncEngine

router = APIRouter()


@router.get("/health")
def health(engine: CandleSyncEngine = Depends(get_engine)) -> dict[str, object]:
    """Return process-level service health."""
    return {
        "status":      "ok",
        "service":     "candlesync",
        "timestamp":   datetime.now(timezone.utc).isoformat(),
        "phase":       engine.phase,
        "live":        engine.ingestor.state.value,
        "subscribers": len(engine.broadcaster),
    }
