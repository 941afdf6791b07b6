"""Timeframe and display-period lookup tables.

All durations are epoch milliseconds.  Bars open on multiples of their
duration counted from the Unix epoch, which is the grid Binance uses for
every interval up to ``1d``.  Binance weekly bars open on Mondays
(epoch + 4 days), so ``floor_to_grid`` takes an optional origin.
"""
from __future__ import annotations

import math
import time
from datetime import date, datetime, timezone

MINUTE_MS = 60_000
HOUR_MS   = 60 * MINUTE_MS
DAY_MS    = 24 * HOUR_MS
YEAR_MS   = 365 * DAY_MS

TIMEFRAME_MS: dict[str, int] = {
    "1m":  MINUTE_MS,
    "3m":  3 * MINUTE_MS,
    "5m":  5 * MINUTE_MS,
    "15m": 15 * MINUTE_MS,
    "30m": 30 * MINUTE_MS,
    "1h":  HOUR_MS,
    "2h":  2 * HOUR_MS,
    "4h":  4 * HOUR_MS,
    "6h":  6 * HOUR_MS,
    "12h": 12 * HOUR_MS,
    "1d":  DAY_MS,
    "1w":  7 * DAY_MS,
}

# Binance weekly klines open on Monday 00:00 UTC; 1970-01-01 was a Thursday.
GRID_ORIGIN_MS: dict[str, int] = {
    "1w": 4 * DAY_MS,
}

# How far back a fresh series is seeded.
RETENTION_MS: dict[str, int] = {
    "1m":  30 * DAY_MS,
    "5m":  60 * DAY_MS,
    "30m": 180 * DAY_MS,
    "1h":  365 * DAY_MS,
    "2h":  2 * YEAR_MS,
    "1d":  5 * YEAR_MS,
    "1w":  10 * YEAR_MS,
}
DEFAULT_RETENTION_MS = 5 * YEAR_MS


# ── Epoch helpers ─────────────────────────────────────────────────────────────

def now_ms() -> int:
    return time.time_ns() // 1_000_000


def ms_to_iso(ts_ms: int) -> str:
    """UTC epoch ms → ISO-8601 string with explicit +00:00 offset."""
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%S+00:00"
    )


# ── Lookups ───────────────────────────────────────────────────────────────────

def timeframe_to_ms(tf: str) -> int:
    """Return the bar duration for *tf*; unknown labels raise ValueError."""
    try:
        return TIMEFRAME_MS[tf]
    except KeyError:
        raise ValueError(
            f"Unknown timeframe '{tf}'. Expected one of: {', '.join(TIMEFRAME_MS)}"
        ) from None


def retention_ms(tf: str) -> int:
    return RETENTION_MS.get(tf, DEFAULT_RETENTION_MS)


def floor_to_grid(ts_ms: int, tf: str) -> int:
    """Round *ts_ms* down to the open time of the bar containing it."""
    d = timeframe_to_ms(tf)
    origin = GRID_ORIGIN_MS.get(tf, 0)
    return ts_ms - ((ts_ms - origin) % d)


# ── Display periods ───────────────────────────────────────────────────────────

PERIOD_DAYS: dict[str, int] = {
    "1D":  1,
    "5D":  5,
    "1M":  30,
    "3M":  90,
    "6M":  180,
    "1Y":  365,
    "5Y":  1825,
    "All": 3650,
}


def period_to_days(label: str, today: date | None = None) -> int:
    """Day count for a chart period label.  ``YTD`` depends on *today*."""
    if label == "YTD":
        today = today or date.today()
        return (today - date(today.year, 1, 1)).days
    try:
        return PERIOD_DAYS[label]
    except KeyError:
        raise ValueError(f"Unknown period '{label}'") from None


def compute_limit(tf: str, days: int) -> int:
    """Number of bars of *tf* covering *days* days."""
    return math.ceil(days * DAY_MS / timeframe_to_ms(tf))


def compute_since(days: float, now_ms: int) -> int:
    """Start of the window covering *days* days, floored to midnight UTC.

    *days* is clamped to 1..3650; NaN means 30.
    """
    safe_days = 30 if math.isnan(days) else min(max(days, 1), 3650)
    since = now_ms - int(safe_days * DAY_MS)
    return since - since % DAY_MS
