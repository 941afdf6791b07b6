"""Process configuration.

Values are read from environment variables once at import time; a local
``.env`` file is loaded first so development setups need no exported shell
variables.  Import the module-level ``settings`` object:

    from config import settings
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_TIMEFRAMES = "1m,5m,30m,1h,2h,1d,1w"


@dataclass(frozen=True)
class Settings:
    # App
    app_name:  str
    app_host:  str
    app_port:  int
    log_level: str
    db_path:   Path
    api_key:   str

    # Sync target
    symbol:     str
    timeframes: tuple[str, ...]

    # Upstream (Binance)
    binance_rest_url: str
    binance_ws_url:   str

    # Backfill pacing / retries
    page_size:            int
    page_delay_secs:      float
    request_timeout_secs: float
    max_retries:          int
    retry_base_secs:      float

    # Live stream / maintenance
    reconnect_delay_secs: float
    repair_interval_secs: float
    ws_send_timeout_secs: float

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.db_path}"


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(s.strip() for s in raw.split(",") if s.strip())


def get_settings() -> Settings:
    """Read env vars and return a Settings object."""
    page_size = int(os.getenv("PAGE_SIZE", "1000"))
    if not 1 <= page_size <= 1000:
        raise ValueError(f"PAGE_SIZE must be within 1..1000, got {page_size}")

    return Settings(
        app_name=os.getenv("APP_NAME", "candlesync"),
        app_host=os.getenv("APP_HOST", "127.0.0.1"),
        app_port=int(os.getenv("APP_PORT", "8080")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        db_path=Path(os.getenv("DB_PATH", "storage/candles.db")),
        api_key=os.getenv("API_KEY", ""),
        symbol=os.getenv("SYNC_SYMBOL", "BTCUSDT").strip().upper(),
        timeframes=_split_csv(os.getenv("SYNC_TIMEFRAMES", DEFAULT_TIMEFRAMES)),
        binance_rest_url=os.getenv("BINANCE_REST_URL", "https://api.binance.com").rstrip("/"),
        binance_ws_url=os.getenv("BINANCE_WS_URL", "wss://stream.binance.com:9443").rstrip("/"),
        page_size=page_size,
        page_delay_secs=float(os.getenv("PAGE_DELAY_SECS", "0.3")),
        request_timeout_secs=float(os.getenv("REQUEST_TIMEOUT_SECS", "20")),
        max_retries=int(os.getenv("MAX_RETRIES", "4")),
        retry_base_secs=float(os.getenv("RETRY_BASE_SECS", "2.0")),
        reconnect_delay_secs=float(os.getenv("RECONNECT_DELAY_SECS", "5")),
        repair_interval_secs=float(os.getenv("REPAIR_INTERVAL_SECS", "900")),
        ws_send_timeout_secs=float(os.getenv("WS_SEND_TIMEOUT_SECS", "5")),
    )


settings = get_settings()
