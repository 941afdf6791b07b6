"""candlesync — keep Binance OHLCV bars in SQLite and fan live updates out."""
from __future__ import annotations

import argparse
import asyncio
import logging
import socket
import sys

import uvicorn

from candlesync.app_factory import create_app
from candlesync.data.database import Database
from candlesync.engine import CandleSyncEngine
from candlesync.logging_setup import configure_logging
from candlesync.timeframes import ms_to_iso
from config import settings

logger = logging.getLogger(__name__)


def _can_bind(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


async def _seed(engine: CandleSyncEngine) -> int:
    try:
        summaries = await engine.seed()
    finally:
        await engine.shutdown()

    aborted = 0
    for tf, s in summaries.items():
        aborted += s.aborted
        logger.info(
            "  %-4s %5d gap(s) %6d page(s) %8d row(s) | cursor %s%s",
            tf, s.gaps, s.pages, s.stored,
            ms_to_iso(s.cursor) if s.cursor is not None else "-",
            f" | {s.aborted} aborted" if s.aborted else "",
        )
    return 1 if aborted else 0


def _serve(engine: CandleSyncEngine) -> int:
    host, port = settings.app_host, settings.app_port
    # Port must be free before we start fetching anything.
    if not _can_bind(host, port):
        logger.critical("Cannot bind %s:%s — is another instance running?", host, port)
        return 2

    app = create_app(engine)
    logger.info("Starting %s on %s:%s", settings.app_name, host, port)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="candlesync", description=__doc__)
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=("serve", "seed"),
        help="serve: backfill, then stream live and serve the API (default); "
             "seed: backfill every timeframe once and exit",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.log_level)
    logger.info("Initializing database at %s", settings.db_path)
    db = Database(settings.database_url)
    db.initialize()

    engine = CandleSyncEngine.from_settings(settings, db)
    if args.command == "seed":
        return asyncio.run(_seed(engine))
    return _serve(engine)


if __name__ == "__main__":
    sys.exit(main())
