"""Database engine, session factory, and initialisation.

Startup sequence
────────────────
1. Ensure the DB directory exists (file-backed URLs only).
2. Apply PRAGMA optimisations on every new connection (WAL, cache, temp-store).
3. Import models so Base.metadata knows about all tables.
4. Run create_all — idempotent; skips tables that already exist.
5. Health-check SELECT 1.

One ``Database`` instance is owned by the sync engine and handed to the
candle store and progress tracker; nothing reaches for a module-level engine.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy 2.x declarative base."""


def _apply_sqlite_pragmas(dbapi_conn, _connection_record) -> None:
    """Apply per-connection SQLite PRAGMAs.

    WAL mode
        Readers (the candle read API) never block the writer (backfill and
        live closes) and vice versa.

    synchronous = NORMAL
        Fsync on WAL checkpoints only.  A power cut can lose the last few
        commits; the progress cursor is written after the candles, so the
        next start simply re-fetches them.

    cache_size = -65536
        64 MB page cache keeps the hot tail of each partition in memory.

    temp_store = MEMORY
        ORDER BY temporaries stay in RAM.
    """
    cursor = dbapi_conn.cursor()
    pragmas = [
        "PRAGMA journal_mode=WAL",
        "PRAGMA synchronous=NORMAL",
        "PRAGMA cache_size=-65536",   # 64 MB
        "PRAGMA temp_store=MEMORY",
    ]
    for pragma in pragmas:
        cursor.execute(pragma)
    cursor.close()


class Database:
    """Engine + session factory pair for one SQLite database."""

    def __init__(self, url: str) -> None:
        self.url = make_url(url)
        self._in_memory = self.url.database in (None, "", ":memory:")

        if self._in_memory:
            # A single shared connection, otherwise every session would see
            # its own empty in-memory database.
            self.engine: Engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                pool_pre_ping=True,
            )
        event.listen(self.engine, "connect", _apply_sqlite_pragmas)

        self._session_factory = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine
        )

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Yield a managed SQLAlchemy session with automatic commit/rollback."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def initialize(self) -> None:
        """Create all tables and verify connectivity.

        Idempotent — safe to call on every startup.
        """
        if not self._in_memory:
            Path(self.url.database).parent.mkdir(parents=True, exist_ok=True)

        # Import models to register them with Base.metadata before create_all.
        import candlesync.data.models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        logger.info("Database initialised at %s", self.url.database or ":memory:")

    def dispose(self) -> None:
        self.engine.dispose()
