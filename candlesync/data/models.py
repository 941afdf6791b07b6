"""SQLAlchemy 2.x ORM models.

Tables
──────
CandleRow     — OHLCV storage (WITHOUT ROWID, clustered B-tree)
SyncProgress  — per-(symbol, timeframe) "next expected open time" cursor
"""
from __future__ import annotations

from sqlalchemy import BigInteger, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from candlesync.data.database import Base


class CandleRow(Base):
    """Persisted OHLCV candle.

    WITHOUT ROWID clusters the B-tree on (symbol, timeframe, open_time) so
    range scans are sequential leaf walks.  open_time is Unix epoch
    milliseconds UTC, the bar's open.  The composite PK is the identity key;
    writes go through INSERT … ON CONFLICT DO UPDATE so the last write wins.
    """

    __tablename__ = "candle"
    __table_args__ = (
        {"sqlite_with_rowid": False},
    )

    symbol:    Mapped[str] = mapped_column(String(32), primary_key=True, nullable=False)
    timeframe: Mapped[str] = mapped_column(String(8),  primary_key=True, nullable=False)
    open_time: Mapped[int] = mapped_column(BigInteger, primary_key=True, nullable=False)

    open:   Mapped[float] = mapped_column(Float, nullable=False)
    high:   Mapped[float] = mapped_column(Float, nullable=False)
    low:    Mapped[float] = mapped_column(Float, nullable=False)
    close:  Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<CandleRow {self.symbol}/{self.timeframe} @ {self.open_time} C={self.close}>"


class SyncProgress(Base):
    """Next expected open time per (symbol, timeframe).

    Only ever moved forward, and only after the candles before it are
    committed to the ``candle`` table.
    """

    __tablename__ = "sync_progress"
    __table_args__ = (
        {"sqlite_with_rowid": False},
    )

    symbol:         Mapped[str] = mapped_column(String(32), primary_key=True, nullable=False)
    timeframe:      Mapped[str] = mapped_column(String(8),  primary_key=True, nullable=False)
    next_open_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at:     Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<SyncProgress {self.symbol}/{self.timeframe} next={self.next_open_time}>"
