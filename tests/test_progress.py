from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from candlesync.data.database import Database
from candlesync.data.progress import ProgressTracker
from candlesync.timeframes import DAY_MS

from tests.conftest import HOUR, SYMBOL, FakeClock


def test_default_cursor_is_horizon_floored_to_grid(db):
    clock = FakeClock(400 * DAY_MS + 123)
    tracker = ProgressTracker(db, clock=clock)
    tracker.load()

    assert tracker.get(SYMBOL, "1h") == 35 * DAY_MS        # 365-day horizon
    assert tracker.get(SYMBOL, "1m") == 370 * DAY_MS       # 30-day horizon
    assert not tracker.has(SYMBOL, "1h")


def test_set_is_monotonic(tracker):
    assert tracker.set(SYMBOL, "1h", 10 * HOUR) is True
    assert tracker.set(SYMBOL, "1h", 4 * HOUR) is False
    assert tracker.get(SYMBOL, "1h") == 10 * HOUR
    assert tracker.set(SYMBOL, "1h", 10 * HOUR) is True


def test_cursor_survives_restart(tmp_path):
    url = f"sqlite:///{tmp_path / 'candles.db'}"
    first = Database(url)
    first.initialize()
    tracker = ProgressTracker(first, clock=FakeClock())
    tracker.load()
    tracker.set(SYMBOL, "1h", 7 * HOUR)
    tracker.set(SYMBOL, "1d", 24 * HOUR)
    first.dispose()

    second = Database(url)
    second.initialize()
    restarted = ProgressTracker(second, clock=FakeClock())
    restarted.load()

    assert restarted.get(SYMBOL, "1h") == 7 * HOUR
    assert restarted.snapshot() == {SYMBOL: {"1h": 7 * HOUR, "1d": 24 * HOUR}}
    second.dispose()


def test_corrupt_state_falls_back_to_defaults(db, clock):
    with db.session() as session:
        session.execute(text(
            "INSERT INTO sync_progress (symbol, timeframe, next_open_time, updated_at) "
            "VALUES ('BTCUSDT', '1h', 'garbage', 0)"
        ))

    tracker = ProgressTracker(db, clock=clock)
    tracker.load()

    assert tracker.snapshot() == {}
    assert tracker.get(SYMBOL, "1h") == tracker.default_cursor("1h")


def test_persist_failure_never_raises_and_is_retried(db, clock, monkeypatch):
    tracker = ProgressTracker(db, clock=clock)
    tracker.load()

    def broken_session():
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "session", broken_session)
    assert tracker.set(SYMBOL, "1h", 3 * HOUR) is True
    assert tracker.get(SYMBOL, "1h") == 3 * HOUR

    monkeypatch.undo()
    tracker.flush()

    reloaded = ProgressTracker(db, clock=clock)
    reloaded.load()
    assert reloaded.get(SYMBOL, "1h") == 3 * HOUR
