from __future__ import annotations

import dataclasses
import time

import pytest
from fastapi.testclient import TestClient

import config
from candlesync.app_factory import create_app
from candlesync.engine import CandleSyncEngine
from candlesync.timeframes import DAY_MS

from tests.conftest import HOUR, NOW, SYMBOL, FakeClock, FakeConnect, FakeSource, make_candle, no_sleep


@pytest.fixture
def engine(db) -> CandleSyncEngine:
    return CandleSyncEngine(
        db, FakeSource(),
        symbol=SYMBOL,
        timeframes=("1h",),
        clock=FakeClock(),
        sleep=no_sleep,
        connect=FakeConnect(),
    )


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine, start_sync=False)) as c:
        yield c


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["live"] == "disconnected"


class TestCandles:

    def test_returns_stored_range(self, client, engine):
        engine.store.upsert_many([make_candle(i * HOUR, close=100.0 + i) for i in range(5)])

        resp = client.get("/api/candles", params={"tf": "1h", "since": 0, "to": 4 * HOUR, "limit": 10})

        assert resp.status_code == 200
        body = resp.json()
        assert [c["timestamp"] for c in body["data"]] == [i * HOUR for i in range(5)]
        assert body["data"][4]["close"] == 104.0
        assert body["meta"]["count"] == 5
        assert body["meta"]["msPerCandle"] == HOUR
        assert body["meta"]["lastTimestamp"] == 4 * HOUR

    def test_pages_past_the_store_bound(self, client, engine):
        engine.store.upsert_many([make_candle(i * HOUR) for i in range(1500)])

        body = client.get(
            "/api/candles", params={"tf": "1h", "since": 0, "to": 2000 * HOUR, "limit": 1200}
        ).json()

        stamps = [c["timestamp"] for c in body["data"]]
        assert len(stamps) == 1200
        assert stamps == sorted(set(stamps))

    def test_display_symbol_is_normalised(self, client, engine):
        engine.store.upsert(make_candle(0))
        body = client.get("/api/candles", params={"symbol": "btc/usdt", "since": 0, "to": HOUR}).json()
        assert body["meta"]["symbol"] == SYMBOL
        assert len(body["data"]) == 1

    def test_future_since_returns_empty_with_warning(self, client):
        body = client.get("/api/candles", params={"since": NOW + HOUR, "to": NOW + 5 * HOUR}).json()
        assert body["data"] == []
        assert body["meta"]["warning"] == "since is in the future"

    def test_period_sets_window_and_limit(self, client, engine):
        engine.store.upsert_many([make_candle(i * HOUR) for i in range(4)])

        body = client.get("/api/candles", params={"tf": "1h", "period": "1D"}).json()

        assert body["meta"]["from"] == -DAY_MS
        assert body["meta"]["limit"] == 24
        assert body["meta"]["period"] == "1D"
        assert [c["timestamp"] for c in body["data"]] == [i * HOUR for i in range(4)]

    @pytest.mark.parametrize("params", [
        {"tf": "7m"},
        {"period": "2W"},
        {"since": 5 * HOUR, "to": HOUR},
        {"since": 0, "to": HOUR, "limit": 0},
    ])
    def test_bad_requests(self, client, params):
        assert client.get("/api/candles", params=params).status_code == 400


class TestSync:

    def test_status(self, client, engine):
        engine.store.upsert(make_candle(0))
        engine.tracker.set(SYMBOL, "1h", HOUR)

        body = client.get("/api/sync/status").json()

        assert body["symbol"] == SYMBOL
        assert body["series"] == [{
            "timeframe": "1h", "cursor": HOUR, "cursor_iso": "1970-01-01T01:00:00+00:00",
            "stored": 1, "latest": 0,
        }]

    def test_gaps(self, client, engine):
        engine.store.upsert_many([make_candle(0), make_candle(3 * HOUR)])

        body = client.get("/api/sync/gaps/1h").json()

        assert body["count"] == 1
        assert body["gaps"][0]["start"] == HOUR
        assert body["gaps"][0]["end"] == 2 * HOUR
        assert body["missing_bars"] == 2

    def test_gaps_unknown_timeframe(self, client):
        assert client.get("/api/sync/gaps/7m").status_code == 400

    def test_repair_is_scheduled(self, client, engine):
        resp = client.post("/api/sync/repair")
        assert resp.status_code == 202
        assert resp.json()["timeframes"] == ["1h"]

    @pytest.mark.parametrize("phase", ["backfilling", "seeding"])
    def test_repair_is_rejected_during_initial_backfill(self, client, engine, phase):
        engine.phase = phase
        assert client.post("/api/sync/repair").status_code == 409
        assert client.get("/api/sync/status").json()["backfill_running"] is True

    def test_second_repair_is_rejected_while_running(self, client, monkeypatch):
        monkeypatch.setattr(CandleSyncEngine, "backfill_running", property(lambda self: True))
        assert client.post("/api/sync/repair").status_code == 409

    def test_api_key_is_enforced_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(config, "settings", dataclasses.replace(config.settings, api_key="secret"))

        assert client.post("/api/sync/repair").status_code == 401
        resp = client.post("/api/sync/repair", headers={"Authorization": "Bearer secret"})
        assert resp.status_code == 202


def test_websocket_subscriber_receives_broadcasts(client, engine):
    with client.websocket_connect("/ws") as ws:
        for _ in range(200):
            if len(engine.broadcaster) == 1:
                break
            time.sleep(0.01)

        delivered = client.portal.call(engine.broadcaster.publish, {"tf": "1h", "forming": [0, 1, 2, 0.5, 1.5, 3]})

        assert delivered == 1
        assert ws.receive_json() == {"tf": "1h", "forming": [0, 1, 2, 0.5, 1.5, 3]}

    for _ in range(200):
        if len(engine.broadcaster) == 0:
            break
        time.sleep(0.01)
    assert len(engine.broadcaster) == 0
