from __future__ import annotations

import httpx
import pytest

from candlesync.data.binance_client import BinanceClient
from candlesync.errors import MalformedPageError, TransientFetchError

from tests.conftest import HOUR, kline_row


def _client(handler, sleeps: list[float], max_retries: int = 3) -> BinanceClient:
    async def record(secs: float) -> None:
        sleeps.append(secs)

    return BinanceClient(
        "https://api.binance.test",
        max_retries=max_retries,
        retry_base=1.0,
        transport=httpx.MockTransport(handler),
        sleep=record,
    )


@pytest.mark.asyncio
async def test_fetch_sends_kline_query():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[kline_row(0), kline_row(HOUR)])

    client = _client(handler, [])
    rows = await client.fetch_ohlcv("BTCUSDT", "1h", 0, 5000)
    await client.aclose()

    assert len(rows) == 2
    params = seen[0].url.params
    assert seen[0].url.path == "/api/v3/klines"
    assert params["symbol"] == "BTCUSDT"
    assert params["interval"] == "1h"
    assert params["startTime"] == "0"
    assert params["limit"] == "1000"


@pytest.mark.asyncio
async def test_rate_limit_is_retried_with_backoff():
    responses = iter([httpx.Response(429), httpx.Response(503), httpx.Response(200, json=[])])
    sleeps: list[float] = []

    client = _client(lambda request: next(responses), sleeps)
    assert await client.fetch_ohlcv("BTCUSDT", "1h", 0, 10) == []
    await client.aclose()

    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_network_errors_exhaust_into_transient_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    sleeps: list[float] = []
    client = _client(handler, sleeps, max_retries=3)
    with pytest.raises(TransientFetchError):
        await client.fetch_ohlcv("BTCUSDT", "1h", 0, 10)
    await client.aclose()

    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"code": -1121, "msg": "Invalid symbol."})

    client = _client(handler, [])
    with pytest.raises(TransientFetchError, match="400"):
        await client.fetch_ohlcv("NOPE", "1h", 0, 10)
    await client.aclose()

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_non_list_body_is_malformed():
    client = _client(lambda request: httpx.Response(200, json={"rows": []}), [])
    with pytest.raises(MalformedPageError):
        await client.fetch_ohlcv("BTCUSDT", "1h", 0, 10)
    await client.aclose()


@pytest.mark.asyncio
async def test_unknown_timeframe_is_rejected_before_request():
    client = _client(lambda request: httpx.Response(200, json=[]), [])
    with pytest.raises(ValueError):
        await client.fetch_ohlcv("BTCUSDT", "7m", 0, 10)
    await client.aclose()
