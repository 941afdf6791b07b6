"""Binance historical kline client.

Example HTTP request:
    GET https://api.binance.com/api/v3/klines
        ?symbol=BTCUSDT
        &interval=1h
        &startTime=1700000000000
        &limit=1000

Response rows are ``[openTime, open, high, low, close, volume, closeTime, …]``
with prices as strings.  Rows are returned untouched; parsing and the
partial-bar guard belong to the backfiller.

Retry policy
────────────
429 and 5xx responses and network errors (including the per-request timeout)
are retried with exponential back-off: ``retry_base * 2**attempt`` seconds,
``max_retries`` attempts.  Other 4xx responses will not succeed on retry and
raise immediately.  Either way the caller sees ``TransientFetchError``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

import httpx

from candlesync.errors import MalformedPageError, TransientFetchError
from candlesync.timeframes import timeframe_to_ms

logger = logging.getLogger(__name__)

_HEADERS = {
    "User-Agent": "candlesync/0.1 (+https://github.com/)",
    "Accept": "application/json",
}

MAX_PAGE_SIZE = 1000


class HistoricalSource(Protocol):
    async def fetch_ohlcv(
        self, symbol: str, timeframe: str, start: int, limit: int
    ) -> list[list[Any]]: ...


class BinanceClient:
    """Paginated kline fetches against the Binance spot REST API."""

    def __init__(
        self,
        base_url: str = "https://api.binance.com",
        *,
        timeout: float = 20.0,
        max_retries: int = 4,
        retry_base: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=_HEADERS,
            follow_redirects=True,
            timeout=timeout,
            transport=transport,
        )
        self._max_retries = max(1, max_retries)
        self._retry_base = retry_base
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_ohlcv(
        self,
        symbol: str,
        timeframe: str,
        start: int,
        limit: int = MAX_PAGE_SIZE,
    ) -> list[list[Any]]:
        """Fetch up to *limit* klines opening at or after *start* (epoch ms).

        Raises
        ------
        TransientFetchError
            Network/HTTP failure after retries, or a non-retryable 4xx.
        MalformedPageError
            The body is not a JSON array.
        """
        timeframe_to_ms(timeframe)  # reject unknown labels before hitting the API
        params: dict[str, object] = {
            "symbol":    symbol,
            "interval":  timeframe,
            "startTime": start,
            "limit":     min(max(limit, 1), MAX_PAGE_SIZE),
        }

        last_error = "no attempt made"
        for attempt in range(self._max_retries):
            wait = self._retry_base * (2 ** attempt)
            try:
                resp = await self._client.get("/api/v3/klines", params=params)
            except httpx.RequestError as exc:
                last_error = f"network error: {exc!r}"
                logger.warning(
                    "[Binance] Network error %s/%s (attempt %d/%d): %s — sleeping %.1fs",
                    symbol, timeframe, attempt + 1, self._max_retries, exc, wait,
                )
                if attempt < self._max_retries - 1:
                    await self._sleep(wait)
                continue

            if resp.status_code == 429 or resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}"
                logger.warning(
                    "[Binance] HTTP %s for %s/%s — sleeping %.1fs (attempt %d/%d)",
                    resp.status_code, symbol, timeframe, wait, attempt + 1, self._max_retries,
                )
                if attempt < self._max_retries - 1:
                    await self._sleep(wait)
                continue

            if resp.status_code >= 400:
                # Bad symbol, interval or params: the same request will fail again.
                raise TransientFetchError(
                    f"Binance HTTP {resp.status_code} for {symbol}/{timeframe}: {resp.text[:200]}"
                )

            try:
                data = resp.json()
            except ValueError as exc:
                raise MalformedPageError(
                    f"Binance returned non-JSON body for {symbol}/{timeframe}"
                ) from exc
            if not isinstance(data, list):
                raise MalformedPageError(
                    f"Binance returned {type(data).__name__} instead of a kline list "
                    f"for {symbol}/{timeframe}"
                )
            return data

        raise TransientFetchError(
            f"Binance: failed to fetch {symbol}/{timeframe} from {start} "
            f"after {self._max_retries} attempts ({last_error})"
        )
