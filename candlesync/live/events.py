"""Typed live events parsed from Binance combined-stream frames.

Wire format (one frame per kline update):

    {"stream": "btcusdt@kline_1h",
     "data":   {"e": "kline", "s": "BTCUSDT",
                "k": {"t": 1700000000000, "o": "37000.1", "h": "…", "l": "…",
                      "c": "…", "v": "…", "x": false, …}}}

``x`` is true on the last update of a bar.  Prices arrive as strings.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Union

from candlesync.data.candle_store import Candle
from candlesync.errors import ParseError
from candlesync.timeframes import timeframe_to_ms


@dataclass(frozen=True)
class FormingBar:
    candle: Candle

    def payload(self) -> dict[str, Any]:
        return {"tf": self.candle.timeframe, "forming": self.candle.as_row()}


@dataclass(frozen=True)
class ClosedBar:
    candle: Candle

    def payload(self) -> dict[str, Any]:
        return {"tf": self.candle.timeframe, "closed": self.candle.as_row()}


LiveEvent = Union[FormingBar, ClosedBar]


def _number(k: dict, field: str) -> float:
    try:
        value = float(k[field])
    except KeyError:
        raise ParseError(f"kline missing field '{field}'") from None
    except (TypeError, ValueError):
        raise ParseError(f"kline field '{field}' is not numeric: {k[field]!r}") from None
    if not math.isfinite(value):
        raise ParseError(f"kline field '{field}' is not finite: {value}")
    return value


def parse_kline_message(raw: str | bytes) -> LiveEvent | None:
    """Parse one combined-stream frame.

    Returns None for frames that are not kline events (subscription acks,
    other event types).  Raises ParseError for anything claiming to be a
    kline that cannot be turned into a fully typed bar.
    """
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"invalid JSON frame: {exc}") from exc
    if not isinstance(msg, dict):
        return None

    data = msg.get("data")
    if not isinstance(data, dict) or data.get("e") != "kline":
        return None

    stream = msg.get("stream")
    if not isinstance(stream, str) or "@kline_" not in stream:
        raise ParseError(f"kline frame has no usable stream name: {stream!r}")
    prefix, timeframe = stream.split("@kline_", 1)
    try:
        timeframe_to_ms(timeframe)
    except ValueError as exc:
        raise ParseError(str(exc)) from None

    k = data.get("k")
    if not isinstance(k, dict):
        raise ParseError("kline frame has no 'k' object")

    raw_ts = k.get("t")
    if isinstance(raw_ts, bool) or not isinstance(raw_ts, int):
        raise ParseError(f"kline open time is not an integer: {raw_ts!r}")
    closed = k.get("x")
    if not isinstance(closed, bool):
        raise ParseError(f"kline closed flag is not a boolean: {closed!r}")

    symbol = str(data.get("s") or prefix).upper()
    candle = Candle(
        symbol=symbol,
        timeframe=timeframe,
        timestamp=raw_ts,
        open=_number(k, "o"),
        high=_number(k, "h"),
        low=_number(k, "l"),
        close=_number(k, "c"),
        volume=_number(k, "v"),
    )
    return ClosedBar(candle) if closed else FormingBar(candle)
