from __future__ import annotations

from fastapi import Request
from starlette.requests import HTTPConnection

from candlesync.engine import CandleSyncEngine


def get_engine(request: Request) -> CandleSyncEngine:
    return request.app.state.engine


def connection_engine(conn: HTTPConnection) -> CandleSyncEngine:
    """Same as ``get_engine`` for routes that receive a WebSocket."""
    return conn.app.state.engine
