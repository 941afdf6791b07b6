"""Exception taxonomy for the sync engine.

Only the API layer turns these into HTTP errors.  Inside the engine every
one of them is caught at a component boundary, logged, and the surrounding
loop keeps running.
"""
from __future__ import annotations


class SyncError(Exception):
    """Base class for all candlesync errors."""


class ParseError(SyncError, ValueError):
    """An inbound payload could not be turned into a typed bar."""


class MalformedPageError(ParseError):
    """A historical page did not have the expected row-sequence shape."""


class TransientFetchError(SyncError):
    """Upstream fetch failed (network, rate limit, HTTP error)."""


class PersistenceError(SyncError):
    """A write to the candle store did not complete."""


class StreamConnectionError(SyncError):
    """The live stream could not be opened or dropped mid-stream."""


class ConfigError(SyncError):
    """Persisted sync state is unreadable; callers fall back to defaults."""
