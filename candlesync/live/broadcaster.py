"""Fan-out hub for live subscribers.

Delivery is best-effort: every publish goes to a snapshot of the subscriber
set taken before the first send, so subscribe/unsubscribe during a publish
never disturbs the iteration.  A subscriber whose send fails, or does not
complete within ``send_timeout`` seconds, is dropped and the remaining ones
still receive the message.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    async def send_text(self, data: str) -> None: ...


class Broadcaster:

    def __init__(self, send_timeout: float = 5.0) -> None:
        self._subscribers: set[Subscriber] = set()
        self._closed = False
        self._send_timeout = send_timeout

    def __len__(self) -> int:
        return len(self._subscribers)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, sub: Subscriber) -> bool:
        """Register *sub*.  Returns False once the broadcaster is closed."""
        if self._closed:
            return False
        self._subscribers.add(sub)
        logger.debug("[Broadcast] Subscriber joined (%d active)", len(self._subscribers))
        return True

    def unsubscribe(self, sub: Subscriber) -> None:
        self._subscribers.discard(sub)

    async def publish(self, event: dict[str, Any]) -> int:
        """Send *event* to every subscriber.  Returns the delivery count."""
        if not self._subscribers:
            return 0
        message = json.dumps(event)
        delivered = 0
        for sub in list(self._subscribers):
            try:
                await asyncio.wait_for(sub.send_text(message), timeout=self._send_timeout)
            except asyncio.TimeoutError:
                self._subscribers.discard(sub)
                logger.info(
                    "[Broadcast] Dropping subscriber stalled for %.1fs", self._send_timeout
                )
                continue
            except Exception as exc:
                # Any transport failure means this subscriber is gone.
                self._subscribers.discard(sub)
                logger.info("[Broadcast] Dropping subscriber after send failure: %r", exc)
                continue
            delivered += 1
        return delivered

    async def close(self) -> None:
        """Refuse new subscribers and close the existing ones."""
        self._closed = True
        subs, self._subscribers = list(self._subscribers), set()
        for sub in subs:
            closer = getattr(sub, "close", None)
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                logger.debug("[Broadcast] Error closing subscriber: %r", exc)
        logger.info("[Broadcast] Closed (%d subscriber(s) disconnected)", len(subs))
