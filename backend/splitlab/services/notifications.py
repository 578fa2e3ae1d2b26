"""Realtime winner notifications.

Subscribers register per experiment code. Broadcasting never blocks: each
subscriber only enqueues the message, and the websocket endpoint drains its
queue on the event loop.
"""
import asyncio
import threading
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Set

import structlog

from splitlab.timeutils import isoformat

logger = structlog.get_logger()


class Subscriber(Protocol):
    def send(self, message: Dict[str, Any]) -> None: ...


class QueueSubscriber:
    """Subscriber backed by an asyncio queue, safe to feed from worker threads."""

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 100):
        self.loop = loop
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)

    def send(self, message: Dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self._put, message)

    def _put(self, message: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            # Slow consumer: drop rather than grow without bound
            logger.warning("subscriber_queue_full", message_type=message.get("type"))

    async def receive(self) -> Dict[str, Any]:
        return await self.queue.get()


class WinnerBroadcaster:
    """Fan-out of winner changes to subscribers of an experiment code."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Set[Subscriber]] = {}

    def subscribe(self, experiment_code: str, subscriber: Subscriber) -> bool:
        code = str(experiment_code or "").strip()
        if not code:
            return False
        with self._lock:
            self._subscribers.setdefault(code, set()).add(subscriber)
        return True

    def unsubscribe(self, experiment_code: str, subscriber: Subscriber) -> None:
        code = str(experiment_code or "").strip()
        with self._lock:
            subs = self._subscribers.get(code)
            if subs is None:
                return
            subs.discard(subscriber)
            if not subs:
                del self._subscribers[code]

    def unsubscribe_all(self, subscriber: Subscriber) -> None:
        with self._lock:
            for code in list(self._subscribers):
                subs = self._subscribers[code]
                subs.discard(subscriber)
                if not subs:
                    del self._subscribers[code]

    def subscriber_count(self, experiment_code: str) -> int:
        with self._lock:
            return len(self._subscribers.get(experiment_code, ()))

    def broadcast_winner_changed(self, experiment_code: str, winner_variant_key: Optional[str],
                                 decided_at: Optional[datetime]) -> int:
        """
        Notify subscribers of ``experiment_code``.

        Returns:
            Number of subscribers the message was handed to
        """
        code = str(experiment_code or "").strip()
        if not code:
            return 0

        with self._lock:
            subs = list(self._subscribers.get(code, ()))
        if not subs:
            return 0

        message = {
            "type": "winner",
            "experimentCode": code,
            "winnerVariantKey": winner_variant_key or None,
            "decidedAt": isoformat(decided_at),
        }

        delivered = 0
        for subscriber in subs:
            try:
                subscriber.send(message)
                delivered += 1
            except RuntimeError as e:
                # Event loop of a disconnected websocket already closed
                logger.warning("winner_broadcast_send_failed", experiment_code=code, error=str(e))
                self.unsubscribe_all(subscriber)
        return delivered
