from __future__ import annotations

import logging
import queue
from collections import defaultdict
from threading import RLock
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)


def group_room(group_id: int) -> str:
    return f"group:{group_id}"


def direct_room(user_a: int, user_b: int) -> str:
    low, high = sorted((int(user_a), int(user_b)))
    return f"direct:{low}:{high}"


class Subscription:
    """One connection's view of a room: a bounded inbox filled by the hub."""

    def __init__(self, hub: "ChatHub", room: str, max_pending: int) -> None:
        self.hub = hub
        self.room = room
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=max_pending)
        self.closed = False

    def deliver(self, message: Dict[str, Any]) -> bool:
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.hub.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class ChatHub:
    """In-process fan-out of chat messages to subscribers of a room."""

    def __init__(self, max_pending: int = 100) -> None:
        self.max_pending = max_pending
        self._rooms: Dict[str, Set[Subscription]] = defaultdict(set)
        self._lock = RLock()

    def subscribe(self, room: str) -> Subscription:
        subscription = Subscription(self, room, self.max_pending)
        with self._lock:
            self._rooms[room].add(subscription)
        logger.debug("subscribed to %s", room)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._rooms.get(subscription.room)
            if not subscribers:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._rooms[subscription.room]

    def publish(self, room: str, message: Dict[str, Any]) -> int:
        with self._lock:
            subscribers = list(self._rooms.get(room, ()))

        delivered = 0
        for subscription in subscribers:
            if subscription.deliver(message):
                delivered += 1
            else:
                logger.warning("dropping message for slow subscriber on %s", room)
        return delivered

    def subscriber_count(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))
