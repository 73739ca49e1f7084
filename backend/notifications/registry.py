"""
Per-user subscriber callbacks for real-time notifications.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Callback = Callable[[Dict[str, Any]], None]


class NotificationRegistry:
    """
    Thread-safe map of user id to subscriber callbacks.

    Callbacks run on the publishing thread and must not block; the
    WebSocket endpoint hands payloads to its event loop.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[int, List[Callback]] = {}
        self._stats: Dict[int, Dict[str, Any]] = {}

    def register(self, user_id: int, callback: Callback) -> Callable[[], None]:
        """Subscribe ``callback``; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(callback)
            count = len(self._subscribers[user_id])
            self._stats[user_id] = {
                "count": count,
                "last_activity": datetime.now(timezone.utc).isoformat(),
            }
        logger.info("User %s registered for notifications (%d connections)", user_id, count)

        def unregister():
            with self._lock:
                callbacks = self._subscribers.get(user_id)
                if not callbacks or callback not in callbacks:
                    return
                callbacks.remove(callback)
                if callbacks:
                    self._stats[user_id]["count"] = len(callbacks)
                else:
                    del self._subscribers[user_id]
                    self._stats.pop(user_id, None)
            logger.info("User %s unregistered from notifications", user_id)

        return unregister

    def publish(self, user_id: int, payload: Dict[str, Any]) -> int:
        """Deliver ``payload`` to every subscriber of ``user_id``; returns the delivered count."""
        with self._lock:
            callbacks = list(self._subscribers.get(user_id, ()))

        delivered = 0
        for callback in callbacks:
            try:
                callback(payload)
                delivered += 1
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.error("Notification callback failed for user %s: %s", user_id, e)

        with self._lock:
            stats = self._stats.get(user_id)
            if stats is not None:
                stats["last_activity"] = datetime.now(timezone.utc).isoformat()
                stats["last_notification"] = {
                    "type": payload.get("type"),
                    "delivered": delivered,
                    "failed": len(callbacks) - delivered,
                }
        return delivered

    def connection_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, ()))

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_users": len(self._subscribers),
                "total_connections": sum(len(c) for c in self._subscribers.values()),
                "users": {uid: dict(stats) for uid, stats in self._stats.items()},
            }
