from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Callable

from osis_sync.models import serialize_datetime, utc_now

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict[str, Any]], None]


class ChangeBus:
    """In-process fan-out of change notifications with a short history."""

    def __init__(self, history: int = 200) -> None:
        self._subscribers: list[Subscriber] = []
        self._recent: deque[dict[str, Any]] = deque(maxlen=max(1, history))
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, topic: str, **details: Any) -> dict[str, Any]:
        record = {"topic": topic, "at": serialize_datetime(utc_now()), **details}
        with self._lock:
            self._recent.append(record)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(record)
            except Exception:
                logger.exception("notification subscriber failed for %s", topic)
        return record

    def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._recent)
        return list(reversed(items))[: max(1, limit)]
