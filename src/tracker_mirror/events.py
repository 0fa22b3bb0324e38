"""
Listener fan-out for issue and context change notifications.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

EVENT_ISSUE_DATA_CHANGED = "issue.data_changed"
EVENT_QUERY_LIST_CHANGED = "context.query_list_changed"
EVENT_QUERY_RESULT_CHANGED = "query.result_changed"

ChangeListener = Callable[[str, Any], None]


class ChangeSupport:
    """Keeps listeners for one source object and fires events synchronously."""

    def __init__(self, source: Any):
        self._source = source
        self._listeners: list[ChangeListener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def has_listeners(self) -> bool:
        with self._lock:
            return bool(self._listeners)

    def fire(self, event: str) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, self._source)
            except Exception:
                logger.exception("Listener failed while handling %s", event)
