"""Callback registry for device events.

Device pushes and engine notifications are delivered to plain callables.
Subscribing returns an unsubscribe function, like the rest of the SDK.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# Session events
CONNECTION_CHANGED = "connection_changed"
UPLOAD_PROGRESS = "upload_progress"
UPLOAD_FINISHED = "upload_finished"
DOWNLOAD_PROGRESS = "download_progress"
NOW_DISPLAYING = "now_displaying"
FIRMWARE_UPDATE_PROGRESS = "firmware_update_progress"
WRITING_IN_STORAGE = "writing_in_storage"
UNSOLICITED = "unsolicited"

# Discovery events
DEVICES_CHANGED = "devices_changed"


class EventHub:
    """Thread-safe named-event fan-out.

    Callbacks run synchronously on the emitting thread. A callback that
    raises is logged and skipped; it never breaks the emitter or other
    subscribers. Keep callbacks short: a slow progress observer stalls the
    next chunk of a transfer.

    Example:
        >>> hub = EventHub()
        >>> unsub = hub.subscribe(UPLOAD_PROGRESS, lambda pct: print(f"{pct:.1f}%"))
        >>> hub.emit(UPLOAD_PROGRESS, 50.0)
        50.0%
        >>> unsub()
    """

    def __init__(self):
        self._callbacks: Dict[str, List[Callable[..., Any]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register callback for event.

        Returns:
            Unsubscribe function (call to remove subscription)
        """
        with self._lock:
            self._callbacks.setdefault(event, []).append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._callbacks.get(event, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def emit(self, event: str, *args: Any) -> None:
        with self._lock:
            callbacks = list(self._callbacks.get(event, ()))

        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in {event} callback: {e}")

    def subscriber_count(self, event: str) -> int:
        with self._lock:
            return len(self._callbacks.get(event, ()))

    def clear(self) -> None:
        with self._lock:
            self._callbacks.clear()
