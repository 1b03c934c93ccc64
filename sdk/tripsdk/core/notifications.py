"""User-facing error notifications.

Every error the user should learn about goes through one ``ErrorNotifier``.
Listeners (a UI, the local API, tests) register callbacks; the notifier
also logs each notification.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from tripsdk.core.errors import ErrorCode

log = structlog.get_logger()


@dataclass(frozen=True)
class ErrorNotification:
    code: ErrorCode
    message: str
    from_background: bool


ErrorListener = Callable[[ErrorNotification], None]


class ErrorNotifier:
    """Fan-out of error notifications to registered listeners.

    The last ``history_size`` notifications are kept for ``recent()``.
    """

    def __init__(self, history_size: int = 50) -> None:
        self._lock = threading.Lock()
        self._listeners: list[ErrorListener] = []
        self._recent: deque[ErrorNotification] = deque(maxlen=history_size)

    def add_listener(self, listener: ErrorListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ErrorListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def notify(self, code: ErrorCode, message: str, from_background: bool = True) -> None:
        notification = ErrorNotification(code=code, message=message,
                                         from_background=from_background)
        log.warning("error_notified", code=code.name, message=message,
                    from_background=from_background)
        with self._lock:
            self._recent.append(notification)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(notification)
            except Exception:
                log.error("error_listener_failed", code=code.name, exc_info=True)

    def recent(self) -> list[ErrorNotification]:
        with self._lock:
            return list(self._recent)
