from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional

from .logging_utils import get_logger

ChangeListener = Callable[[], None]


class BackendRegistry:
    """Set of backend ports currently eligible to receive traffic.

    Every mutation is followed by a call to the change listener, made after the
    registry lock is released. The listener only queues a reload; the reload
    reads :meth:`snapshot` when it executes.
    """

    def __init__(self, on_change: Optional[ChangeListener] = None) -> None:
        self._backends: Dict[int, bool] = {}
        self._lock = threading.Lock()
        self._on_change = on_change
        self._logger = get_logger("registry")

    def set_listener(self, on_change: Optional[ChangeListener]) -> None:
        self._on_change = on_change

    def register(self, port: int) -> None:
        with self._lock:
            self._backends[port] = True
            size = len(self._backends)
        self._logger.info("Registered backend %s (%s active)", port, size)
        self._notify()

    def deregister(self, port: int) -> None:
        with self._lock:
            self._backends.pop(port, None)
            size = len(self._backends)
        self._logger.info("Deregistered backend %s (%s active)", port, size)
        self._notify()

    def snapshot(self) -> List[int]:
        with self._lock:
            return sorted(self._backends)

    def __contains__(self, port: object) -> bool:
        with self._lock:
            return port in self._backends

    def __len__(self) -> int:
        with self._lock:
            return len(self._backends)

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()
