from __future__ import annotations

import threading
from typing import Callable, Optional, Set

from .exceptions import PortExhaustedError
from .logging_utils import get_logger
from .utils import port_available


class PortAllocator:
    """Hand out TCP ports from a fixed range, never reusing one still leased.

    Candidates are taken from a rolling cursor that starts at ``floor`` and wraps
    back to it after ``ceiling``. Ports still held by a live process are skipped,
    as are ports that cannot be bound locally when ``bind_check`` is set.
    """

    def __init__(
        self,
        floor: int,
        ceiling: int,
        bind_check: Optional[Callable[[int], bool]] = port_available,
    ) -> None:
        if ceiling < floor:
            raise ValueError("ceiling must be greater than or equal to floor")
        self._floor = floor
        self._ceiling = ceiling
        self._bind_check = bind_check
        self._next_port = floor
        self._leased: Set[int] = set()
        self._lock = threading.Lock()
        self._logger = get_logger("ports")

    @property
    def capacity(self) -> int:
        return self._ceiling - self._floor + 1

    def lease(self) -> int:
        with self._lock:
            for _ in range(self.capacity):
                port = self._advance()
                if port in self._leased:
                    continue
                if self._bind_check is not None and not self._bind_check(port):
                    self._logger.debug("Port %s is bound elsewhere, skipping", port)
                    continue
                self._leased.add(port)
                return port
        raise PortExhaustedError(
            f"No free port between {self._floor} and {self._ceiling} "
            f"({len(self._leased)} leased)"
        )

    def release(self, port: int) -> None:
        with self._lock:
            self._leased.discard(port)

    def is_leased(self, port: int) -> bool:
        with self._lock:
            return port in self._leased

    def leased(self) -> Set[int]:
        with self._lock:
            return set(self._leased)

    def _advance(self) -> int:
        port = self._next_port
        self._next_port += 1
        if self._next_port > self._ceiling:
            self._next_port = self._floor
            self._logger.info("Port cursor wrapped back to %s", self._floor)
        return port
