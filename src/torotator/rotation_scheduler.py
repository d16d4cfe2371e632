from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable, Dict, Optional, Set

from .backend_registry import BackendRegistry
from .config_manager import TorotatorSettings
from .logging_utils import get_logger
from .port_allocator import PortAllocator
from .process import ProcessFactory, SupervisedProcess
from .worker_pair import RetireReason, WorkerPair

PairFactory = Callable[[int], WorkerPair]


class RotationScheduler:
    """Keep ``pool_size`` worker pairs alive, replacing each one as it retires.

    Admission is bounded by a semaphore: a slot is taken before a pair is
    created and given back once the pair has fully retired. Every pair task is
    also tracked separately so shutdown can wait for all of them.
    """

    def __init__(
        self,
        settings: TorotatorSettings,
        allocator: PortAllocator,
        registry: BackendRegistry,
        shutdown_event: asyncio.Event,
        process_factory: ProcessFactory = SupervisedProcess.start,
        pair_factory: Optional[PairFactory] = None,
    ) -> None:
        self._settings = settings
        self._allocator = allocator
        self._registry = registry
        self._shutdown = shutdown_event
        self._process_factory = process_factory
        self._pair_factory = pair_factory or self._build_pair
        self._logger = get_logger("scheduler")

        self._gate = asyncio.Semaphore(settings.pool_size)
        self._tasks: Set[asyncio.Task] = set()
        self._pairs: Dict[int, WorkerPair] = {}
        self._pair_ids = itertools.count(1)
        self._admitted = 0
        self._retired: Dict[str, int] = {}

    @property
    def live_pairs(self) -> int:
        return len(self._pairs)

    @property
    def admitted(self) -> int:
        return self._admitted

    def _build_pair(self, pair_id: int) -> WorkerPair:
        return WorkerPair(
            pair_id,
            self._settings,
            self._allocator,
            self._registry,
            self._shutdown,
            process_factory=self._process_factory,
        )

    async def run(self) -> None:
        """Admit pairs until shutdown, then wait for every live pair to retire."""

        self._logger.info("Rotating %s proxies", self._settings.pool_size)
        while not self._shutdown.is_set():
            if not await self._admit():
                break
            pair = self._pair_factory(next(self._pair_ids))
            self._pairs[pair.pair_id] = pair
            self._admitted += 1
            task = asyncio.create_task(self._run_pair(pair))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        self._logger.info("Stopped admitting, waiting for %s pairs to retire", len(self._tasks))
        await self.join()

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _admit(self) -> bool:
        acquire = asyncio.create_task(self._gate.acquire())
        stop = asyncio.create_task(self._shutdown.wait())
        await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
        stop.cancel()
        if not acquire.done():
            acquire.cancel()
        await asyncio.gather(acquire, stop, return_exceptions=True)

        acquired = acquire.done() and not acquire.cancelled() and acquire.exception() is None
        if acquired and self._shutdown.is_set():
            self._gate.release()
            return False
        return acquired

    async def _run_pair(self, pair: WorkerPair) -> None:
        try:
            reason = await pair.run()
            if reason is not None:
                self._retired[reason.value] = self._retired.get(reason.value, 0) + 1
                if reason is not RetireReason.SHUTDOWN and not self._shutdown.is_set():
                    self._logger.info(
                        "Pair %s retired (%s), admitting a replacement", pair.pair_id, reason.value
                    )
        except Exception:  # noqa: BLE001
            self._logger.exception("Pair %s failed", pair.pair_id)
        finally:
            self._pairs.pop(pair.pair_id, None)
            self._gate.release()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pool_size": self._settings.pool_size,
            "live_pairs": [pair.describe() for pair in self._pairs.values()],
            "admitted": self._admitted,
            "retired": dict(self._retired),
            "leased_ports": sorted(self._allocator.leased()),
        }
