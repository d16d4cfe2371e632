from __future__ import annotations

import asyncio
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from .backend_registry import BackendRegistry
from .config_manager import TorotatorSettings
from .exceptions import LaunchError, PortExhaustedError
from .health import monitor_http_proxy_route, wait_for_socks_route
from .logging_utils import get_logger
from .port_allocator import PortAllocator
from .privoxy_process import PrivoxyProcess
from .process import ProcessFactory, SupervisedProcess
from .tor_process import TorProcess


class PairState(str, Enum):
    ALLOCATING = "allocating"
    STARTING = "starting"
    REGISTERED = "registered"
    RETIRING = "retiring"
    DONE = "done"


class RetireReason(str, Enum):
    SHUTDOWN = "shutdown"
    TOR_EXITED = "tor exited"
    PRIVOXY_EXITED = "privoxy exited"
    UNHEALTHY = "unhealthy"
    EXPIRED = "expired"


# STARTING -> ALLOCATING is the retry edge after a launch failure.
TRANSITIONS: Dict[PairState, FrozenSet[PairState]] = {
    PairState.ALLOCATING: frozenset({PairState.STARTING, PairState.DONE}),
    PairState.STARTING: frozenset({PairState.REGISTERED, PairState.ALLOCATING, PairState.DONE}),
    PairState.REGISTERED: frozenset({PairState.RETIRING}),
    PairState.RETIRING: frozenset({PairState.DONE}),
    PairState.DONE: frozenset(),
}


class WorkerPair:
    """A Tor process plus the Privoxy in front of it, exposed as one backend port.

    :meth:`run` drives the whole lifecycle: it retries launches until both
    processes run (or shutdown starts), registers the Privoxy port, waits for
    the first termination condition and retires the pair. The backend is
    deregistered before either process is killed.
    """

    def __init__(
        self,
        pair_id: int,
        settings: TorotatorSettings,
        allocator: PortAllocator,
        registry: BackendRegistry,
        shutdown_event: asyncio.Event,
        process_factory: ProcessFactory = SupervisedProcess.start,
    ) -> None:
        self.pair_id = pair_id
        self._settings = settings
        self._allocator = allocator
        self._registry = registry
        self._shutdown = shutdown_event
        self._process_factory = process_factory
        self._logger = get_logger(f"pair[{pair_id}]")

        self._state = PairState.ALLOCATING
        self.tor: Optional[TorProcess] = None
        self.privoxy: Optional[PrivoxyProcess] = None
        self.retire_reason: Optional[RetireReason] = None
        self.launch_failures = 0
        self._drain_tasks: List[asyncio.Task] = []

    @property
    def state(self) -> PairState:
        return self._state

    @property
    def backend_port(self) -> Optional[int]:
        return self.privoxy.port if self.privoxy else None

    def _transition(self, new_state: PairState) -> None:
        if new_state not in TRANSITIONS[self._state]:
            raise RuntimeError(
                f"pair {self.pair_id}: illegal transition {self._state.value} -> {new_state.value}"
            )
        self._logger.debug("%s -> %s", self._state.value, new_state.value)
        self._state = new_state

    async def run(self) -> Optional[RetireReason]:
        try:
            if not await self._establish():
                self._transition(PairState.DONE)
                return None
            self.retire_reason = await self._wait_for_termination()
            self._logger.info("Stopping proxy (%s)", self.retire_reason.value)
        finally:
            if self._state is PairState.REGISTERED:
                await self._retire()
        return self.retire_reason

    async def _establish(self) -> bool:
        while not self._shutdown.is_set():
            try:
                tor_port = self._allocator.lease()
            except PortExhaustedError as error:
                self.launch_failures += 1
                self._logger.warning("No port for Tor: %s", error)
                if await self._backoff():
                    break
                continue

            self._transition(PairState.STARTING)
            tor = TorProcess(
                tor_port,
                self._settings.work_dir,
                self._settings.circuit_time_seconds,
                tor_binary=self._settings.tor_binary,
                process_factory=self._process_factory,
                settle_seconds=self._settings.settle_seconds,
            )
            privoxy: Optional[PrivoxyProcess] = None
            try:
                if not await self._start_tor(tor):
                    await self._teardown(tor, None)
                    break
                privoxy = PrivoxyProcess(
                    self._allocator.lease(),
                    tor_port,
                    self._settings.work_dir,
                    privoxy_binary=self._settings.privoxy_binary,
                    process_factory=self._process_factory,
                    settle_seconds=self._settings.settle_seconds,
                )
                self._drain(await privoxy.start())
            except LaunchError as error:
                self.launch_failures += 1
                self._logger.error("Failed to start pair: %s", error)
                await self._teardown(tor, privoxy)
                if self._shutdown.is_set():
                    break
                self._transition(PairState.ALLOCATING)
                if await self._backoff():
                    break
                continue
            except BaseException:
                await self._teardown(tor, privoxy)
                raise

            self.tor, self.privoxy = tor, privoxy
            self._registry.register(privoxy.port)
            self._transition(PairState.REGISTERED)
            self._logger.info("Proxy started (tor %s, privoxy %s)", tor.port, privoxy.port)
            return True
        return False

    async def _start_tor(self, tor: TorProcess) -> bool:
        """Start Tor and wait for its route; False when shutdown interrupted the wait."""

        self._drain(await tor.start())
        timeout = self._settings.ready_timeout_seconds
        if timeout <= 0:
            return True
        ready = await wait_for_socks_route(
            tor.port,
            self._settings.health_check_url,
            timeout,
            self._settings.health_timeout_seconds,
            self._shutdown,
        )
        if ready:
            return True
        if self._shutdown.is_set():
            return False
        raise LaunchError(f"Tor on port {tor.port} not ready within {timeout:.0f}s")

    def _drain(self, process: SupervisedProcess) -> None:
        self._drain_tasks.append(asyncio.create_task(process.wait()))

    async def _backoff(self) -> bool:
        """Sleep the retry delay; True when shutdown started meanwhile."""

        try:
            await asyncio.wait_for(
                self._shutdown.wait(), timeout=self._settings.start_retry_delay_seconds
            )
        except asyncio.TimeoutError:
            return False
        return True

    async def _wait_for_termination(self) -> RetireReason:
        assert self.tor is not None and self.tor.process is not None
        assert self.privoxy is not None and self.privoxy.process is not None
        waiters: Dict[asyncio.Task, RetireReason] = {
            asyncio.create_task(self._shutdown.wait()): RetireReason.SHUTDOWN,
            asyncio.create_task(self.tor.process.wait_exit()): RetireReason.TOR_EXITED,
            asyncio.create_task(self.privoxy.process.wait_exit()): RetireReason.PRIVOXY_EXITED,
        }
        if self._settings.health_interval_seconds > 0:
            monitor = asyncio.create_task(
                monitor_http_proxy_route(
                    self.privoxy.port,
                    self._settings.health_check_url,
                    self._settings.health_interval_seconds,
                    self._settings.health_timeout_seconds,
                    self._settings.health_retries,
                )
            )
            waiters[monitor] = RetireReason.UNHEALTHY
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._settings.max_proxy_time_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in waiters:
                task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
        for task, reason in waiters.items():
            if task in done:
                return reason
        return RetireReason.EXPIRED

    async def _retire(self) -> None:
        self._transition(PairState.RETIRING)
        assert self.tor is not None and self.privoxy is not None
        self._registry.deregister(self.privoxy.port)
        await self._teardown(self.tor, self.privoxy)
        self._transition(PairState.DONE)
        self._logger.info("Proxy terminated")

    async def _teardown(self, tor: TorProcess, privoxy: Optional[PrivoxyProcess]) -> None:
        if privoxy is not None:
            await privoxy.close()
            self._allocator.release(privoxy.port)
        await tor.close()
        self._allocator.release(tor.port)
        if self._drain_tasks:
            await asyncio.gather(*self._drain_tasks, return_exceptions=True)
            self._drain_tasks.clear()

    def describe(self) -> Dict[str, object]:
        return {
            "pair_id": self.pair_id,
            "state": self._state.value,
            "tor_port": self.tor.port if self.tor else None,
            "privoxy_port": self.backend_port,
            "launch_failures": self.launch_failures,
        }
