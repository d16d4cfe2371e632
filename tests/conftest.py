from __future__ import annotations

import asyncio
import itertools
import time
from pathlib import Path
from typing import Callable, Dict, List

import pytest

from torotator.config_manager import TorotatorSettings
from torotator.exceptions import LaunchError


class FakeProcess:
    """Stand-in for SupervisedProcess that never touches the OS."""

    _pids = itertools.count(1_000)

    def __init__(self, service: str, port: int, args: List[str]) -> None:
        self.service = service
        self.port = port
        self.args = list(args)
        self._pid = next(self._pids)
        self._exited = asyncio.Event()
        self.terminated = False
        self.wait_calls = 0

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def is_running(self) -> bool:
        return not self._exited.is_set()

    def signal_exit(self) -> asyncio.Event:
        return self._exited

    async def wait_exit(self) -> None:
        await self._exited.wait()

    async def wait(self) -> None:
        self.wait_calls += 1
        await self._exited.wait()

    async def terminate(self) -> None:
        if self._exited.is_set():
            return
        self.terminated = True
        self._exited.set()

    def crash(self) -> None:
        self._exited.set()


class FakeProcessFactory:
    """Records every launch; can be told to fail or stall launches per service."""

    def __init__(self) -> None:
        self.launched: List[FakeProcess] = []
        self.failures: Dict[str, int] = {}
        self.delays: Dict[str, float] = {}
        self.haproxy_configs: List[str] = []

    async def __call__(self, service, port, args, classifier=None, settle_seconds=0.25):
        delay = self.delays.get(service)
        if delay:
            await asyncio.sleep(delay)
        if self.failures.get(service, 0) > 0:
            self.failures[service] -= 1
            raise LaunchError(f"{service} on port {port} exited with code 1")
        if service == "haproxy":
            config_path = Path(args[args.index("-f") + 1])
            self.haproxy_configs.append(config_path.read_text(encoding="utf-8"))
        process = FakeProcess(service, port, args)
        self.launched.append(process)
        return process

    def by_service(self, service: str) -> List[FakeProcess]:
        return [process for process in self.launched if process.service == service]

    def live(self, service: str) -> List[FakeProcess]:
        return [process for process in self.by_service(service) if process.is_running]


@pytest.fixture
def process_factory() -> FakeProcessFactory:
    return FakeProcessFactory()


@pytest.fixture
def settings(tmp_path) -> TorotatorSettings:
    return TorotatorSettings(
        work_dir=tmp_path / "work",
        pool_size=3,
        check_port_bind=False,
        reload_quiet_seconds=0.2,
        reload_ceiling_seconds=1.0,
        settle_seconds=0.05,
        start_retry_delay_seconds=0.01,
    )


async def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def shutdown_event() -> asyncio.Event:
    return asyncio.Event()
