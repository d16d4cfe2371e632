from __future__ import annotations

import asyncio
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .backend_registry import BackendRegistry
from .config_manager import TorotatorSettings
from .exceptions import (
    FatalStartupError,
    HandoffError,
    LaunchError,
    RenderError,
    TerminationError,
)
from .haproxy_config import HAProxyDescriptor, render_config, write_config_atomic
from .log_parsers import classify_haproxy_line
from .logging_utils import get_logger
from .process import ProcessFactory, SupervisedProcess
from .utils import ensure_directory, remove_directory


class ReloadState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    RELOADING = "reloading"


class HAProxyController:
    """Keep one HAProxy process in sync with the backend registry.

    Registry changes arm a quiet-period timer; bursts of changes collapse into a
    single reload that runs once the registry has been quiet for
    ``reload_quiet_seconds`` or ``reload_ceiling_seconds`` after the first
    request of the burst, whichever comes first. A reload renders the registry
    as it is at execution time and starts a replacement HAProxy with ``-sf``
    pointing at the running one, so listening sockets are handed over.
    """

    def __init__(
        self,
        settings: TorotatorSettings,
        registry: BackendRegistry,
        shutdown_event: Optional[asyncio.Event] = None,
        process_factory: ProcessFactory = SupervisedProcess.start,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._shutdown = shutdown_event or asyncio.Event()
        self._process_factory = process_factory
        self._logger = get_logger(f"haproxy[{settings.proxy_port}]")

        self.directory: Path = settings.work_dir / "haproxy"
        self.config_path: Path = self.directory / "haproxy.cfg"
        self.pid_file: Path = self.directory / "haproxy.pid"

        self._process: Optional[SupervisedProcess] = None
        self._wait_tasks: Set[asyncio.Task] = set()
        self._reload_lock = asyncio.Lock()

        self._state_lock = threading.Lock()
        self._state = ReloadState.IDLE
        self._queued = False
        self._first_request_at = 0.0
        self._quiet_deadline = 0.0
        self._debounce_task: Optional[asyncio.Task] = None
        self._closed = False

        self._reload_count = 0
        self._last_reload_error: Optional[str] = None
        self._last_reload_timestamp: Optional[float] = None

        registry.set_listener(self.request_reload)

    @property
    def state(self) -> ReloadState:
        with self._state_lock:
            return self._state

    @property
    def process(self) -> Optional[SupervisedProcess]:
        return self._process

    @property
    def reload_count(self) -> int:
        return self._reload_count

    def descriptor(self) -> HAProxyDescriptor:
        return HAProxyDescriptor.build(
            port=self._settings.proxy_port,
            max_conn=self._settings.max_conn,
            backends=self._registry.snapshot(),
            stats_port=self._settings.stats_port,
        )

    def write_config(self) -> HAProxyDescriptor:
        """Render the current registry to disk and return what was rendered."""

        descriptor = self.descriptor()
        write_config_atomic(self.config_path, render_config(descriptor))
        return descriptor

    async def start(self) -> None:
        """Write the initial configuration and start the first HAProxy process."""

        try:
            ensure_directory(self.directory)
            descriptor = self.write_config()
        except (OSError, RenderError) as error:
            raise FatalStartupError(f"Unable to write HAProxy configuration: {error}") from error
        try:
            self._process = await self._spawn(previous=None)
        except LaunchError as error:
            raise FatalStartupError(f"HAProxy failed to start: {error}") from error
        self._logger.info(
            "HAProxy listening on port %s with %s backends (pid %s)",
            descriptor.port,
            len(descriptor.backends),
            self._process.pid,
        )

    def request_reload(self) -> None:
        """Queue a debounced reload. Never blocks on the reload itself."""

        now = time.monotonic()
        with self._state_lock:
            if self._closed or self._shutdown.is_set():
                self._logger.debug("Shutting down, reload request ignored")
                return
            if self._state is ReloadState.RELOADING:
                if self._queued:
                    self._logger.debug("Reload already queued")
                else:
                    self._queued = True
                    self._logger.debug("Reload queued behind the running one")
                return
            self._quiet_deadline = now + self._settings.reload_quiet_seconds
            if self._state is ReloadState.PENDING:
                self._logger.debug("Reload deferred by %.1fs", self._settings.reload_quiet_seconds)
                return
            self._state = ReloadState.PENDING
            self._first_request_at = now
            self._debounce_task = asyncio.create_task(self._debounce())

    async def reload_now(self) -> bool:
        """Reload immediately, bypassing the quiet period."""

        self._logger.info("Reloading configuration on request")
        return await self._execute_reload()

    async def _debounce(self) -> None:
        try:
            while True:
                forced = False
                with self._state_lock:
                    now = time.monotonic()
                    ceiling = self._first_request_at + self._settings.reload_ceiling_seconds
                    deadline = min(self._quiet_deadline, ceiling)
                    if now >= deadline:
                        forced = self._quiet_deadline > ceiling
                        self._state = ReloadState.RELOADING
                        delay = 0.0
                    else:
                        delay = deadline - now
                if delay > 0:
                    if await self._wait_shutdown(delay):
                        self._logger.debug("Pending reload abandoned for shutdown")
                        break
                    continue

                if forced:
                    self._logger.info("Backends still changing, forcing reload")
                await self._execute_reload()

                with self._state_lock:
                    if not self._queued or self._closed or self._shutdown.is_set():
                        break
                    self._queued = False
                    now = time.monotonic()
                    self._state = ReloadState.PENDING
                    self._first_request_at = now
                    self._quiet_deadline = now + self._settings.reload_quiet_seconds
        finally:
            with self._state_lock:
                self._state = ReloadState.IDLE
                self._queued = False
                self._debounce_task = None

    async def _wait_shutdown(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _execute_reload(self) -> bool:
        async with self._reload_lock:
            previous = self._process
            try:
                descriptor = self.write_config()
            except RenderError as error:
                self._last_reload_error = str(error)
                self._logger.error("Reload aborted, configuration not rendered: %s", error)
                return False

            try:
                replacement = await self._spawn(previous=previous)
            except LaunchError as error:
                handoff = HandoffError(
                    f"replacement for pid {previous.pid if previous else -1} failed: {error}"
                )
                self._last_reload_error = str(handoff)
                self._logger.error("Reload aborted, previous instance kept: %s", handoff)
                return False

            self._process = replacement
            self._reload_count += 1
            self._last_reload_error = None
            self._last_reload_timestamp = time.time()
            self._logger.info(
                "Reloaded with %s backends (pid %s -> %s)",
                len(descriptor.backends),
                previous.pid if previous else -1,
                replacement.pid,
            )

            if previous is not None:
                try:
                    await previous.terminate()
                except TerminationError as error:
                    self._logger.warning("Failed to clean up previous instance: %s", error)
            return True

    def _command(self, previous: Optional[SupervisedProcess]) -> List[str]:
        args = [
            self._settings.haproxy_binary,
            "-f",
            str(self.config_path),
            "-p",
            str(self.pid_file),
        ]
        if previous is not None and previous.pid > 0:
            args.extend(["-sf", str(previous.pid)])
        return args

    async def _spawn(self, previous: Optional[SupervisedProcess]) -> SupervisedProcess:
        process = await self._process_factory(
            "haproxy",
            self._settings.proxy_port,
            self._command(previous),
            classify_haproxy_line,
            self._settings.settle_seconds,
        )
        task = asyncio.create_task(process.wait())
        self._wait_tasks.add(task)
        task.add_done_callback(self._wait_tasks.discard)
        return process

    async def close(self) -> None:
        with self._state_lock:
            self._closed = True
            debounce = self._debounce_task
        if debounce is not None:
            debounce.cancel()
            await asyncio.gather(debounce, return_exceptions=True)

        async with self._reload_lock:
            process, self._process = self._process, None
            if process is not None:
                self._logger.info("Cleaning up pid %s", process.pid)
                try:
                    await process.terminate()
                except TerminationError as error:
                    self._logger.error("Failed to kill HAProxy: %s", error)
        if self._wait_tasks:
            await asyncio.gather(*self._wait_tasks, return_exceptions=True)
        try:
            remove_directory(self.directory)
        except OSError as error:
            self._logger.error("Failed to remove %s: %s", self.directory, error)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "pid": self._process.pid if self._process else -1,
            "frontend_port": self._settings.proxy_port,
            "stats_port": self._settings.stats_port or None,
            "backends": self._registry.snapshot(),
            "config_path": str(self.config_path),
            "reload_count": self._reload_count,
            "last_reload_error": self._last_reload_error,
            "last_reload_timestamp": self._last_reload_timestamp,
        }
