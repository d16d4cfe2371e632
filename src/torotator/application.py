from __future__ import annotations

import asyncio
import signal
from typing import Dict, Optional, Set

from .backend_registry import BackendRegistry
from .config_manager import TorotatorSettings
from .exceptions import FatalStartupError, MissingDependencyError
from .haproxy_controller import HAProxyController
from .logging_utils import get_logger
from .port_allocator import PortAllocator
from .process import ProcessFactory, SupervisedProcess
from .rotation_scheduler import RotationScheduler
from .utils import ensure_directory, find_missing_programs, port_available, remove_directory


class TorotatorApp:
    """Coordinate the HAProxy front end and the rotating Tor/Privoxy pool."""

    def __init__(
        self,
        settings: TorotatorSettings,
        process_factory: ProcessFactory = SupervisedProcess.start,
        check_dependencies: bool = True,
    ) -> None:
        self._settings = settings
        self._process_factory = process_factory
        self._check_dependencies = check_dependencies
        self._logger = get_logger("app")
        self.shutdown_event = asyncio.Event()
        self.registry = BackendRegistry()
        self.allocator = PortAllocator(
            settings.port_range_start,
            settings.port_range_end,
            bind_check=port_available if settings.check_port_bind else None,
        )
        self.controller = HAProxyController(
            settings,
            self.registry,
            shutdown_event=self.shutdown_event,
            process_factory=process_factory,
        )
        self.scheduler = RotationScheduler(
            settings,
            self.allocator,
            self.registry,
            self.shutdown_event,
            process_factory=process_factory,
        )
        self._signal_tasks: Set[asyncio.Task] = set()
        self._installed_signals: list[int] = []

    def find_dependencies(self) -> None:
        programs = [
            self._settings.haproxy_binary,
            self._settings.privoxy_binary,
            self._settings.tor_binary,
        ]
        missing = find_missing_programs(programs)
        if missing:
            raise MissingDependencyError(f"missing required program(s): {', '.join(missing)}")
        self._logger.debug("Found required programs: %s", ", ".join(programs))

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        if signum is not None:
            self._logger.info("Received signal %s, shutting down", signum)
        self.shutdown_event.set()

    def request_reload(self) -> None:
        self._logger.info("Got SIGHUP, reloading config")
        task = asyncio.create_task(self.controller.reload_now())
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_tasks.discard)

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown, int(sig))
            self._installed_signals.append(sig)
        loop.add_signal_handler(signal.SIGHUP, self.request_reload)
        self._installed_signals.append(signal.SIGHUP)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed_signals:
            loop.remove_signal_handler(sig)
        self._installed_signals.clear()

    async def run(self, install_signals: bool = True) -> None:
        """Run until shutdown is requested and every pair has retired.

        Raises :class:`FatalStartupError` when a collaborator program is missing
        or HAProxy cannot be started.
        """

        if self._check_dependencies:
            self.find_dependencies()
        try:
            ensure_directory(self._settings.work_dir)
        except OSError as error:
            raise FatalStartupError(f"Unable to create {self._settings.work_dir}: {error}") from error

        try:
            await self.controller.start()
            if install_signals:
                self.install_signal_handlers()
            self._logger.info(
                "Rotating Tor proxy running on http://127.0.0.1:%s", self._settings.proxy_port
            )
            await self.scheduler.run()
        finally:
            if install_signals:
                self.remove_signal_handlers()
            if self._signal_tasks:
                await asyncio.gather(*self._signal_tasks, return_exceptions=True)
            await self.controller.close()
            try:
                remove_directory(self._settings.work_dir)
            except OSError as error:
                self._logger.error("Failed to remove %s: %s", self._settings.work_dir, error)
            self._logger.info("Done")

    def get_stats(self) -> Dict[str, object]:
        return {
            "haproxy": self.controller.get_stats(),
            "pool": self.scheduler.get_stats(),
        }
