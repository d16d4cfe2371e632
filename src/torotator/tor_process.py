from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from .exceptions import LaunchError, TerminationError
from .log_parsers import classify_tor_line
from .logging_utils import get_logger
from .process import ProcessFactory, SupervisedProcess
from .utils import ensure_directory, remove_directory


class TorProcess:
    """One Tor client exposing a SOCKS port; the circuit half of a worker pair."""

    def __init__(
        self,
        port: int,
        work_dir: Path,
        circuit_time_seconds: int,
        tor_binary: str = "tor",
        process_factory: ProcessFactory = SupervisedProcess.start,
        settle_seconds: float = 0.25,
    ) -> None:
        self.port = port
        self.data_dir = work_dir / f"tor-{port}"
        self.pid_file = self.data_dir / "tor.pid"
        self._circuit_time_seconds = circuit_time_seconds
        self._tor_binary = tor_binary
        self._process_factory = process_factory
        self._settle_seconds = settle_seconds
        self._logger = get_logger(f"tor[{port}]")
        self.process: Optional[SupervisedProcess] = None

    def command(self) -> List[str]:
        return [
            self._tor_binary,
            "--allow-missing-torrc",
            "--SocksPort",
            str(self.port),
            "--NewCircuitPeriod",
            str(self._circuit_time_seconds),
            "--DataDirectory",
            str(self.data_dir),
            "--PidFile",
            str(self.pid_file),
            "--Log",
            "warn stdout",
        ]

    async def start(self) -> SupervisedProcess:
        try:
            ensure_directory(self.data_dir, mode=0o700)
        except OSError as error:
            raise LaunchError(f"Unable to create {self.data_dir}: {error}") from error
        self.process = await self._process_factory(
            "tor", self.port, self.command(), classify_tor_line, self._settle_seconds
        )
        return self.process

    async def close(self) -> None:
        if self.process is not None:
            self._logger.info("Cleaning up pid %s", self.process.pid)
            try:
                await self.process.terminate()
            except TerminationError as error:
                self._logger.warning("Failed to kill Tor: %s", error)
        try:
            remove_directory(self.data_dir)
        except OSError as error:
            self._logger.error("Failed to remove data directory %s: %s", self.data_dir, error)
