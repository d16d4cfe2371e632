from __future__ import annotations

import asyncio
import signal
from typing import Awaitable, Callable, Optional, Sequence

from .exceptions import LaunchError, StreamError, TerminationError
from .log_parsers import LogClassifier, classify_plain
from .logging_utils import get_logger, level_for

_SETTLE_SECONDS = 0.25
_STREAM_LIMIT = 1024 * 1024
_DRAIN_CHUNK = 64 * 1024


class SupervisedProcess:
    """One external program with merged stdout/stderr and a one-shot exit signal.

    Use :meth:`start` to spawn; the instance is only returned once the process
    has survived the settle window. :meth:`wait` must then run in its own task
    so the pipe is drained continuously.
    """

    def __init__(
        self,
        service: str,
        port: int,
        process: asyncio.subprocess.Process,
        classifier: LogClassifier = classify_plain,
    ) -> None:
        self.service = service
        self.port = port
        self._process = process
        self._classifier = classifier
        self._logger = get_logger(f"{service}[{port}]")
        self._exited = asyncio.Event()
        self._waiting = False

    @classmethod
    async def start(
        cls,
        service: str,
        port: int,
        args: Sequence[str],
        classifier: LogClassifier = classify_plain,
        settle_seconds: float = _SETTLE_SECONDS,
    ) -> "SupervisedProcess":
        logger = get_logger(f"{service}[{port}]")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=_STREAM_LIMIT,
            )
        except OSError as error:
            raise LaunchError(f"{service} on port {port} could not be spawned: {error}") from error

        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=settle_seconds)
        except asyncio.TimeoutError:
            logger.info("Running with pid %s", process.pid)
            return cls(service, port, process, classifier)
        except asyncio.CancelledError:
            logger.debug("Start cancelled, killing pid %s", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            raise

        output = b""
        if process.stdout is not None:
            try:
                output = await asyncio.wait_for(process.stdout.read(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug("Output of pid %s still open after exit", process.pid)
        details = output.decode("utf-8", errors="replace").strip() or "no output"
        raise LaunchError(
            f"{service} on port {port} (pid {process.pid}) exited with code {returncode} "
            f"within {settle_seconds:.2f}s: {details}"
        )

    @property
    def pid(self) -> int:
        if self._process is None:
            return -1
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def signal_exit(self) -> asyncio.Event:
        """Completion signal; set once the process has exited and its output is drained."""

        return self._exited

    async def wait_exit(self) -> None:
        await self._exited.wait()

    async def wait(self) -> None:
        """Drain and log the merged output, then reap the process and fire the exit signal."""

        if self._waiting:
            await self._exited.wait()
            return
        self._waiting = True
        try:
            try:
                await self._pump_output()
            except StreamError as error:
                self._logger.error("Output error for pid %s: %s", self.pid, error)
                await self._discard_output()
            returncode = await self._process.wait()
            self._logger.info("Process %s exited with code %s", self.pid, returncode)
        finally:
            self._exited.set()

    async def _pump_output(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except (ValueError, asyncio.LimitOverrunError, OSError) as error:
                raise StreamError(str(error)) from error
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            level, message = self._classifier(line)
            self._logger.log(level_for(level), "%s", message)

    async def _discard_output(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        try:
            while await stream.read(_DRAIN_CHUNK):
                pass
        except OSError as error:
            self._logger.warning("Giving up on output of pid %s: %s", self.pid, error)

    async def terminate(self) -> None:
        """Kill and reap the process. Already-exited processes are a no-op."""

        if self._process is None or self._process.returncode is not None:
            return
        self._logger.debug("Killing process %s", self.pid)
        try:
            self._process.kill()
        except ProcessLookupError:
            return
        except OSError as error:
            raise TerminationError(f"failed to kill pid {self.pid}: {error}") from error
        returncode = await self._process.wait()
        if returncode != -signal.SIGKILL:
            # exited on its own between the check and the kill
            self._logger.debug("Process %s reaped with code %s", self.pid, returncode)


# (service, port, args, classifier, settle_seconds) -> running process
ProcessFactory = Callable[..., Awaitable[SupervisedProcess]]
