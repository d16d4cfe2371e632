from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from .exceptions import LaunchError, TerminationError
from .log_parsers import classify_privoxy_line
from .logging_utils import get_logger
from .process import ProcessFactory, SupervisedProcess
from .utils import ensure_directory, remove_directory

_PRIVOXY_CONFIG = """\
confdir /etc/privoxy
logdir {log_dir}
actionsfile match-all.action
actionsfile default.action
actionsfile user.action
filterfile default.filter
filterfile user.filter
listen-address 127.0.0.1:{listen_port}
forward-socks5t / 127.0.0.1:{tor_port} .
toggle 1
enable-remote-toggle 0
enable-remote-http-toggle 0
enable-edit-actions 0
enforce-blocks 0
buffer-limit 4096
enable-proxy-authentication-forwarding 0
forwarded-connect-retries 0
accept-intercepted-requests 0
allow-cgi-request-crunching 0
split-large-forms 0
keep-alive-timeout 5
tolerate-pipelining 1
socket-timeout 300
"""


def render_privoxy_config(listen_port: int, tor_port: int, log_dir: Path) -> str:
    return _PRIVOXY_CONFIG.format(listen_port=listen_port, tor_port=tor_port, log_dir=log_dir)


class PrivoxyProcess:
    """Privoxy translating plain HTTP proxy requests onto one Tor SOCKS port."""

    def __init__(
        self,
        port: int,
        tor_port: int,
        work_dir: Path,
        privoxy_binary: str = "privoxy",
        process_factory: ProcessFactory = SupervisedProcess.start,
        settle_seconds: float = 0.25,
    ) -> None:
        self.port = port
        self.tor_port = tor_port
        self.directory = work_dir / f"privoxy-{port}"
        self.config_path = self.directory / "privoxy.conf"
        self.pid_file = self.directory / "privoxy.pid"
        self._privoxy_binary = privoxy_binary
        self._process_factory = process_factory
        self._settle_seconds = settle_seconds
        self._logger = get_logger(f"privoxy[{port}]")
        self.process: Optional[SupervisedProcess] = None

    def command(self) -> List[str]:
        return [
            self._privoxy_binary,
            "--no-daemon",
            "--pidfile",
            str(self.pid_file),
            str(self.config_path),
        ]

    def write_config(self) -> None:
        ensure_directory(self.directory)
        self.config_path.write_text(
            render_privoxy_config(self.port, self.tor_port, self.directory), encoding="utf-8"
        )

    async def start(self) -> SupervisedProcess:
        try:
            self.write_config()
        except OSError as error:
            raise LaunchError(f"Unable to write {self.config_path}: {error}") from error
        self.process = await self._process_factory(
            "privoxy", self.port, self.command(), classify_privoxy_line, self._settle_seconds
        )
        return self.process

    async def close(self) -> None:
        if self.process is not None:
            self._logger.info("Cleaning up pid %s", self.process.pid)
            try:
                await self.process.terminate()
            except TerminationError as error:
                self._logger.warning("Failed to kill Privoxy: %s", error)
        try:
            remove_directory(self.directory)
        except OSError as error:
            self._logger.error("Failed to remove directory %s: %s", self.directory, error)
