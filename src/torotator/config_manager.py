from __future__ import annotations

import argparse
import os
import tempfile
from dataclasses import Field, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional

_ENV_PREFIX = "TOROTATOR_"
_MIN_POOL_SIZE = 1
_MAX_POOL_SIZE = 400
_MAX_PORT = 65_535


def _expand_path(value: Path | str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path


def _normalize_log_level(level: str) -> str:
    normalized = level.upper()
    allowed = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if normalized not in allowed:
        raise ValueError(f"Unsupported log level: {level}")
    return normalized


def _validate_pool_size(value: int) -> int:
    if not (_MIN_POOL_SIZE <= value <= _MAX_POOL_SIZE):
        raise ValueError(
            f"pool_size must be between {_MIN_POOL_SIZE} and {_MAX_POOL_SIZE}, got {value}"
        )
    return value


def _validate_port(name: str, value: int, allow_zero: bool = False) -> int:
    if allow_zero and value == 0:
        return value
    if not (1 <= value <= _MAX_PORT):
        raise ValueError(f"{name} must be a TCP port between 1 and {_MAX_PORT}, got {value}")
    return value


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"not a boolean: {value}")


def _default_work_dir() -> Path:
    return Path(tempfile.gettempdir()) / "torotator"


@dataclass
class TorotatorSettings:
    """Runtime configuration for the rotating proxy pool."""

    proxy_port: int = 8_080
    stats_port: int = 0
    max_conn: int = 256

    pool_size: int = 3
    port_range_start: int = 30_000
    port_range_end: int = _MAX_PORT
    check_port_bind: bool = True
    max_proxy_time_seconds: float = 900.0
    circuit_time_seconds: int = 120

    reload_quiet_seconds: float = 2.0
    reload_ceiling_seconds: float = 10.0
    settle_seconds: float = 0.25
    start_retry_delay_seconds: float = 0.5

    work_dir: Path = field(default_factory=_default_work_dir)
    tor_binary: str = "tor"
    privoxy_binary: str = "privoxy"
    haproxy_binary: str = "haproxy"

    health_check_url: str = "https://check.torproject.org/api/ip"
    health_timeout_seconds: float = 10.0
    ready_timeout_seconds: float = 0.0
    health_interval_seconds: float = 0.0
    health_retries: int = 3

    log_level: str = "INFO"
    log_verbose: bool = False

    def __post_init__(self) -> None:
        self.pool_size = _validate_pool_size(int(self.pool_size))
        self.proxy_port = _validate_port("proxy_port", int(self.proxy_port))
        self.stats_port = _validate_port("stats_port", int(self.stats_port), allow_zero=True)
        self.port_range_start = _validate_port("port_range_start", int(self.port_range_start))
        self.port_range_end = _validate_port("port_range_end", int(self.port_range_end))
        self.work_dir = _expand_path(self.work_dir)
        self.log_level = _normalize_log_level(self.log_level)
        if self.port_range_end < self.port_range_start:
            raise ValueError("port_range_end must be greater than or equal to port_range_start")
        if self.port_range_start <= self.proxy_port <= self.port_range_end:
            raise ValueError("proxy_port must lie outside the backend port range")
        if self.max_conn <= 0:
            raise ValueError("max_conn must be positive")
        if self.max_proxy_time_seconds <= 0:
            raise ValueError("max_proxy_time_seconds must be positive")
        if self.circuit_time_seconds <= 0:
            raise ValueError("circuit_time_seconds must be positive")
        if self.reload_quiet_seconds < 0:
            raise ValueError("reload_quiet_seconds must be non-negative")
        if self.reload_ceiling_seconds < self.reload_quiet_seconds:
            raise ValueError("reload_ceiling_seconds must not be shorter than reload_quiet_seconds")
        if self.settle_seconds < 0:
            raise ValueError("settle_seconds must be non-negative")
        if self.start_retry_delay_seconds < 0:
            raise ValueError("start_retry_delay_seconds must be non-negative")
        if self.ready_timeout_seconds < 0 or self.health_interval_seconds < 0:
            raise ValueError("probe timings must be non-negative")
        if self.health_retries <= 0:
            raise ValueError("health_retries must be positive")

    @property
    def stats_enabled(self) -> bool:
        return self.stats_port > 0

    def with_overrides(self, **overrides: Any) -> "TorotatorSettings":
        return replace(self, **overrides)


def _converter_for(item: Field) -> Callable[[str], Any]:
    # annotations are strings under postponed evaluation
    kind = item.type if isinstance(item.type, str) else item.type.__name__
    if kind == "bool":
        return _parse_bool
    if kind == "int":
        return int
    if kind == "float":
        return float
    if kind == "Path":
        return Path
    return str


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for item in fields(TorotatorSettings):
        key = f"{_ENV_PREFIX}{item.name.upper()}"
        raw = os.getenv(key)
        if raw is None:
            continue
        try:
            overrides[item.name] = _converter_for(item)(raw)
        except ValueError as error:
            raise ValueError(f"Invalid {key} value: {raw}") from error
    return overrides


# argparse dest -> settings field
_CLI_FIELDS = (
    "proxy_port",
    "pool_size",
    "port_range_start",
    "max_proxy_time_seconds",
    "circuit_time_seconds",
    "stats_port",
    "work_dir",
    "log_level",
    "log_verbose",
)


def load_settings(args: Optional[argparse.Namespace] = None) -> TorotatorSettings:
    """Build settings from defaults, then TOROTATOR_* variables, then CLI flags."""

    overrides = _env_overrides()
    if args is not None:
        for name in _CLI_FIELDS:
            value = getattr(args, name, None)
            if value is not None:
                overrides[name] = value
    return TorotatorSettings(**overrides)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rotating Tor HTTP proxy pool")
    parser.add_argument("-p", dest="proxy_port", type=int, default=None, help="HTTP proxy port")
    parser.add_argument(
        "-c", dest="pool_size", type=int, default=None, help="number of Tor nodes to use"
    )
    parser.add_argument(
        "-s",
        dest="port_range_start",
        type=int,
        default=None,
        help="starting port for proxy usage",
    )
    parser.add_argument(
        "-m",
        dest="max_proxy_time_seconds",
        type=float,
        default=None,
        help="maximum time (in seconds) a proxy should remain online before being recycled",
    )
    parser.add_argument(
        "-t",
        dest="circuit_time_seconds",
        type=int,
        default=None,
        help="maximum time (in seconds) a Tor node should be online before recircuiting",
    )
    parser.add_argument(
        "--stats", dest="stats_port", type=int, default=None, help="serve HAProxy stats on this port"
    )
    parser.add_argument(
        "--work-dir",
        dest="work_dir",
        type=Path,
        default=None,
        help="directory holding per-process configuration and data",
    )
    parser.add_argument("--log-level", dest="log_level", default=None, help="logging level")
    parser.add_argument(
        "--verbose",
        dest="log_verbose",
        action="store_const",
        const=True,
        default=None,
        help="include process, thread and source location in log lines",
    )
    return parser
