"""HAProxy configuration rendering for the rotating backend pool."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple

from .exceptions import RenderError

BALANCE_POLICY = "roundrobin"
_MAX_PORT = 65_535


@dataclass(frozen=True)
class HAProxyDescriptor:
    """Everything the rendered configuration depends on."""

    port: int
    max_conn: int
    backends: Tuple[int, ...] = ()
    stats_port: Optional[int] = None

    @classmethod
    def build(
        cls,
        port: int,
        max_conn: int,
        backends: Sequence[int],
        stats_port: Optional[int] = None,
    ) -> "HAProxyDescriptor":
        return cls(
            port=port,
            max_conn=max_conn,
            backends=tuple(sorted(set(backends))),
            stats_port=stats_port or None,
        )


def _check_port(name: str, port: int) -> None:
    if not (1 <= port <= _MAX_PORT):
        raise RenderError(f"{name} {port} is not a valid TCP port")


def render_config(descriptor: HAProxyDescriptor) -> str:
    """Render the HAProxy configuration text; identical descriptors give identical text."""

    _check_port("frontend port", descriptor.port)
    if descriptor.max_conn <= 0:
        raise RenderError(f"maxconn must be positive, got {descriptor.max_conn}")
    if descriptor.stats_port is not None:
        _check_port("stats port", descriptor.stats_port)
    for port in descriptor.backends:
        _check_port("backend port", port)

    backend_servers = "".join(
        f"    server privoxy-{port} 127.0.0.1:{port} check\n"
        for port in sorted(set(descriptor.backends))
    )

    stats_block = ""
    if descriptor.stats_port is not None:
        stats_block = (
            f"listen stats\n"
            f"    bind *:{descriptor.stats_port}\n"
            f"    mode http\n"
            f"    maxconn 10\n"
            f"    timeout client 100s\n"
            f"    timeout server 100s\n"
            f"    timeout connect 100s\n"
            f"    timeout queue 100s\n"
            f"    stats enable\n"
            f"    stats hide-version\n"
            f"    stats refresh 30s\n"
            f"    stats show-node\n"
            f"    stats uri /haproxy?stats\n\n"
        )

    return (
        f"global\n"
        f"    maxconn {descriptor.max_conn}\n\n"
        f"defaults\n"
        f"    mode tcp\n"
        f"    maxconn 1024\n"
        f"    option dontlognull\n"
        f"    retries 3\n"
        f"    timeout connect 5s\n"
        f"    timeout client 30s\n"
        f"    timeout server 30s\n\n"
        f"{stats_block}"
        f"frontend rotating_proxies\n"
        f"    bind *:{descriptor.port}\n"
        f"    mode tcp\n"
        f"    default_backend privoxies\n\n"
        f"backend privoxies\n"
        f"    mode tcp\n"
        f"    balance {BALANCE_POLICY}\n"
        f"{backend_servers}"
    )


def write_config_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` so readers never observe a partial file."""

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    except OSError as error:
        raise RenderError(f"Unable to write configuration {path}: {error}") from error
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_name, 0o644)
        os.replace(temp_name, path)
    except OSError as error:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise RenderError(f"Unable to write configuration {path}: {error}") from error
