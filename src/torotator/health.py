from __future__ import annotations

import asyncio
import time

import aiohttp
from aiohttp import ClientTimeout
from aiohttp_socks import ProxyConnectionError, ProxyConnector, ProxyError, ProxyTimeoutError

from .logging_utils import get_logger

_logger = get_logger("health")


async def check_socks_route(socks_port: int, url: str, timeout_seconds: float) -> bool:
    """Fetch ``url`` through a Tor SOCKS port; True on any non-error response."""

    connector = ProxyConnector.from_url(f"socks5://127.0.0.1:{socks_port}", rdns=True)
    timeout = ClientTimeout(total=timeout_seconds)
    try:
        async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
            async with session.get(url) as response:
                return response.status < 400
    except (
        aiohttp.ClientError,
        ProxyError,
        ProxyConnectionError,
        ProxyTimeoutError,
        asyncio.TimeoutError,
        OSError,
    ) as error:
        _logger.debug("SOCKS probe via %s failed: %s", socks_port, error)
        return False


async def check_http_proxy_route(proxy_port: int, url: str, timeout_seconds: float) -> bool:
    """Fetch ``url`` through an HTTP proxy port; True on any non-error response."""

    timeout = ClientTimeout(total=timeout_seconds)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, proxy=f"http://127.0.0.1:{proxy_port}") as response:
                return response.status < 400
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as error:
        _logger.debug("HTTP proxy probe via %s failed: %s", proxy_port, error)
        return False


async def wait_for_socks_route(
    socks_port: int,
    url: str,
    timeout_seconds: float,
    probe_timeout_seconds: float,
    shutdown_event: asyncio.Event,
    interval_seconds: float = 2.0,
) -> bool:
    """Poll the SOCKS route until it answers, the deadline passes or shutdown starts."""

    deadline = time.monotonic() + timeout_seconds
    while not shutdown_event.is_set():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        if await check_socks_route(socks_port, url, min(probe_timeout_seconds, remaining)):
            return True
        try:
            await asyncio.wait_for(
                shutdown_event.wait(), timeout=max(0.0, min(interval_seconds, remaining))
            )
        except asyncio.TimeoutError:
            continue
    return False


async def monitor_http_proxy_route(
    proxy_port: int,
    url: str,
    interval_seconds: float,
    probe_timeout_seconds: float,
    max_failures: int,
) -> None:
    """Return once ``max_failures`` consecutive probes through the proxy have failed."""

    failures = 0
    while failures < max_failures:
        await asyncio.sleep(interval_seconds)
        if await check_http_proxy_route(proxy_port, url, probe_timeout_seconds):
            failures = 0
            continue
        failures += 1
        _logger.warning(
            "Health check attempt %s/%s failed for port %s", failures, max_failures, proxy_port
        )
