from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from aiohttp_socks import ProxyConnectionError

import torotator.health as health
import torotator.worker_pair as worker_pair
from torotator.backend_registry import BackendRegistry
from torotator.port_allocator import PortAllocator
from torotator.worker_pair import PairState, RetireReason, WorkerPair


@pytest.fixture
def allocator(settings) -> PortAllocator:
    return PortAllocator(settings.port_range_start, settings.port_range_end, bind_check=None)


@pytest.fixture
def registry() -> BackendRegistry:
    return BackendRegistry()


@pytest.fixture
def make_pair(settings, allocator, registry, shutdown_event, process_factory):
    def factory(**overrides) -> WorkerPair:
        return WorkerPair(
            1,
            settings.with_overrides(**overrides) if overrides else settings,
            allocator,
            registry,
            shutdown_event,
            process_factory=process_factory,
        )

    return factory


@pytest.mark.asyncio
async def test_pair_registers_privoxy_port(
    make_pair, registry, allocator, shutdown_event, process_factory, wait_until
):
    pair = make_pair()
    task = asyncio.create_task(pair.run())
    await wait_until(lambda: pair.state is PairState.REGISTERED)

    assert pair.tor.port == 30_000
    assert pair.backend_port == 30_001
    assert registry.snapshot() == [30_001]
    assert allocator.leased() == {30_000, 30_001}
    (privoxy,) = process_factory.by_service("privoxy")
    assert "127.0.0.1:30000" in pair.privoxy.config_path.read_text(encoding="utf-8")

    shutdown_event.set()
    assert await asyncio.wait_for(task, timeout=3) is RetireReason.SHUTDOWN
    assert pair.state is PairState.DONE
    assert registry.snapshot() == []
    assert allocator.leased() == set()
    assert privoxy.terminated
    assert process_factory.by_service("tor")[0].terminated


@pytest.mark.asyncio
async def test_tor_exit_retires_pair(make_pair, registry, process_factory, wait_until):
    pair = make_pair()
    task = asyncio.create_task(pair.run())
    await wait_until(lambda: pair.state is PairState.REGISTERED)

    process_factory.by_service("tor")[0].crash()
    assert await asyncio.wait_for(task, timeout=3) is RetireReason.TOR_EXITED
    assert registry.snapshot() == []
    assert process_factory.by_service("privoxy")[0].terminated


@pytest.mark.asyncio
async def test_privoxy_exit_retires_pair(make_pair, process_factory, wait_until):
    pair = make_pair()
    task = asyncio.create_task(pair.run())
    await wait_until(lambda: pair.state is PairState.REGISTERED)

    process_factory.by_service("privoxy")[0].crash()
    assert await asyncio.wait_for(task, timeout=3) is RetireReason.PRIVOXY_EXITED
    assert process_factory.by_service("tor")[0].terminated


@pytest.mark.asyncio
async def test_lifetime_expiry(make_pair, registry):
    pair = make_pair(max_proxy_time_seconds=0.2)
    assert await asyncio.wait_for(pair.run(), timeout=3) is RetireReason.EXPIRED
    assert pair.state is PairState.DONE
    assert registry.snapshot() == []


@pytest.mark.asyncio
async def test_launch_failures_are_retried(make_pair, allocator, process_factory, shutdown_event, wait_until):
    process_factory.failures["tor"] = 2
    pair = make_pair()
    task = asyncio.create_task(pair.run())
    await wait_until(lambda: pair.state is PairState.REGISTERED)

    assert pair.launch_failures == 2
    # ports from failed attempts went back to the allocator
    assert allocator.leased() == {pair.tor.port, pair.privoxy.port}
    shutdown_event.set()
    await asyncio.wait_for(task, timeout=3)


@pytest.mark.asyncio
async def test_privoxy_failure_tears_down_tor(make_pair, process_factory, shutdown_event, wait_until):
    process_factory.failures["privoxy"] = 1
    pair = make_pair()
    task = asyncio.create_task(pair.run())
    await wait_until(lambda: pair.state is PairState.REGISTERED)

    first_tor, second_tor = process_factory.by_service("tor")
    assert first_tor.terminated
    assert second_tor.is_running
    assert pair.launch_failures == 1
    shutdown_event.set()
    await asyncio.wait_for(task, timeout=3)


@pytest.mark.asyncio
async def test_backend_deregistered_before_processes_are_killed(
    make_pair, registry, process_factory, shutdown_event, wait_until
):
    observed = []

    def listener():
        if not registry.snapshot():
            observed.extend(process.is_running for process in process_factory.launched)

    registry.set_listener(listener)
    pair = make_pair()
    task = asyncio.create_task(pair.run())
    await wait_until(lambda: pair.state is PairState.REGISTERED)
    shutdown_event.set()
    await asyncio.wait_for(task, timeout=3)

    assert observed == [True, True]


@pytest.mark.asyncio
async def test_shutdown_before_launch(make_pair, shutdown_event, process_factory):
    shutdown_event.set()
    pair = make_pair()
    assert await pair.run() is None
    assert pair.state is PairState.DONE
    assert process_factory.launched == []


@pytest.mark.asyncio
async def test_shutdown_during_retries(make_pair, process_factory, shutdown_event, allocator):
    process_factory.failures["tor"] = 1_000
    pair = make_pair(start_retry_delay_seconds=0.05)
    task = asyncio.create_task(pair.run())
    await asyncio.sleep(0.2)
    shutdown_event.set()

    assert await asyncio.wait_for(task, timeout=3) is None
    assert pair.state is PairState.DONE
    assert pair.launch_failures >= 1
    assert allocator.leased() == set()


@pytest.mark.asyncio
async def test_unhealthy_pair_is_retired(make_pair, monkeypatch):
    async def failing_monitor(*args, **kwargs):
        await asyncio.sleep(0.05)

    monkeypatch.setattr(worker_pair, "monitor_http_proxy_route", failing_monitor)
    pair = make_pair(health_interval_seconds=0.01)
    assert await asyncio.wait_for(pair.run(), timeout=3) is RetireReason.UNHEALTHY


@pytest.mark.asyncio
async def test_readiness_probe_failure_counts_as_launch_failure(
    make_pair, monkeypatch, process_factory, shutdown_event, wait_until
):
    answers = iter([False, True])

    async def fake_ready(*args, **kwargs):
        return next(answers)

    monkeypatch.setattr(worker_pair, "wait_for_socks_route", fake_ready)
    pair = make_pair(ready_timeout_seconds=1.0)
    task = asyncio.create_task(pair.run())
    await wait_until(lambda: pair.state is PairState.REGISTERED)

    assert pair.launch_failures == 1
    assert process_factory.by_service("tor")[0].terminated
    assert process_factory.by_service("privoxy")[0].port == pair.backend_port
    shutdown_event.set()
    await asyncio.wait_for(task, timeout=3)


def test_illegal_transition_raises(make_pair):
    pair = make_pair()
    with pytest.raises(RuntimeError, match="illegal transition"):
        pair._transition(PairState.REGISTERED)
    assert pair.state is PairState.ALLOCATING


def test_describe(make_pair):
    assert make_pair().describe() == {
        "pair_id": 1,
        "state": "allocating",
        "tor_port": None,
        "privoxy_port": None,
        "launch_failures": 0,
    }


@pytest.mark.asyncio
async def test_refused_socks_route_is_retried(
    make_pair, monkeypatch, shutdown_event, process_factory
):
    class RefusingSession:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            raise ProxyConnectionError("Couldn't connect to proxy 127.0.0.1:30000")

        async def __aexit__(self, *exc_info):
            return False

    monkeypatch.setattr(health, "ProxyConnector", MagicMock())
    monkeypatch.setattr(health.aiohttp, "ClientSession", RefusingSession)
    pair = make_pair(ready_timeout_seconds=0.1)
    task = asyncio.create_task(pair.run())
    await asyncio.sleep(0.5)

    assert not task.done()
    assert pair.launch_failures >= 1
    assert pair.state is not PairState.REGISTERED
    shutdown_event.set()
    assert await asyncio.wait_for(task, timeout=3) is None
    assert all(not process.is_running for process in process_factory.launched)


@pytest.mark.asyncio
async def test_shutdown_during_readiness_wait_is_not_a_failure(
    make_pair, monkeypatch, shutdown_event, process_factory, allocator, wait_until
):
    async def wait_for_shutdown(port, url, timeout, probe_timeout, shutdown):
        await shutdown.wait()
        return False

    monkeypatch.setattr(worker_pair, "wait_for_socks_route", wait_for_shutdown)
    pair = make_pair(ready_timeout_seconds=30.0)
    task = asyncio.create_task(pair.run())
    await wait_until(lambda: len(process_factory.by_service("tor")) == 1)

    shutdown_event.set()
    assert await asyncio.wait_for(task, timeout=3) is None
    assert pair.launch_failures == 0
    assert pair.state is PairState.DONE
    assert process_factory.by_service("tor")[0].terminated
    assert process_factory.by_service("privoxy") == []
    assert allocator.leased() == set()
