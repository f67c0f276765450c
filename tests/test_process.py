"""Integration tests for services hosted in spawned child processes."""

import asyncio
import logging
import os

import pytest

from serviceproxy import ProxyRemoteError
from serviceproxy import ProxyTimeoutError
from serviceproxy import ServiceProxy
from serviceproxy import create_proxy
from serviceproxy import process_channel_factory
from serviceproxy.process import PipeChannel
from serviceproxy.process import ProcessChannel
from serviceproxy.process import parse_target

SERVICE_MODULE: str = "tests.fixtures.sandbox_service"
CALCULATOR_TARGET: str = f"{SERVICE_MODULE}:Calculator"
BROKEN_TARGET: str = f"{SERVICE_MODULE}:BrokenService"
SLOW_STOP_TARGET: str = f"{SERVICE_MODULE}:SlowStopService"
SERVICE_URL: str = "process://calculator"
PROCESS_TIMEOUT: float = 10.0


class _CapturingFactory:
    """Wrap a process channel factory and keep every opened channel."""

    channels: list[ProcessChannel]

    def __init__(self, target: str, listen_payload: object = None) -> None:
        self._open = process_channel_factory(target, listen_payload=listen_payload)
        self.channels = []

    def __call__(self, url: str) -> ProcessChannel:
        channel = self._open(url)
        self.channels.append(channel)
        return channel

    def close_all(self) -> None:
        for channel in self.channels:
            channel.close()


def test_parse_target_requires_module_and_class() -> None:
    """Targets must use ``module.path:ClassName``."""
    assert parse_target("pkg.mod:Outer.Inner") == ("pkg.mod", "Outer.Inner")
    with pytest.raises(ValueError):
        parse_target("pkg.mod")
    with pytest.raises(ValueError):
        parse_target(":Calculator")
    with pytest.raises(ValueError):
        parse_target("pkg.mod:")
    with pytest.raises(ValueError):
        process_channel_factory("no_separator")


def test_calculator_runs_in_child_process() -> None:
    """Calls, faults and the stop hook all cross the process boundary."""

    async def scenario() -> None:
        factory = _CapturingFactory(CALCULATOR_TARGET, listen_payload={"ready": True})
        proxy: ServiceProxy | None = None
        try:
            proxy, payload = await create_proxy(SERVICE_URL, factory, timeout=PROCESS_TIMEOUT)
            assert payload == {"ready": True}

            child_pid: object = await proxy.send_request("worker_pid")
            assert child_pid != os.getpid()
            assert child_pid == factory.channels[0].pid

            assert await proxy.send_request("add", [4]) == 4
            assert await proxy.send_request("add", [6]) == 10

            with pytest.raises(ProxyRemoteError) as exc_info:
                await proxy.send_request("divide", [1, 0])
            assert exc_info.value.remote_type_name == "ZeroDivisionError"
            assert exc_info.value.value == "division by zero"

            results: list[object] = list(
                await asyncio.gather(
                    proxy.send_request("slow_echo", ["slow", 0.2]),
                    proxy.send_request("slow_echo", ["fast", 0.0]),
                )
            )
            assert results == ["slow", "fast"]

            assert await proxy.stop() == {"final_total": 10}
            assert proxy.is_init is False
            assert factory.channels[0].is_alive is False
        finally:
            factory.close_all()

    asyncio.run(scenario())


def test_failing_service_construction_rejects_init() -> None:
    """A service that cannot be built reports the failure to ``init()``."""

    async def scenario() -> None:
        factory = _CapturingFactory(BROKEN_TARGET)
        try:
            proxy = ServiceProxy(SERVICE_URL, factory, timeout=PROCESS_TIMEOUT)
            with pytest.raises(ProxyRemoteError) as exc_info:
                await proxy.init()
            assert exc_info.value.value == "cannot start broken service"
            assert exc_info.value.remote_type_name == "RuntimeError"
            assert proxy.is_init is False
            assert factory.channels[0].is_closed is True
        finally:
            factory.close_all()

    asyncio.run(scenario())


def test_missing_service_class_rejects_init() -> None:
    """An unknown class name fails inside the child and rejects ``init()``."""

    async def scenario() -> None:
        factory = _CapturingFactory(f"{SERVICE_MODULE}:DoesNotExist")
        try:
            proxy = ServiceProxy(SERVICE_URL, factory, timeout=PROCESS_TIMEOUT)
            with pytest.raises(ProxyRemoteError) as exc_info:
                await proxy.init()
            assert exc_info.value.remote_type_name == "AttributeError"
        finally:
            factory.close_all()

    asyncio.run(scenario())


def test_forced_stop_keeps_event_loop_responsive() -> None:
    """Reaping a busy child does not stall other work on the event loop."""

    async def scenario() -> None:
        factory = _CapturingFactory(SLOW_STOP_TARGET)
        ticks: list[float] = []
        ticking: bool = True

        async def ticker() -> None:
            loop = asyncio.get_running_loop()
            while ticking is True:
                ticks.append(loop.time())
                await asyncio.sleep(0.01)

        try:
            proxy = ServiceProxy(SERVICE_URL, factory, timeout=0.5)
            await proxy.init(timeout=PROCESS_TIMEOUT)
            assert await proxy.send_request("ping") == "pong"

            ticker_task = asyncio.ensure_future(ticker())
            with pytest.raises(ProxyTimeoutError):
                await proxy.stop(force_close=True)
            ticking = False
            await ticker_task

            gaps: list[float] = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
            assert len(gaps) > 0
            assert max(gaps) < 0.5
            assert proxy.is_init is False
            assert factory.channels[0].is_alive is False
        finally:
            factory.close_all()

    asyncio.run(scenario())


class _FailingConnection:
    """Connection double whose ``close`` fails."""

    def close(self) -> None:
        raise OSError("close failed")


def test_pipe_close_failure_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    """A failing pipe close is reported at debug level and the channel ends closed."""
    channel = PipeChannel(_FailingConnection(), "process://child", "process://parent")
    with caplog.at_level(logging.DEBUG, logger="serviceproxy.process"):
        channel.close()

    assert channel.is_closed is True
    assert "close failed" in caplog.text
