"""In-process integration tests pairing a proxy with a listener."""

import asyncio

import pytest

from serviceproxy import LocalChannel
from serviceproxy import ProxyRemoteError
from serviceproxy import ProxyStopVetoedError
from serviceproxy import ProxyTimeoutError
from serviceproxy import ServiceListener
from serviceproxy import ServiceProxy
from serviceproxy import create_channel_pair
from serviceproxy import create_listener
from serviceproxy import create_proxy
from serviceproxy.demo import MockService
from tests.fixtures.sandbox_service import Calculator

APP_ADDRESS: str = "https://app.test"
SERVICE_URL: str = "https://service.test"


class _HostedService:
    """Channel factory that hosts one service behind a local channel pair."""

    service: object
    listen_payload: object
    listener: ServiceListener | None
    service_address: str | None

    def __init__(self, service: object, listen_payload: object = None, service_address: str | None = None) -> None:
        self.service = service
        self.listen_payload = listen_payload
        self.listener = None
        self.service_address = service_address

    def __call__(self, url: str) -> LocalChannel:
        service_address: str = url
        if self.service_address is not None:
            service_address = self.service_address
        client_end, service_end = create_channel_pair(APP_ADDRESS, service_address)

        canceller: object = getattr(self.service, "_cancel_stop", None)
        on_stop: object = getattr(self.service, "_on_stop", None)
        cancellers: list[object] = []
        if callable(canceller) is True:
            cancellers.append(canceller)
        listener: ServiceListener = create_listener(
            self.service,
            APP_ADDRESS,
            service_end,
            stop_cancellers=cancellers,
            on_stop=on_stop,
        )
        listener.listen(self.listen_payload)
        self.listener = listener
        return client_end


def test_mock_service_full_flow() -> None:
    """Init, echo calls, both fault kinds, a vetoed stop and a real stop."""

    async def scenario() -> None:
        host = _HostedService(MockService(), listen_payload={"initial": "hello"})
        proxy, payload = await create_proxy(SERVICE_URL, host)
        assert payload == {"initial": "hello"}

        stub = proxy.wrap_with(MockService)
        assert await stub.mock_method() is None
        assert await stub.mock_method(42) == 42
        assert await stub.mock_method({"success": "great"}) == {"success": "great"}

        with pytest.raises(ProxyRemoteError) as sync_info:
            await stub.throw_sync_method()
        assert sync_info.value.value == "wonderful error"
        assert sync_info.value.remote_type_name == "RuntimeError"

        with pytest.raises(ProxyRemoteError) as async_info:
            await stub.throw_async_method()
        assert async_info.value.value == "wonderful async error"

        with pytest.raises(ProxyStopVetoedError) as veto_info:
            await proxy.stop()
        assert veto_info.value.value == {"reason": "not yet"}
        assert proxy.is_init is True
        assert host.listener.is_listening is True

        assert await proxy.stop() == {"goodbye": "see you"}
        assert proxy.is_init is False
        assert host.listener.is_listening is False

    asyncio.run(scenario())


def test_stub_from_class_skips_private_hooks() -> None:
    """Private stop hooks never appear on a class-derived stub."""

    async def scenario() -> None:
        proxy, _ = await create_proxy(SERVICE_URL, _HostedService(MockService()))
        stub = proxy.wrap_with(MockService)
        assert hasattr(stub, "mock_method") is True
        assert hasattr(stub, "_cancel_stop") is False
        assert hasattr(stub, "_on_stop") is False

    asyncio.run(scenario())


def test_out_of_order_completion_matches_callers() -> None:
    """Slow and fast calls issued together each get their own result."""

    async def scenario() -> None:
        proxy, _ = await create_proxy(SERVICE_URL, _HostedService(Calculator()))
        slow = proxy.send_request("slow_echo", ["slow", 0.08])
        medium = proxy.send_request("slow_echo", ["medium", 0.04])
        fast = proxy.send_request("slow_echo", ["fast", 0.0])

        completion_order: list[str] = []
        for future in asyncio.as_completed([slow, medium, fast]):
            completion_order.append(await future)

        assert completion_order == ["fast", "medium", "slow"]
        assert await slow == "slow"
        assert await medium == "medium"
        assert await fast == "fast"

    asyncio.run(scenario())


def test_service_state_persists_between_calls() -> None:
    """Calls share one service instance on the far side."""

    async def scenario() -> None:
        calculator = Calculator()
        proxy, _ = await create_proxy(SERVICE_URL, _HostedService(calculator))
        assert await proxy.send_request("add", [2]) == 2
        assert await proxy.send_request("add", [3]) == 5
        assert await proxy.stop() == {"final_total": 5}

    asyncio.run(scenario())


def test_init_times_out_without_listener() -> None:
    """A remote that never announces itself fails init after the timeout."""

    async def scenario() -> None:
        channels: list[LocalChannel] = []

        def silent_factory(url: str) -> LocalChannel:
            client_end, service_end = create_channel_pair(APP_ADDRESS, url)
            channels.append(client_end)
            return client_end

        proxy = ServiceProxy(SERVICE_URL, silent_factory, timeout=0.05)
        with pytest.raises(ProxyTimeoutError, match="proxy init timeout"):
            await proxy.init()
        assert proxy.is_init is False
        assert channels[0].is_closed is True

    asyncio.run(scenario())


def test_request_timeout_on_slow_method() -> None:
    """A method slower than the per-call timeout fails the call."""

    async def scenario() -> None:
        proxy, _ = await create_proxy(SERVICE_URL, _HostedService(Calculator()))
        with pytest.raises(ProxyTimeoutError, match="proxy request timeout"):
            await proxy.send_request("slow_echo", ["late", 0.2], timeout=0.05)
        assert proxy.pending_count == 0

    asyncio.run(scenario())


def test_default_timeout_is_five_seconds() -> None:
    """Without an explicit timeout the proxy waits five seconds."""
    proxy = ServiceProxy(SERVICE_URL, _HostedService(Calculator()))
    assert proxy.timeout == 5.0


def test_look_alike_service_address_passes_prefix_check() -> None:
    """Known gap: a service at a look-alike address extending the url is trusted."""

    async def scenario() -> None:
        host = _HostedService(Calculator(), listen_payload="spoofed", service_address=f"{SERVICE_URL}.evil.io")
        proxy, payload = await create_proxy(SERVICE_URL, host)
        assert payload == "spoofed"
        assert await proxy.send_request("add", [1]) == 1

    asyncio.run(scenario())


def test_unrelated_service_address_is_never_trusted() -> None:
    """A service at an unrelated address cannot complete the handshake."""

    async def scenario() -> None:
        host = _HostedService(Calculator(), service_address="https://other.test")
        proxy = ServiceProxy(SERVICE_URL, host, timeout=0.05)
        with pytest.raises(ProxyTimeoutError):
            await proxy.init()

    asyncio.run(scenario())
