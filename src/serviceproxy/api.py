"""User-facing API entrypoints for serviceproxy."""

from collections.abc import Iterable

from serviceproxy.channel import Channel
from serviceproxy.listener import ServiceListener
from serviceproxy.listener import StopCanceller
from serviceproxy.listener import StopHook
from serviceproxy.process import PARENT_ADDRESS
from serviceproxy.process import parse_target
from serviceproxy.process import start_process_channel
from serviceproxy.proxy import DEFAULT_TIMEOUT
from serviceproxy.proxy import ChannelFactory
from serviceproxy.proxy import IdFactory
from serviceproxy.proxy import ServiceProxy


async def create_proxy(
    url: str,
    channel_factory: ChannelFactory,
    timeout: float = DEFAULT_TIMEOUT,
    id_factory: IdFactory | None = None,
) -> tuple[ServiceProxy, object]:
    """Create a proxy and wait for the remote listener to become ready.

    :param url: Target address of the remote context.
    :param channel_factory: Callable opening a channel to ``url``.
    :param timeout: Default timeout in seconds.
    :param id_factory: Optional request-id generator.
    :returns: Tuple of ``(proxy, init_payload)``.
    """
    proxy: ServiceProxy = ServiceProxy(
        url,
        channel_factory,
        timeout=timeout,
        id_factory=id_factory,
    )
    payload: object = await proxy.init()
    return proxy, payload


def create_listener(
    service: object,
    origin: str,
    channel: Channel,
    stop_cancellers: Iterable[StopCanceller] | None = None,
    on_stop: StopHook | None = None,
) -> ServiceListener:
    """Create a listener bound to ``service``; call ``listen()`` to start it.

    :param service: Service instance receiving the calls.
    :param origin: Trusted client address.
    :param channel: Channel shared with the client context.
    :param stop_cancellers: Optional initial stop cancellers.
    :param on_stop: Optional hook run after a successful stop.
    :returns: Listener that is not yet listening.
    """
    listener: ServiceListener = ServiceListener(service, origin, channel)
    if stop_cancellers is not None:
        listener.stop_cancellers.extend(stop_cancellers)
    listener.on_stop = on_stop
    return listener


def process_channel_factory(
    target: str,
    listen_payload: object = None,
    parent_address: str = PARENT_ADDRESS,
) -> ChannelFactory:
    """Build a channel factory that hosts ``target`` in a child process.

    The proxy's ``url`` becomes the address the child reports.

    :param target: Service class in ``module.path:ClassName`` format.
    :param listen_payload: Value the child broadcasts with its ready signal.
    :param parent_address: Address the parent reports to the child.
    :returns: Channel factory for :class:`ServiceProxy`.
    """
    parse_target(target)

    def open_channel(url: str) -> Channel:
        return start_process_channel(
            url,
            target,
            listen_payload=listen_payload,
            parent_address=parent_address,
        )

    return open_channel
