"""Public package API for serviceproxy."""

from serviceproxy.api import create_listener
from serviceproxy.api import create_proxy
from serviceproxy.api import process_channel_factory
from serviceproxy.channel import Channel
from serviceproxy.channel import Envelope
from serviceproxy.channel import LocalChannel
from serviceproxy.channel import create_channel_pair
from serviceproxy.errors import ProxyProtocolError
from serviceproxy.errors import ProxyRemoteError
from serviceproxy.errors import ProxyStateError
from serviceproxy.errors import ProxyStopVetoedError
from serviceproxy.errors import ProxyTimeoutError
from serviceproxy.errors import ServiceProxyError
from serviceproxy.interface import remote_interface
from serviceproxy.listener import ServiceListener
from serviceproxy.protocol import Signal
from serviceproxy.proxy import ServiceProxy
from serviceproxy.proxy import make_id_factory

__all__: list[str] = [
    "create_listener",
    "create_proxy",
    "create_channel_pair",
    "make_id_factory",
    "process_channel_factory",
    "remote_interface",
    "Channel",
    "Envelope",
    "LocalChannel",
    "ProxyProtocolError",
    "ProxyRemoteError",
    "ProxyStateError",
    "ProxyStopVetoedError",
    "ProxyTimeoutError",
    "ServiceListener",
    "ServiceProxy",
    "ServiceProxyError",
    "Signal",
]
