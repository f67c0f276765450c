"""Client-side proxy: request correlation, timeouts and the stop handshake."""

import asyncio
import functools
import itertools
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass

from serviceproxy.channel import Channel
from serviceproxy.channel import Envelope
from serviceproxy.errors import ALREADY_INITIALIZED_MESSAGE
from serviceproxy.errors import INIT_TIMEOUT_MESSAGE
from serviceproxy.errors import NOT_ACTIVE_MESSAGE
from serviceproxy.errors import REQUEST_TIMEOUT_MESSAGE
from serviceproxy.errors import UNSUPPORTED_RESPONSE_MESSAGE
from serviceproxy.errors import ProxyProtocolError
from serviceproxy.errors import ProxyRemoteError
from serviceproxy.errors import ProxyStateError
from serviceproxy.errors import ProxyStopVetoedError
from serviceproxy.errors import ProxyTimeoutError
from serviceproxy.interface import ServiceStub
from serviceproxy.interface import build_stub
from serviceproxy.protocol import Message
from serviceproxy.protocol import Request
from serviceproxy.protocol import Response
from serviceproxy.protocol import Signal
from serviceproxy.protocol import SignalRequest
from serviceproxy.protocol import decode_message
from serviceproxy.protocol import encode_message
from serviceproxy.protocol import is_trusted_address

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: float = 5.0
ChannelFactory = Callable[[str], Channel]
IdFactory = Callable[[], str]


def make_id_factory(prefix: str = "") -> IdFactory:
    """Create an independent request-id generator.

    :param prefix: Optional prefix prepended to each counter value.
    :returns: Callable producing ``"1"``, ``"2"``, ... (with prefix).
    """
    counter: itertools.count[int] = itertools.count(1)

    def next_id() -> str:
        return f"{prefix}{next(counter)}"

    return next_id


def _validate_timeout(timeout: float) -> float:
    """Validate one timeout value in seconds.

    :param timeout: Requested timeout.
    :returns: Timeout as float.
    :raises TypeError: If ``timeout`` is not a real number.
    :raises ValueError: If ``timeout`` is not positive and finite.
    """
    if isinstance(timeout, bool) is True or isinstance(timeout, (int, float)) is False:
        raise TypeError("timeout must be a number of seconds")
    if math.isfinite(timeout) is False or timeout <= 0:
        raise ValueError("timeout must be a positive finite number of seconds")
    return float(timeout)


@dataclass
class PendingCall:
    """Continuation and timer for one in-flight request."""

    future: "asyncio.Future[object]"
    timer: asyncio.TimerHandle


class ServiceProxy:
    """Call methods of a service living on the far side of a channel."""

    _url: str
    _timeout: float
    _id_factory: IdFactory
    _channel_factory: ChannelFactory
    _channel: Channel | None
    _pending: dict[str, PendingCall]

    def __init__(
        self,
        url: str,
        channel_factory: ChannelFactory,
        timeout: float = DEFAULT_TIMEOUT,
        id_factory: IdFactory | None = None,
    ) -> None:
        """Initialize an inactive proxy.

        :param url: Target address; also the trusted prefix for responses.
        :param channel_factory: Callable opening a channel to ``url``.
        :param timeout: Default timeout in seconds for init and each call.
        :param id_factory: Optional request-id generator. Ids must be unique
            among concurrently pending calls.
        :raises ValueError: If ``url`` is empty or ``timeout`` is invalid.
        """
        if len(url) == 0:
            raise ValueError("url cannot be empty")
        self._url = url
        self._timeout = _validate_timeout(timeout)
        if id_factory is None:
            id_factory = make_id_factory()
        self._id_factory = id_factory
        self._channel_factory = channel_factory
        self._channel = None
        self._pending = {}

    @property
    def url(self) -> str:
        return self._url

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def is_init(self) -> bool:
        """Report whether the proxy holds an open channel.

        :returns: ``True`` from ``init()`` until a successful ``stop()``.
        """
        return self._channel is not None

    @property
    def pending_count(self) -> int:
        """Return the number of calls awaiting a response.

        :returns: Pending call count.
        """
        return len(self._pending)

    def _is_trusted(self, envelope: Envelope) -> bool:
        return is_trusted_address(self._url, envelope.origin)

    async def init(self, timeout: float | None = None) -> object:
        """Open the channel and wait for the listener's ready signal.

        :param timeout: Optional handshake timeout overriding the default.
        :returns: Payload broadcast by the listener with its ready signal.
        :raises ProxyStateError: If the proxy is already initialized.
        :raises ProxyTimeoutError: If no ready signal arrives in time.
        :raises ProxyRemoteError: If the listener answers with an error or stop signal.
        :raises ProxyProtocolError: If the listener answers with an unknown signal.
        """
        if self._channel is not None:
            raise ProxyStateError(ALREADY_INITIALIZED_MESSAGE)

        init_timeout: float = self._timeout
        if timeout is not None:
            init_timeout = _validate_timeout(timeout)

        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        channel: Channel = self._channel_factory(self._url)
        self._channel = channel
        handshake: asyncio.Future[object] = loop.create_future()

        def on_init_message(envelope: Envelope) -> None:
            if handshake.done() is True:
                return
            if self._is_trusted(envelope) is False:
                logger.debug("init: dropping message from untrusted origin %r", envelope.origin)
                return
            message: Message = decode_message(envelope.data)
            if isinstance(message, Response) is False or not message.signal:
                return

            if message.signal == Signal.LISTENING:
                handshake.set_result(message.res)
            elif message.signal in (Signal.ERROR, Signal.STOP_LISTENING):
                handshake.set_exception(ProxyRemoteError(message.res, message.error_type))
            else:
                handshake.set_exception(ProxyProtocolError(UNSUPPORTED_RESPONSE_MESSAGE))

        def on_init_timeout() -> None:
            if handshake.done() is False:
                handshake.set_exception(ProxyTimeoutError(INIT_TIMEOUT_MESSAGE))

        channel.subscribe(on_init_message)
        timer: asyncio.TimerHandle = loop.call_later(init_timeout, on_init_timeout)
        succeeded: bool = False
        try:
            payload: object = await handshake
            succeeded = True
        finally:
            timer.cancel()
            channel.unsubscribe(on_init_message)
            if succeeded is False:
                logger.debug("init of proxy to %s failed; releasing channel", self._url)
                await self._release_channel(channel)

        channel.subscribe(self._on_response)
        logger.debug("proxy to %s initialized", self._url)
        return payload

    async def _release_channel(self, channel: Channel) -> None:
        """Unsubscribe from and close ``channel``, forgetting it if current.

        :param channel: Channel to release.
        """
        channel.unsubscribe(self._on_response)
        if self._channel is channel:
            self._channel = None
        await channel.aclose()

    def _on_response(self, envelope: Envelope) -> None:
        """Match one inbound message against the pending-call table.

        :param envelope: Inbound message and sender address.
        """
        if self._is_trusted(envelope) is False:
            logger.debug("dropping response from untrusted origin %r", envelope.origin)
            return

        message: Message = decode_message(envelope.data)
        if isinstance(message, Response) is False or message.id is None:
            return

        pending: PendingCall | None = self._pending.pop(message.id, None)
        if pending is None:
            logger.debug("dropping response for unknown or settled request %r", message.id)
            return

        pending.timer.cancel()
        if pending.future.done() is True:
            return
        if message.signal == Signal.ERROR:
            pending.future.set_exception(ProxyRemoteError(message.res, message.error_type))
            return
        pending.future.set_result(message.res)

    def _on_request_timeout(self, request_id: str) -> None:
        pending: PendingCall | None = self._pending.pop(request_id, None)
        if pending is None:
            return
        if pending.future.done() is False:
            logger.debug("request %r timed out", request_id)
            pending.future.set_exception(ProxyTimeoutError(REQUEST_TIMEOUT_MESSAGE))

    def _forget(self, request_id: str, future: "asyncio.Future[object]") -> None:
        """Drop the table entry of a future settled or cancelled elsewhere.

        :param request_id: Request identifier.
        :param future: Future that just completed.
        """
        pending: PendingCall | None = self._pending.get(request_id)
        if pending is None or pending.future is not future:
            return
        del self._pending[request_id]
        pending.timer.cancel()

    def _post(self, message: Request | SignalRequest, timeout: float | None = None) -> "asyncio.Future[object]":
        """Register a pending call for ``message`` and send it.

        :param message: Request or signal request carrying a fresh id.
        :param timeout: Optional per-call timeout in seconds.
        :returns: Future settled by the matching response or the timer.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        future: asyncio.Future[object] = loop.create_future()

        channel: Channel | None = self._channel
        if channel is None:
            future.set_exception(ProxyStateError(NOT_ACTIVE_MESSAGE))
            return future

        request_id: str | None = message.id
        if request_id is None:
            future.set_exception(ProxyStateError("request id generator produced no id"))
            return future
        if request_id in self._pending:
            future.set_exception(ProxyStateError(f"request id {request_id!r} is already pending"))
            return future

        call_timeout: float = self._timeout
        if timeout is not None:
            call_timeout = _validate_timeout(timeout)

        timer: asyncio.TimerHandle = loop.call_later(call_timeout, self._on_request_timeout, request_id)
        self._pending[request_id] = PendingCall(future=future, timer=timer)
        future.add_done_callback(functools.partial(self._forget, request_id))
        channel.post(encode_message(message), self._url)
        return future

    def _next_id(self) -> str | None:
        generated: object = self._id_factory()
        if generated is None:
            return None
        return str(generated)

    def send_request(
        self,
        method_name: str,
        params: list[object] | None = None,
        timeout: float | None = None,
    ) -> "asyncio.Future[object]":
        """Send one method call and return its pending result.

        The request is posted before this method returns.

        :param method_name: Remote method name.
        :param params: Positional arguments for the remote method.
        :param timeout: Optional per-call timeout in seconds.
        :returns: Future resolving to the remote result.
        """
        call_params: list[object] = []
        if params is not None:
            call_params = list(params)
        request: Request = Request(id=self._next_id(), method_name=method_name, params=call_params)
        return self._post(request, timeout=timeout)

    async def stop(self, force_close: bool = False) -> object:
        """Ask the listener to stop and release the channel on success.

        :param force_close: Release the channel even when the stop fails.
        :returns: Value produced by the listener's stop hook.
        :raises ProxyStateError: If the proxy is not initialized.
        :raises ProxyStopVetoedError: If the listener refused to stop.
        :raises ProxyTimeoutError: If the listener did not answer in time.
        """
        channel: Channel | None = self._channel
        if channel is None:
            raise ProxyStateError(NOT_ACTIVE_MESSAGE)

        succeeded: bool = False
        try:
            signal_request: SignalRequest = SignalRequest(id=self._next_id(), signal=Signal.STOP_LISTENING)
            result: object = await self._post(signal_request)
            succeeded = True
        except ProxyRemoteError as exc:
            raise ProxyStopVetoedError(exc.value, exc.remote_type_name) from exc
        finally:
            if succeeded is True or force_close is True:
                logger.debug("releasing channel to %s after stop (succeeded=%s)", self._url, succeeded)
                await self._release_channel(channel)
        return result

    def wrap_with(self, manifest: object) -> ServiceStub:
        """Build a forwarding stub bound to :meth:`send_request`.

        :param manifest: Name list, mapping, or interface class.
        :returns: Stub whose methods return pending results.
        """
        stub_name: str = "ServiceStub"
        if isinstance(manifest, type) is True:
            stub_name = f"{manifest.__name__}Stub"
        return build_stub(manifest, self.send_request, name=stub_name)
