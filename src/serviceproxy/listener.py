"""Server-side listener dispatching channel requests to one service object."""

import asyncio
import inspect
import logging
from collections.abc import Callable

from serviceproxy.channel import Channel
from serviceproxy.channel import Envelope
from serviceproxy.errors import INVALID_FORMAT_MESSAGE
from serviceproxy.errors import ProxyRemoteError
from serviceproxy.protocol import Message
from serviceproxy.protocol import Request
from serviceproxy.protocol import Response
from serviceproxy.protocol import Signal
from serviceproxy.protocol import SignalRequest
from serviceproxy.protocol import decode_message
from serviceproxy.protocol import encode_message
from serviceproxy.protocol import is_trusted_address

logger = logging.getLogger(__name__)

StopCanceller = Callable[[], object]
StopHook = Callable[[], object]


async def _settle(value: object) -> object:
    """Await ``value`` when it is awaitable, otherwise return it unchanged.

    :param value: Plain value or awaitable.
    :returns: Settled value.
    """
    if inspect.isawaitable(value) is True:
        return await value
    return value


def _fault_value(exc: Exception) -> object:
    """Reduce one exception to the value sent back to the caller.

    :param exc: Raised exception.
    :returns: Forwarded remote value, the message text, or the type name.
    """
    if isinstance(exc, ProxyRemoteError) is True:
        return exc.value
    message: str = str(exc)
    if len(message) == 0:
        return type(exc).__name__
    return message


class ServiceListener:
    """Serve one service instance over a channel until stopped.

    Service methods are invoked with positional ``params`` and must return an
    awaitable (``async def`` methods); the listener always awaits the result.
    """

    stop_cancellers: list[StopCanceller]
    on_stop: StopHook | None

    _service: object
    _origin: str
    _channel: Channel
    _is_listening: bool
    _tasks: "set[asyncio.Task[None]]"

    def __init__(self, service: object, origin: str, channel: Channel) -> None:
        """Initialize a listener that is not yet listening.

        :param service: Service instance receiving the calls.
        :param origin: Trusted client address; replies are posted to it.
        :param channel: Channel shared with the client context.
        :raises ValueError: If ``origin`` is empty.
        """
        if len(origin) == 0:
            raise ValueError("origin cannot be empty")
        self._service = service
        self._origin = origin
        self._channel = channel
        self._is_listening = False
        self._tasks = set()
        self.stop_cancellers = []
        self.on_stop = None

    @property
    def origin(self) -> str:
        return self._origin

    @property
    def service(self) -> object:
        return self._service

    @property
    def is_listening(self) -> bool:
        return self._is_listening

    def listen(self, payload: object = None) -> None:
        """Subscribe to the channel and announce readiness once.

        :param payload: Value handed to the client's ``init()``.
        """
        if self._is_listening is True:
            return
        self._channel.subscribe(self._on_message)
        self._post(Response(id=None, res=payload, signal=Signal.LISTENING))
        self._is_listening = True
        logger.debug("listening for requests from %s", self._origin)

    def stop_listen(self) -> None:
        """Unsubscribe locally without replying to anyone."""
        if self._is_listening is False:
            return
        self._channel.unsubscribe(self._on_message)
        self._is_listening = False
        logger.debug("stopped listening for requests from %s", self._origin)

    async def wait_idle(self) -> None:
        """Wait until every message handler scheduled so far has finished."""
        while len(self._tasks) > 0:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_pending(self) -> None:
        """Cancel every message handler that is still running."""
        for task in list(self._tasks):
            task.cancel()

    def _on_message(self, envelope: Envelope) -> None:
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        task: asyncio.Task[None] = loop.create_task(self.handle_message(envelope))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _post(self, response: Response) -> None:
        self._channel.post(encode_message(response), self._origin)

    async def handle_message(self, envelope: Envelope) -> None:
        """Validate, dispatch and answer one inbound message.

        :param envelope: Inbound message and sender address.
        """
        trusted: bool = is_trusted_address(self._origin, envelope.origin)
        if trusted is False:
            logger.debug("dropping message from untrusted origin %r", envelope.origin)
            return

        message: Message = decode_message(envelope.data)
        if isinstance(message, Response) is True and message.signal:
            logger.debug("ignoring control response %r", message.signal)
            return

        response: Response | None
        if isinstance(message, SignalRequest) is True and message.signal:
            response = await self._handle_signal_request(message)
        else:
            response = await self._handle_request(message)

        if response is not None:
            self._post(response)

    async def _handle_request(self, message: Message) -> Response:
        """Invoke the requested service method.

        :param message: Decoded inbound message.
        :returns: Exactly one response for the request.
        """
        is_valid: bool = isinstance(message, Request) is True and bool(message.id) and bool(message.method_name)
        if is_valid is False:
            logger.debug("rejecting malformed request %r", message)
            return Response(id=message.id, res=INVALID_FORMAT_MESSAGE, signal=Signal.ERROR)

        try:
            result: object = await self._invoke(message.method_name, message.params)
        except Exception as exc:
            logger.debug("service method %r failed: %s", message.method_name, exc)
            return Response(
                id=message.id,
                res=_fault_value(exc),
                signal=Signal.ERROR,
                error_type=type(exc).__name__,
            )
        return Response(id=message.id, res=result)

    async def _invoke(self, method_name: str, params: list[object]) -> object:
        """Call one public method of the bound service and await its result.

        :param method_name: Method name from the request.
        :param params: Positional arguments.
        :returns: Awaited method result.
        :raises AttributeError: If the name is private or missing.
        :raises TypeError: If the attribute is not callable.
        """
        if method_name.startswith("_"):
            raise AttributeError(f"{method_name!r} is not an exposed method")
        method: object = getattr(self._service, method_name)
        if callable(method) is False:
            raise TypeError(f"{method_name!r} is not callable")
        return await method(*params)  # type: ignore[operator]

    async def _handle_signal_request(self, message: SignalRequest) -> Response | None:
        """Run the stop handshake; other signals are ignored.

        :param message: Decoded signal request.
        :returns: Stop outcome, or ``None`` for ignored signals.
        """
        if message.signal != Signal.STOP_LISTENING:
            logger.debug("ignoring signal %r", message.signal)
            return None

        try:
            veto: object = await self._run_stop_cancellers()
            if veto:
                logger.debug("stop vetoed: %r", veto)
                return Response(id=message.id, res=veto, signal=Signal.ERROR)

            self.stop_listen()
            hook_result: object = None
            on_stop: StopHook | None = self.on_stop
            if on_stop is not None:
                hook_result = await _settle(on_stop())
        except Exception as exc:
            logger.debug("stop handshake failed: %s", exc)
            return Response(
                id=message.id,
                res=_fault_value(exc),
                signal=Signal.ERROR,
                error_type=type(exc).__name__,
            )
        return Response(id=message.id, res=hook_result, signal=Signal.STOP_LISTENING)

    async def _run_stop_cancellers(self) -> object:
        """Evaluate cancellers in order; the first truthy result wins.

        :returns: First truthy canceller result, or ``None``.
        """
        for canceller in list(self.stop_cancellers):
            result: object = await _settle(canceller())
            if result:
                return result
        return None
