"""Host a service in a spawned child process and talk to it over a pipe."""

import asyncio
import importlib
import logging
import multiprocessing
import traceback
from multiprocessing.connection import Connection

from serviceproxy.channel import Channel
from serviceproxy.channel import Envelope
from serviceproxy.channel import MessageHandler
from serviceproxy.listener import ServiceListener
from serviceproxy.protocol import Response
from serviceproxy.protocol import Signal
from serviceproxy.protocol import encode_message
from serviceproxy.protocol import is_trusted_address

logger = logging.getLogger(__name__)

PARENT_ADDRESS: str = "process://parent"
STOP_CANCELLER_HOOK: str = "_cancel_stop"
STOP_HOOK: str = "_on_stop"
_JOIN_TIMEOUT_SECONDS: float = 2.0


def parse_target(target: str) -> tuple[str, str]:
    """Parse ``module.path:ClassName`` targets.

    :param target: Raw target string.
    :returns: Tuple of ``(module_name, class_qualname)``.
    :raises ValueError: If the target format is invalid.
    """
    parts: list[str] = target.split(":")
    if len(parts) != 2:
        raise ValueError("Target must use module.path:ClassName format")

    module_name: str = parts[0].strip()
    class_qualname: str = parts[1].strip()
    if len(module_name) == 0:
        raise ValueError("Module path in target cannot be empty")
    if len(class_qualname) == 0:
        raise ValueError("Class name in target cannot be empty")
    return module_name, class_qualname


def _resolve_qualname(root: object, qualname: str) -> object:
    """Resolve a dotted qualname against a root object.

    :param root: Root object.
    :param qualname: Dotted qualname, such as ``Outer.Inner``.
    :returns: Resolved object.
    """
    current: object = root
    for piece in qualname.split("."):
        current = getattr(current, piece)
    return current


class PipeChannel(Channel):
    """Channel endpoint over one end of a duplex ``multiprocessing`` pipe.

    Each message travels as ``(sender_address, payload)``; payloads must be
    picklable. Reading starts with the first subscription and uses the
    running loop's reader callbacks.
    """

    _connection: Connection
    _address: str
    _peer_address: str
    _handlers: list[MessageHandler]
    _loop: asyncio.AbstractEventLoop | None
    _is_reading: bool
    _is_closed: bool
    _disconnected: asyncio.Event | None

    def __init__(self, connection: Connection, address: str, peer_address: str) -> None:
        """Initialize one pipe endpoint.

        :param connection: Duplex pipe end owned by this endpoint.
        :param address: Address reported to the peer.
        :param peer_address: Address of the process on the other end.
        """
        self._connection = connection
        self._address = address
        self._peer_address = peer_address
        self._handlers = []
        self._loop = None
        self._is_reading = False
        self._is_closed = False
        self._disconnected = None

    @property
    def address(self) -> str:
        return self._address

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    def subscribe(self, handler: MessageHandler) -> None:
        already_subscribed: bool = handler in self._handlers
        if already_subscribed is False:
            self._handlers.append(handler)
        self._start_reading()

    def unsubscribe(self, handler: MessageHandler) -> None:
        is_subscribed: bool = handler in self._handlers
        if is_subscribed is True:
            self._handlers.remove(handler)

    def _start_reading(self) -> None:
        if self._is_reading is True or self._is_closed is True:
            return
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        loop.add_reader(self._connection.fileno(), self._on_readable)
        self._loop = loop
        self._is_reading = True

    def _stop_reading(self) -> None:
        if self._is_reading is False:
            return
        self._is_reading = False
        loop: asyncio.AbstractEventLoop | None = self._loop
        if loop is None:
            return
        try:
            loop.remove_reader(self._connection.fileno())
        except (OSError, ValueError):
            return

    def _on_readable(self) -> None:
        """Drain every message currently buffered in the pipe."""
        try:
            while self._is_closed is False and self._connection.poll():
                incoming: object = self._connection.recv()
                self._dispatch(incoming)
        except (EOFError, OSError):
            logger.debug("pipe peer of %s disconnected", self._address)
            self._stop_reading()
            self._disconnected_event().set()

    def _dispatch(self, incoming: object) -> None:
        if isinstance(incoming, tuple) is False or len(incoming) != 2:
            logger.debug("dropping malformed pipe frame on %s", self._address)
            return
        origin: object = incoming[0]
        if isinstance(origin, str) is False:
            logger.debug("dropping pipe frame without sender address on %s", self._address)
            return
        envelope: Envelope = Envelope(data=incoming[1], origin=origin)
        for handler in list(self._handlers):
            handler(envelope)

    def _disconnected_event(self) -> asyncio.Event:
        if self._disconnected is None:
            self._disconnected = asyncio.Event()
        return self._disconnected

    async def wait_disconnected(self) -> None:
        """Wait until the peer closes its end of the pipe."""
        await self._disconnected_event().wait()

    def post(self, message: dict[str, object], target_address: str) -> None:
        if self._is_closed is True:
            logger.debug("dropping post on closed pipe channel %s", self._address)
            return
        peer_matches: bool = is_trusted_address(target_address, self._peer_address)
        if peer_matches is False:
            logger.debug("dropping post from %s: peer is not at %s", self._address, target_address)
            return
        try:
            self._connection.send((self._address, message))
        except (BrokenPipeError, EOFError, OSError) as exc:
            logger.warning("failed to post message from %s: %s", self._address, exc)

    def close(self) -> None:
        if self._is_closed is True:
            return
        self._stop_reading()
        self._is_closed = True
        self._handlers.clear()
        try:
            self._connection.close()
        except OSError as exc:
            logger.debug("failed to close pipe of %s: %s", self._address, exc)


class ProcessChannel(PipeChannel):
    """Parent-side pipe channel that also owns the child process."""

    _process: multiprocessing.process.BaseProcess

    def __init__(
        self,
        connection: Connection,
        address: str,
        peer_address: str,
        process: multiprocessing.process.BaseProcess,
    ) -> None:
        """Initialize the parent endpoint.

        :param connection: Parent end of the pipe.
        :param address: Parent address reported to the child.
        :param peer_address: Address reported by the child.
        :param process: Started child process.
        """
        super().__init__(connection, address, peer_address)
        self._process = process

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def is_alive(self) -> bool:
        return self._process.is_alive()

    def close(self) -> None:
        """Close the pipe, then join and if needed terminate the child.

        Blocks the calling thread; coroutines use :meth:`aclose`.
        """
        super().close()
        self._reap()

    async def aclose(self) -> None:
        """Close the pipe and reap the child in a worker thread."""
        super().close()
        await asyncio.to_thread(self._reap)

    def _reap(self) -> None:
        """Join the child, terminating it when it does not exit in time."""
        process: multiprocessing.process.BaseProcess = self._process
        process.join(timeout=_JOIN_TIMEOUT_SECONDS)
        is_alive: bool = process.is_alive()
        if is_alive is True:
            logger.warning("child process %s did not exit; terminating", process.pid)
            process.terminate()
            process.join(timeout=_JOIN_TIMEOUT_SECONDS)


def start_process_channel(
    url: str,
    target: str,
    listen_payload: object = None,
    parent_address: str = PARENT_ADDRESS,
) -> ProcessChannel:
    """Spawn a child process serving ``target`` and connect to it.

    :param url: Address the child reports; the proxy's trusted address.
    :param target: Service class in ``module.path:ClassName`` format.
    :param listen_payload: Value the child broadcasts with its ready signal.
    :param parent_address: Address the parent reports to the child.
    :returns: Parent-side channel owning the child process.
    """
    parse_target(target)
    context = multiprocessing.get_context("spawn")
    parent_connection, child_connection = context.Pipe(duplex=True)
    process = context.Process(
        target=worker_entry,
        args=(child_connection, target, url, parent_address, listen_payload),
    )
    process.daemon = True
    process.start()
    child_connection.close()
    logger.debug("spawned child process %s for %s", process.pid, target)
    return ProcessChannel(parent_connection, parent_address, url, process)


def _load_service(target: str) -> object:
    """Import and instantiate the service class named by ``target``.

    :param target: Service class in ``module.path:ClassName`` format.
    :returns: New service instance.
    :raises TypeError: If the target is not a class.
    """
    module_name, class_qualname = parse_target(target)
    imported_module = importlib.import_module(module_name)
    service_class: object = _resolve_qualname(imported_module, class_qualname)
    if isinstance(service_class, type) is False:
        raise TypeError(f"Target {target} is not a class")
    return service_class()


async def _serve(
    connection: Connection,
    target: str,
    address: str,
    parent_address: str,
    listen_payload: object,
) -> None:
    """Run one listener until the stop handshake completes or the parent leaves.

    A service may define ``_cancel_stop`` (registered as a stop canceller) and
    ``_on_stop`` (its result is returned to the stopping proxy).

    :param connection: Child end of the pipe.
    :param target: Service class in ``module.path:ClassName`` format.
    :param address: Address reported by this child.
    :param parent_address: Trusted parent address.
    :param listen_payload: Value broadcast with the ready signal.
    """
    channel: PipeChannel = PipeChannel(connection, address, parent_address)
    try:
        service: object = _load_service(target)
    except Exception as exc:
        traceback.print_exc()
        failure: Response = Response(
            id=None,
            res=str(exc),
            signal=Signal.ERROR,
            error_type=type(exc).__name__,
        )
        channel.post(encode_message(failure), parent_address)
        channel.close()
        return

    listener: ServiceListener = ServiceListener(service, parent_address, channel)
    stopped: asyncio.Event = asyncio.Event()

    # Private hooks: the listener refuses to dispatch underscore names remotely.
    service_canceller: object = getattr(service, STOP_CANCELLER_HOOK, None)
    if callable(service_canceller) is True:
        listener.stop_cancellers.append(service_canceller)
    service_on_stop: object = getattr(service, STOP_HOOK, None)

    def on_stop() -> object:
        stopped.set()
        if callable(service_on_stop) is True:
            return service_on_stop()
        return None

    listener.on_stop = on_stop
    listener.listen(listen_payload)

    stop_wait: asyncio.Task[bool] = asyncio.ensure_future(stopped.wait())
    disconnect_wait: asyncio.Task[None] = asyncio.ensure_future(channel.wait_disconnected())
    await asyncio.wait({stop_wait, disconnect_wait}, return_when=asyncio.FIRST_COMPLETED)
    stop_wait.cancel()
    disconnect_wait.cancel()

    listener.stop_listen()
    if stopped.is_set() is False:
        logger.debug("parent of %s disconnected; cancelling in-flight handlers", address)
        listener.cancel_pending()
    await listener.wait_idle()
    channel.close()


def worker_entry(
    connection: Connection,
    target: str,
    address: str,
    parent_address: str,
    listen_payload: object = None,
) -> None:
    """Run the child process event loop.

    :param connection: Child end of the pipe.
    :param target: Service class in ``module.path:ClassName`` format.
    :param address: Address reported by this child.
    :param parent_address: Trusted parent address.
    :param listen_payload: Value broadcast with the ready signal.
    """
    asyncio.run(_serve(connection, target, address, parent_address, listen_payload))
