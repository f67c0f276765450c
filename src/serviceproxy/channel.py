"""Message channels connecting two isolated contexts."""

import abc
import asyncio
import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass

from serviceproxy.protocol import is_trusted_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Envelope:
    """One inbound message together with its self-reported sender address."""

    data: object
    origin: str


MessageHandler = Callable[[Envelope], None]


class Channel(abc.ABC):
    """Asynchronous, best-effort, bidirectional message transport.

    Handlers are plain callables invoked from the event loop for every
    inbound message. Delivery order and delivery itself are not guaranteed.
    """

    @property
    @abc.abstractmethod
    def address(self) -> str:
        """Return the address this endpoint reports to its peer.

        :returns: Sender address string.
        """

    @abc.abstractmethod
    def subscribe(self, handler: MessageHandler) -> None:
        """Register ``handler`` for inbound messages.

        Subscribing the same handler twice has no effect.

        :param handler: Inbound message callback.
        """

    @abc.abstractmethod
    def unsubscribe(self, handler: MessageHandler) -> None:
        """Remove ``handler``; unknown handlers are ignored.

        :param handler: Previously subscribed callback.
        """

    @abc.abstractmethod
    def post(self, message: dict[str, object], target_address: str) -> None:
        """Send ``message`` to the peer if it lives at ``target_address``.

        :param message: Encoded wire message.
        :param target_address: Address the peer must match.
        """

    @abc.abstractmethod
    def close(self) -> None:
        """Release the channel and any context it owns."""

    async def aclose(self) -> None:
        """Release the channel from a coroutine.

        Channels whose teardown blocks override this to keep the event loop
        responsive; the default simply calls :meth:`close`.
        """
        self.close()


class LocalChannel(Channel):
    """In-process channel endpoint; payloads are deep-copied on every post."""

    _address: str
    _peer: "LocalChannel | None"
    _handlers: list[MessageHandler]
    _is_closed: bool

    def __init__(self, address: str) -> None:
        """Initialize one unconnected endpoint.

        :param address: Address this endpoint reports to its peer.
        :raises ValueError: If ``address`` is empty.
        """
        if len(address) == 0:
            raise ValueError("address cannot be empty")
        self._address = address
        self._peer = None
        self._handlers = []
        self._is_closed = False

    @property
    def address(self) -> str:
        return self._address

    @property
    def is_closed(self) -> bool:
        """Report whether this endpoint has been closed.

        :returns: ``True`` when closed.
        """
        return self._is_closed

    @property
    def subscriber_count(self) -> int:
        """Return the number of registered handlers.

        :returns: Handler count.
        """
        return len(self._handlers)

    def connect(self, peer: "LocalChannel") -> None:
        """Wire this endpoint and ``peer`` together.

        :param peer: Opposite endpoint.
        """
        self._peer = peer
        peer._peer = self

    def subscribe(self, handler: MessageHandler) -> None:
        already_subscribed: bool = handler in self._handlers
        if already_subscribed is True:
            return
        self._handlers.append(handler)

    def unsubscribe(self, handler: MessageHandler) -> None:
        is_subscribed: bool = handler in self._handlers
        if is_subscribed is False:
            return
        self._handlers.remove(handler)

    def post(self, message: dict[str, object], target_address: str) -> None:
        if self._is_closed is True:
            logger.debug("dropping post on closed channel %s", self._address)
            return

        peer: LocalChannel | None = self._peer
        if peer is None or peer.is_closed is True:
            logger.debug("dropping post from %s: no connected peer", self._address)
            return

        peer_matches: bool = is_trusted_address(target_address, peer.address)
        if peer_matches is False:
            logger.debug("dropping post from %s: peer is not at %s", self._address, target_address)
            return

        envelope: Envelope = Envelope(data=copy.deepcopy(message), origin=self._address)
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        loop.call_soon(peer.deliver, envelope)

    def deliver(self, envelope: Envelope) -> None:
        """Hand one inbound envelope to every current handler.

        :param envelope: Inbound message and sender address.
        """
        if self._is_closed is True:
            return
        for handler in list(self._handlers):
            handler(envelope)

    def close(self) -> None:
        if self._is_closed is True:
            return
        self._is_closed = True
        self._handlers.clear()
        logger.debug("closed local channel %s", self._address)


def create_channel_pair(left_address: str, right_address: str) -> tuple[LocalChannel, LocalChannel]:
    """Create two connected in-process endpoints.

    :param left_address: Address reported by the left endpoint.
    :param right_address: Address reported by the right endpoint.
    :returns: Tuple of ``(left, right)`` endpoints.
    """
    left: LocalChannel = LocalChannel(left_address)
    right: LocalChannel = LocalChannel(right_address)
    left.connect(right)
    return left, right
