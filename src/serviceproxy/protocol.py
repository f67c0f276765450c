"""Wire vocabulary shared by proxies and listeners."""

import enum
import logging
from dataclasses import dataclass
from dataclasses import field

logger = logging.getLogger(__name__)

KIND_FIELD: str = "kind"
KIND_REQUEST: str = "request"
KIND_SIGNAL: str = "signal"
KIND_RESPONSE: str = "response"


class Signal(enum.IntEnum):
    """Control-plane values carried by signal requests and responses."""

    LISTENING = 900
    STOP_LISTENING = 901
    ERROR = 902


@dataclass
class Message:
    """Base message; ``id`` correlates a request with its response."""

    id: str | None = None


@dataclass
class Request(Message):
    """Data-plane call of one method on the remote service."""

    method_name: str | None = None
    params: list[object] = field(default_factory=list)


@dataclass
class SignalRequest(Message):
    """Control-plane request; ``signal`` may hold an unrecognized raw value."""

    signal: Signal | int | None = None


@dataclass
class Response(Message):
    """Reply to a request, or the unsolicited listening broadcast."""

    res: object = None
    signal: Signal | int | None = None
    error_type: str | None = None


def _decode_signal(value: object) -> Signal | int | None:
    """Map a raw wire value onto :class:`Signal` when possible.

    :param value: Raw ``signal`` field.
    :returns: Known signal, the raw int for unknown values, or ``None``.
    """
    if isinstance(value, bool) is True:
        return None
    if isinstance(value, int) is False:
        return None
    try:
        return Signal(value)
    except ValueError:
        return value


def _optional_str(value: object) -> str | None:
    """Return ``value`` when it is a non-empty string, else ``None``.

    :param value: Raw wire field.
    :returns: String value or ``None``.
    """
    if isinstance(value, str) is False:
        return None
    if len(value) == 0:
        return None
    return value


def encode_message(message: Message) -> dict[str, object]:
    """Encode one message into its tagged wire form.

    :param message: Message to encode.
    :returns: Plain dictionary suitable for any channel.
    :raises TypeError: If ``message`` is not a known message variant.
    """
    if isinstance(message, Request) is True:
        return {
            KIND_FIELD: KIND_REQUEST,
            "id": message.id,
            "method_name": message.method_name,
            "params": list(message.params),
        }
    if isinstance(message, SignalRequest) is True:
        return {
            KIND_FIELD: KIND_SIGNAL,
            "id": message.id,
            "signal": None if message.signal is None else int(message.signal),
        }
    if isinstance(message, Response) is True:
        return {
            KIND_FIELD: KIND_RESPONSE,
            "id": message.id,
            "res": message.res,
            "signal": None if message.signal is None else int(message.signal),
            "error_type": message.error_type,
        }
    raise TypeError(f"Cannot encode message of type {type(message).__name__}")


def decode_message(data: object) -> Message:
    """Decode one inbound wire payload.

    Anything that is not tagged as a signal or a response is treated as a
    request, so malformed requests still reach request validation.

    :param data: Raw payload received from a channel.
    :returns: Decoded message variant.
    """
    if isinstance(data, dict) is False:
        logger.debug("decoding non-dict payload of type %s as empty request", type(data).__name__)
        return Request()

    kind: object = data.get(KIND_FIELD)
    message_id: str | None = _optional_str(data.get("id"))

    if kind == KIND_SIGNAL:
        return SignalRequest(id=message_id, signal=_decode_signal(data.get("signal")))

    if kind == KIND_RESPONSE:
        error_type: str | None = _optional_str(data.get("error_type"))
        return Response(
            id=message_id,
            res=data.get("res"),
            signal=_decode_signal(data.get("signal")),
            error_type=error_type,
        )

    params_obj: object = data.get("params")
    params: list[object] = []
    if isinstance(params_obj, (list, tuple)) is True:
        params = list(params_obj)
    return Request(
        id=message_id,
        method_name=_optional_str(data.get("method_name")),
        params=params,
    )


def is_trusted_address(trusted_address: str, reported_address: object) -> bool:
    """Check a self-reported sender address against a trusted address.

    The check is a prefix match: ``https://good.com`` also accepts
    ``https://good.com.evil.io``. It is kept for compatibility with existing
    peers and is not equivalent to exact origin equality.

    :param trusted_address: Configured trusted address.
    :param reported_address: Address reported by the sender.
    :returns: ``True`` when the sender is accepted.
    """
    if isinstance(reported_address, str) is False:
        return False
    return reported_address.startswith(trusted_address)
