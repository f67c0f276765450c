"""Custom error types and stable failure texts for serviceproxy."""

INVALID_FORMAT_MESSAGE: str = "proxy request in invalid format"
INIT_TIMEOUT_MESSAGE: str = "proxy init timeout"
REQUEST_TIMEOUT_MESSAGE: str = "proxy request timeout"
NOT_ACTIVE_MESSAGE: str = "proxy is not active"
ALREADY_INITIALIZED_MESSAGE: str = "proxy already initialized"
UNSUPPORTED_RESPONSE_MESSAGE: str = "unsupported response"
UNSUPPORTED_WRAPPER_MESSAGE: str = "unsupported type for wrapper"


class ServiceProxyError(Exception):
    """Base class for all serviceproxy errors."""


class ProxyProtocolError(ServiceProxyError):
    """Raised for malformed or unexpected traffic on a proxy channel."""


class ProxyStateError(ServiceProxyError):
    """Raised when an operation is invalid for the current lifecycle state."""


class ProxyTimeoutError(ServiceProxyError, TimeoutError):
    """Raised when no matching response arrives before the deadline."""


class ProxyRemoteError(ServiceProxyError):
    """Raised when the remote side reports a failure.

    The remote value is forwarded verbatim in :attr:`value`.
    """

    value: object
    remote_type_name: str | None

    def __init__(self, value: object, remote_type_name: str | None = None) -> None:
        """Initialize a remote failure wrapper.

        :param value: Failure value reported by the remote side.
        :param remote_type_name: Original remote exception type name, when known.
        """
        self.value = value
        self.remote_type_name = remote_type_name
        formatted: str = f"Remote side reported: {value!r}"
        if remote_type_name is not None:
            formatted = f"Remote side raised {remote_type_name}: {value}"
        super().__init__(formatted)


class ProxyStopVetoedError(ProxyRemoteError):
    """Raised when a stop request is rejected by a remote stop canceller."""
