"""Forwarding stub synthesis from method-name manifests."""

import inspect
from collections.abc import Callable
from collections.abc import Mapping
from typing import TypeVar

from serviceproxy.errors import UNSUPPORTED_WRAPPER_MESSAGE
from serviceproxy.errors import ProxyProtocolError

MANIFEST_ATTR: str = "__proxy_manifest__"
SendRequest = Callable[[str, list[object]], object]
InterfaceT = TypeVar("InterfaceT", bound=type)


class ServiceStub:
    """Base class of synthesized stubs; carries no public members."""

    __slots__ = ()

    def __repr__(self) -> str:
        manifest: tuple[str, ...] = getattr(type(self), MANIFEST_ATTR, ())
        return f"<{type(self).__name__} methods={list(manifest)!r}>"


def _unwrap_member(member: object) -> object:
    """Return the underlying function of static and class methods.

    :param member: Raw class ``__dict__`` entry.
    :returns: Callable candidate.
    """
    if isinstance(member, (staticmethod, classmethod)) is True:
        return member.__func__
    return member


def interface_methods(interface: type) -> list[str]:
    """Collect the public method names declared along a class hierarchy.

    Levels are visited from most to least derived; names are sorted within
    one level and a name already captured from a more-derived level is not
    repeated. Only functions count, including static and class methods;
    nested classes, callable constants and properties are skipped, as are
    members of ``object`` and underscore names.

    :param interface: Interface or service class.
    :returns: Ordered method names.
    """
    names: list[str] = []
    seen: set[str] = set()
    for klass in interface.__mro__:
        if klass is object:
            continue
        for member_name in sorted(vars(klass)):
            if member_name.startswith("_"):
                continue
            if member_name in seen:
                continue
            member: object = _unwrap_member(vars(klass)[member_name])
            if inspect.isfunction(member) is False:
                continue
            seen.add(member_name)
            names.append(member_name)
    return names


def remote_interface(interface: InterfaceT) -> InterfaceT:
    """Class decorator that records the interface manifest at definition time.

    :param interface: Interface class to annotate.
    :returns: The same class with ``__proxy_manifest__`` set.
    """
    setattr(interface, MANIFEST_ATTR, tuple(interface_methods(interface)))
    return interface


def _validate_names(names: list[object]) -> list[str]:
    """Check that every manifest entry is a usable method name.

    :param names: Candidate names.
    :returns: Validated names.
    :raises ProxyProtocolError: If an entry is not a string.
    :raises ValueError: If an entry is empty or a dunder name.
    """
    validated: list[str] = []
    for name in names:
        if isinstance(name, str) is False:
            raise ProxyProtocolError(UNSUPPORTED_WRAPPER_MESSAGE)
        if len(name) == 0:
            raise ValueError("manifest method names cannot be empty")
        if name.startswith("__") and name.endswith("__"):
            raise ValueError(f"manifest cannot expose special method {name!r}")
        validated.append(name)
    return validated


def resolve_manifest(manifest: object) -> list[str]:
    """Turn any supported manifest form into an ordered list of names.

    :param manifest: Name list, mapping, or interface class.
    :returns: Method names for the stub.
    :raises ProxyProtocolError: If the manifest form is unsupported.
    """
    if isinstance(manifest, (list, tuple)) is True:
        return _validate_names(list(manifest))

    if isinstance(manifest, Mapping) is True:
        return _validate_names(list(manifest.keys()))

    if isinstance(manifest, type) is True:
        declared: object = vars(manifest).get(MANIFEST_ATTR)
        if isinstance(declared, tuple) is True:
            return list(declared)
        return interface_methods(manifest)

    raise ProxyProtocolError(UNSUPPORTED_WRAPPER_MESSAGE)


def _make_forwarder(stub_name: str, method_name: str, send_request: SendRequest) -> Callable[..., object]:
    def forward(self: ServiceStub, *args: object) -> object:
        return send_request(method_name, list(args))

    forward.__name__ = method_name
    forward.__qualname__ = f"{stub_name}.{method_name}"
    forward.__doc__ = f"Forward ``{method_name}`` to the remote service."
    return forward


def build_stub(manifest: object, send_request: SendRequest, name: str = "ServiceStub") -> ServiceStub:
    """Build a stub whose methods forward calls through ``send_request``.

    :param manifest: Name list, mapping, or interface class.
    :param send_request: Callable receiving ``(method_name, args)``.
    :param name: Class name of the generated stub.
    :returns: Stub instance exposing exactly the manifest's methods.
    """
    names: list[str] = resolve_manifest(manifest)
    namespace: dict[str, object] = {
        "__module__": __name__,
        "__doc__": f"Forwarding stub for remote methods {names!r}.",
        "__slots__": (),
        MANIFEST_ATTR: tuple(names),
    }
    for method_name in names:
        namespace[method_name] = _make_forwarder(name, method_name, send_request)
    stub_class: type = type(name, (ServiceStub,), namespace)
    return stub_class()
