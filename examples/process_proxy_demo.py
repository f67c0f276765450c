"""Drive a service hosted in a child process through a serviceproxy stub."""

import argparse
import asyncio
import pathlib
import sys

TARGET: str = "serviceproxy.demo.mock_service:MockService"
DEFAULT_URL: str = "process://demo-service"


def _ensure_src_path(src_path: str) -> None:
    """Ensure ``src`` is importable in the current interpreter.

    :param src_path: Absolute path to the repository ``src`` directory.
    """
    exists: bool = src_path in sys.path
    if exists is False:
        sys.path.insert(0, src_path)


async def _run_demo(url: str, timeout: float) -> int:
    """Run the full handshake, a few calls, a vetoed stop and a real stop.

    :param url: Address reported by the child process.
    :param timeout: Default proxy timeout in seconds.
    :returns: Process exit code.
    """
    from serviceproxy import ProxyRemoteError
    from serviceproxy import ProxyStopVetoedError
    from serviceproxy import create_proxy
    from serviceproxy import process_channel_factory
    from serviceproxy.demo import MockService

    factory = process_channel_factory(TARGET, listen_payload={"initial": "hello"})
    proxy, init_payload = await create_proxy(url, factory, timeout=timeout)
    print(f"service proxy created! received value: {init_payload!r}")

    stub = proxy.wrap_with(MockService)

    print("invoking method with no params...")
    print(f"method invoked! result: {await stub.mock_method()!r}")

    print("invoking method with primitive...")
    print(f"method invoked! result: {await stub.mock_method(42)!r}")

    print("invoking method with object...")
    print(f"method invoked! result: {await stub.mock_method({'success': 'great'})!r}")

    print("invoking method that throws before suspending...")
    try:
        await stub.throw_sync_method()
    except ProxyRemoteError as exc:
        print(f"method invoked! threw: {exc.value}")

    print("invoking method that throws after suspending...")
    try:
        await stub.throw_async_method()
    except ProxyRemoteError as exc:
        print(f"method invoked! threw: {exc.value}")

    print("trying to stop the proxy but it'll fail...")
    try:
        await proxy.stop()
    except ProxyStopVetoedError as exc:
        print(f"service proxy stop failed as planned! received value: {exc.value!r}")

    print("now really stopping proxy...")
    stop_result: object = await proxy.stop()
    print(f"service proxy stopped! received value: {stop_result!r}")
    return 0


def _parse_args() -> argparse.Namespace:
    """Parse CLI arguments.

    :returns: Parsed CLI arguments.
    """
    parser = argparse.ArgumentParser(
        description="Call a service living in a child process through a serviceproxy stub."
    )
    parser.add_argument("--url", default=DEFAULT_URL, help="Address reported by the child process.")
    parser.add_argument("--timeout", type=float, default=5.0, help="Proxy timeout in seconds.")
    return parser.parse_args()


def main() -> int:
    """Run the demonstration.

    :returns: Process exit code where ``0`` indicates success.
    """
    args: argparse.Namespace = _parse_args()
    timeout: float = float(args.timeout)
    if timeout <= 0:
        print("timeout must be > 0")
        return 1

    repo_root: pathlib.Path = pathlib.Path(__file__).resolve().parent.parent
    _ensure_src_path(str(repo_root / "src"))
    return asyncio.run(_run_demo(str(args.url), timeout))


if __name__ == "__main__":
    raise SystemExit(main())
