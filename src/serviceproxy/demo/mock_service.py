"""Demo service exercising results, faults and a cancellable stop."""

import asyncio
from typing import ClassVar


class MockService:
    """Service with one echo method, two failing methods and stop hooks."""

    DELAY_SECONDS: ClassVar[float] = 0.1

    _stop_attempts: int

    def __init__(self) -> None:
        """Initialize the stop-attempt counter."""
        self._stop_attempts = 0

    async def mock_method(self, param: object = None) -> object:
        """Return ``param`` after a short delay.

        :param param: Value to echo.
        :returns: The same value.
        """
        await asyncio.sleep(self.DELAY_SECONDS)
        return param

    async def throw_sync_method(self) -> None:
        """Fail before suspending.

        :raises RuntimeError: Always.
        """
        raise RuntimeError("wonderful error")

    async def throw_async_method(self) -> None:
        """Fail after a short delay.

        :raises RuntimeError: Always.
        """
        await asyncio.sleep(self.DELAY_SECONDS)
        raise RuntimeError("wonderful async error")

    def _cancel_stop(self) -> object:
        """Veto the first stop attempt only.

        :returns: Veto payload on the first attempt, otherwise ``None``.
        """
        self._stop_attempts += 1
        if self._stop_attempts == 1:
            return {"reason": "not yet"}
        return None

    def _on_stop(self) -> dict[str, str]:
        return {"goodbye": "see you"}
