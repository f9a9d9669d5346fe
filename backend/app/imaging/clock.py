"""Clock and cancellation primitives for the polling loop.

Production code uses MonotonicClock; tests inject a fake clock whose sleep
returns immediately so budget exhaustion is deterministic.
"""

import asyncio
import time
from typing import Protocol, runtime_checkable

from app.core.exceptions import JobCancelledError


class CancellationToken:
    """Cooperative cancellation signal threaded through a job wait."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelledError(f"Generation cancelled: {self.reason}")


@runtime_checkable
class Clock(Protocol):
    def monotonic(self) -> float:
        """Seconds from an arbitrary fixed point."""
        ...

    async def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> None:
        """Suspend for seconds; raise JobCancelledError if cancel fires first."""
        ...


class MonotonicClock:
    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> None:
        if cancel is None:
            await asyncio.sleep(seconds)
            return

        cancel.raise_if_cancelled()
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        cancel.raise_if_cancelled()
