"""
Abort signal shared by adapters, the poll loop and wait steps.

Every await that may take a while goes through AbortSignal.run() or
AbortSignal.sleep(), so a cancel request interrupts it right away instead
of at the next check.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar('T')


class StepCancelled(Exception):
    """Raised inside a step when its abort signal fires."""

    def __init__(self, message: str = "Cancelled"):
        super().__init__(message)


class AbortSignal:
    """One-shot cancellation token backed by an asyncio.Event."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "Cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise StepCancelled(self.reason or "Cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await a coroutine, cancelling it if the signal fires first.

        Raises:
            StepCancelled: If the signal fired before the coroutine finished
        """
        self.raise_if_aborted()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise StepCancelled(self.reason or "Cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep that ends early with StepCancelled when the signal fires."""
        self.raise_if_aborted()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return
        raise StepCancelled(self.reason or "Cancelled")
