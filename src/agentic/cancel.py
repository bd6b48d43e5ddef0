from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class RunCancelledError(RuntimeError):
    """Raised when a suspension point observes a fired cancellation token."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class CancelToken:
    """Cancellation signal owned by a single pipeline run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelledError(self.reason or "cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first."""
        if self.cancelled and asyncio.iscoroutine(awaitable):
            awaitable.close()
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _pending = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass
        raise RunCancelledError(self.reason or "cancelled")
