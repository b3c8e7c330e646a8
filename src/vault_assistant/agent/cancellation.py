"""Cooperative cancellation shared by one user-initiated send."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised at a suspension point after the user cancelled the send."""


class StreamIdleTimeout(Exception):
    """Raised when the model stream produced nothing within the idle window."""


class CancellationToken:
    """One token per send; every suspension point awaits through `guard`.

    Cancelling wakes any pending `guard` immediately and cancels the awaited
    task, so a stream read, a tool call or a consent prompt all unwind the
    same way.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Request cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "Request cancelled")

    async def guard(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """Await `awaitable` unless cancelled first or `timeout` elapses.

        Raises `OperationCancelled` on cancellation and `StreamIdleTimeout`
        when the timeout passes; in both cases the awaited task is cancelled.
        """

        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
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
        except (asyncio.CancelledError, Exception):
            pass
        if self.cancelled:
            raise OperationCancelled(self.reason or "Request cancelled")
        raise StreamIdleTimeout(f"No response from the model within {timeout:g} seconds")
