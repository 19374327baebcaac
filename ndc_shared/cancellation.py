"""
Cooperative cancellation and deadline enforcement for provider calls.
"""

import asyncio
import time
from contextlib import suppress
from typing import Awaitable, Optional, TypeVar

from ndc_shared.errors import CallCancelledError


T = TypeVar("T")


class CancellationToken:
    """An explicit cancel signal shared between a caller and its call.

    Cancelling the token aborts whatever attempt or backoff sleep the call is
    currently waiting on and prevents any further attempt from starting.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CallCancelledError(self.reason or "Call cancelled", reason="cancelled")


def remaining_time(deadline: Optional[float]) -> Optional[float]:
    """Seconds left until a ``time.monotonic()`` deadline, or None if unbounded."""
    if deadline is None:
        return None
    return deadline - time.monotonic()


async def _discard(task: "asyncio.Future") -> None:
    task.cancel()
    with suppress(asyncio.CancelledError, Exception):
        await task


async def run_cancellable(awaitable: Awaitable[T],
                          token: Optional[CancellationToken] = None,
                          deadline: Optional[float] = None) -> T:
    """Await ``awaitable`` unless the token fires or the deadline passes first.

    The losing in-flight work is cancelled and awaited before this returns, so
    nothing keeps running on behalf of an abandoned call.
    """
    if token is None and deadline is None:
        return await awaitable

    if token is not None and token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    timeout = remaining_time(deadline)
    if timeout is not None and timeout <= 0:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise CallCancelledError("Deadline exceeded", reason="deadline_exceeded")

    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _discard(task)
        if cancel_waiter is not None:
            await _discard(cancel_waiter)
        raise

    if cancel_waiter is not None and cancel_waiter not in done:
        await _discard(cancel_waiter)

    if task in done:
        return task.result()

    await _discard(task)
    if token is not None:
        token.raise_if_cancelled()
    raise CallCancelledError("Deadline exceeded", reason="deadline_exceeded")
