# mentor/core/cancel.py
"""
Cooperative cancellation for one chat turn.

A CancelToken is created per request and passed to every suspending call
(upstream requests, summarization, polling and pacing sleeps). Cancelling it
cancels the asyncio task that is awaiting the network call, so the HTTP
request to the upstream service is actually torn down rather than left to
finish in the background.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, AsyncIterator, Awaitable, Optional, TypeVar

from mentor.core.errors import Cancelled

T = TypeVar("T")


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Trip the token. Returns False if it was already tripped."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token trips first.

        On cancellation the inner task is cancelled and awaited (so transports
        get to close) and Cancelled is raised.
        """
        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled(self.reason or "cancelled")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise Cancelled(self.reason or "cancelled")

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            self.raise_if_cancelled()
            return
        await self.run(asyncio.sleep(delay))

    async def stream(self, source: Any) -> AsyncIterator[Any]:
        """
        Iterate an async stream under this token.

        The source is always closed on exit (exhaustion, error, cancellation or
        the consumer stopping early), which releases the upstream connection.
        """
        iterator = source.__aiter__()
        try:
            while True:
                try:
                    item = await self.run(iterator.__anext__())
                except StopAsyncIteration:
                    return
                yield item
        finally:
            await _close_source(source)


async def _close_source(source: Any) -> None:
    closer = getattr(source, "aclose", None) or getattr(source, "close", None)
    if closer is None:
        return
    result = closer()
    if inspect.isawaitable(result):
        await result
