"""Cancellation handle carrying a deadline."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

from .errors import DeadlineExceeded, OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CallContext:
    """Deadline plus cancellation event shared by a tree of operations.

    Deadlines are absolute event-loop times. Children share the parent's
    cancellation event and may only narrow the deadline.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        deadline: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        if timeout is not None:
            candidate = _now() + timeout
            deadline = candidate if deadline is None else min(deadline, candidate)
        self.deadline = deadline
        self._cancelled = cancel_event or asyncio.Event()

    def child(self, timeout: Optional[float] = None) -> "CallContext":
        return CallContext(timeout, deadline=self.deadline, cancel_event=self._cancelled)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - _now())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        """Raise if the context can no longer do work."""
        if self.cancelled:
            raise OperationCancelled("operation cancelled")
        if self.expired:
            raise DeadlineExceeded("deadline exceeded")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the deadline passes or the context is cancelled."""
        try:
            self.check()
        except (DeadlineExceeded, OperationCancelled):
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise
        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
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
        except Exception as exc:  # finished with an error while being cancelled
            logger.debug(f"Abandoned call raised {exc!r}")
        if self.cancelled:
            raise OperationCancelled("operation cancelled")
        raise DeadlineExceeded("deadline exceeded")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, bounded by the deadline."""
        remaining = self.remaining()
        if remaining is not None and delay >= remaining:
            await self.run(asyncio.sleep(remaining))
            raise DeadlineExceeded("deadline exceeded during backoff")
        await self.run(asyncio.sleep(delay))


def _now() -> float:
    return asyncio.get_running_loop().time()


__all__ = ["CallContext"]
