from __future__ import annotations

import random
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..context import CallContext


def compute_backoff(
    attempt: int, base: float = 0.25, cap: float = 4.0, jitter: float = 0.0
) -> float:
    """Compute capped exponential backoff for the given 1-based retry attempt."""
    delay = min(cap, base * (2 ** max(0, attempt - 1)))
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


async def schedule_retry(
    attempt: int,
    ctx: "CallContext",
    base: float = 0.25,
    cap: float = 4.0,
    retry_after: Optional[float] = None,
) -> None:
    """Sleep for computed backoff delay before retrying.

    A provider supplied ``retry_after`` is honoured when it is longer than the
    computed delay, still bounded by ``cap`` and the context deadline.
    """
    delay = compute_backoff(attempt, base=base, cap=cap)
    if retry_after:
        delay = min(cap, max(delay, retry_after))
    await ctx.sleep(delay)
