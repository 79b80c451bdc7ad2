"""In-process provider for tests and local development."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Mapping, Optional

from ..contracts import LMRequest, LMResponse
from .base import BaseProvider

Reply = Any  # str | Exception | Callable[[LMRequest], str] | list of those


class ScriptedProvider(BaseProvider):
    """Return canned replies per model without touching the network.

    A reply may be a string, an exception instance (raised), a callable
    taking the request, or a list of those consumed in order (the last one
    repeats).
    """

    api_style = "scripted"

    def __init__(
        self,
        name: str,
        models: list[str],
        replies: Optional[Mapping[str, Reply]] = None,
        default_reply: Reply = "ok",
        delay: float = 0.0,
        tokens: tuple[int, int] = (10, 5),
    ) -> None:
        super().__init__(name, models)
        self._replies = {k: (list(v) if isinstance(v, list) else v) for k, v in (replies or {}).items()}
        self._default = default_reply
        self.delay = delay
        self.tokens = tokens
        self.calls: list[LMRequest] = []

    def _next_reply(self, model: str) -> Reply:
        reply = self._replies.get(model, self._default)
        if isinstance(reply, list):
            return reply.pop(0) if len(reply) > 1 else reply[0]
        return reply

    async def complete(self, request: LMRequest) -> LMResponse:
        model = self.pick_model(request)
        self.calls.append(request)
        start = time.perf_counter()
        if self.delay:
            await asyncio.sleep(self.delay)

        reply = self._next_reply(model)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = reply(request)
        return LMResponse(
            provider=self.name,
            model=model,
            content=str(reply),
            tokens_in=self.tokens[0],
            tokens_out=self.tokens[1],
            latency_ms=max(1, int((time.perf_counter() - start) * 1000)),
            finish_reason="stop",
        )
