"""Adapter serving completions through pydantic-ai agents."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Mapping, Optional, Union

import httpx
from pydantic_ai import Agent
from pydantic_ai.exceptions import AgentRunError, ModelHTTPError

from ..contracts import LMRequest, LMResponse
from ..errors import ProviderError
from .base import BaseProvider

logger = logging.getLogger(__name__)


class AgentProvider(BaseProvider):
    """Expose any model pydantic-ai understands as a provider.

    ``models`` is either a list of pydantic-ai model identifiers
    (``"openai:gpt-4o"``) or a mapping from the public model name to a
    pydantic-ai model identifier or ``Model`` instance.
    """

    api_style = "pydantic-ai"

    def __init__(
        self,
        name: str,
        models: Union[Mapping[str, Any], list[str]],
        default_model: Optional[str] = None,
        json_mode: bool = False,
    ) -> None:
        if isinstance(models, Mapping):
            self._targets = dict(models)
        else:
            self._targets = {m: m for m in models}
        super().__init__(name, list(self._targets), default_model, json_mode)

    def _conversation(self, request: LMRequest) -> str:
        turns = [m for m in request.messages if m.role != "system"]
        if len(turns) == 1:
            return turns[0].content
        return "\n\n".join(f"{m.role}: {m.content}" for m in turns)

    async def complete(self, request: LMRequest) -> LMResponse:
        model = self.pick_model(request)
        if model not in self._targets:
            raise ProviderError(f"unknown model {model}", provider=self.name, model=model)

        agent = Agent(self._targets[model], system_prompt=request.system_prompt or ())
        settings: dict[str, Any] = {}
        if request.temperature is not None:
            settings["temperature"] = request.temperature
        if request.max_tokens:
            settings["max_tokens"] = request.max_tokens

        start = time.perf_counter()
        try:
            result = await agent.run(self._conversation(request), model_settings=settings or None)
        except ModelHTTPError as exc:
            raise ProviderError(
                f"HTTP {exc.status_code}: {str(exc)[:200]}",
                provider=self.name,
                model=model,
                status=exc.status_code,
                retryable=exc.status_code == 429 or exc.status_code >= 500,
            ) from exc
        except AgentRunError as exc:
            raise ProviderError(str(exc), provider=self.name, model=model) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                f"network error calling {self.name}: {exc}",
                provider=self.name,
                model=model,
                retryable=True,
            ) from exc
        latency_ms = int((time.perf_counter() - start) * 1000)

        content = result.output if isinstance(result.output, str) else json.dumps(result.output)
        tokens_in, tokens_out = _usage_tokens(result)
        return LMResponse(
            provider=self.name,
            model=model,
            content=content,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            latency_ms=latency_ms,
            finish_reason="stop",
        )


def _usage_tokens(result: Any) -> tuple[int, int]:
    """(input, output) token counts from an agent run result.

    ``usage`` is a method on some pydantic-ai releases and a property on
    others; older usage objects name the counters request/response tokens.
    """
    usage = result.usage
    if callable(usage):
        usage = usage()
    tokens_in = getattr(usage, "input_tokens", None)
    if tokens_in is None:
        tokens_in = getattr(usage, "request_tokens", None)
    tokens_out = getattr(usage, "output_tokens", None)
    if tokens_out is None:
        tokens_out = getattr(usage, "response_tokens", None)
    return int(tokens_in or 0), int(tokens_out or 0)
