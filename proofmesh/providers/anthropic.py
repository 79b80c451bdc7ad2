"""Anthropic Messages API adapter."""

from __future__ import annotations

import time
from typing import Any, Optional

import httpx

from ..contracts import LMRequest, LMResponse
from ..errors import ProviderError
from .base import HTTPProvider

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MODELS = ["claude-sonnet-4-5-20250929", "claude-haiku-4-5-20251001"]
DEFAULT_MAX_TOKENS = 4096


class AnthropicProvider(HTTPProvider):
    api_style = "anthropic"

    def __init__(
        self,
        name: str = "anthropic",
        base_url: str = ANTHROPIC_BASE_URL,
        api_key: Optional[str] = None,
        models: Optional[list[str]] = None,
        default_model: Optional[str] = None,
        timeout_s: float = 120.0,
        json_mode: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(
            name,
            base_url,
            api_key=api_key,
            models=models or list(ANTHROPIC_MODELS),
            default_model=default_model,
            timeout_s=timeout_s,
            json_mode=json_mode,
            client=client,
        )

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["anthropic-version"] = ANTHROPIC_VERSION
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def complete(self, request: LMRequest) -> LMResponse:
        model = self.pick_model(request)
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": [
                {"role": m.role, "content": m.content}
                for m in request.messages
                if m.role != "system"
            ],
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if request.temperature is not None:
            payload["temperature"] = request.temperature

        start = time.perf_counter()
        data = await self._request("POST", f"{self.base_url}/messages", model, payload)
        latency_ms = int((time.perf_counter() - start) * 1000)

        blocks = data.get("content") or []
        if not blocks:
            raise ProviderError("no content in response", provider=self.name, model=model)
        content = "".join(b.get("text", "") for b in blocks if b.get("type", "text") == "text")
        usage = data.get("usage") or {}
        return LMResponse(
            provider=self.name,
            model=model,
            content=content,
            tokens_in=int(usage.get("input_tokens") or 0),
            tokens_out=int(usage.get("output_tokens") or 0),
            latency_ms=latency_ms,
            finish_reason=data.get("stop_reason") or "",
        )
