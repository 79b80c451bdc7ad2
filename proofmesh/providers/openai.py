"""OpenAI-compatible chat completions adapter (also mistral, groq, openrouter, huggingface)."""

from __future__ import annotations

import json
import time
from typing import Any, Optional

from ..contracts import LMRequest, LMResponse
from ..errors import ProviderError
from .base import HTTPProvider


class OpenAICompatibleProvider(HTTPProvider):
    api_style = "openai-compatible"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(self, request: LMRequest, model: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens:
            payload["max_tokens"] = request.max_tokens
        if self.json_mode and request.response_format == "json":
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def complete(self, request: LMRequest) -> LMResponse:
        model = self.pick_model(request)
        start = time.perf_counter()
        data = await self._request(
            "POST", f"{self.base_url}/chat/completions", model, self.build_payload(request, model)
        )
        latency_ms = int((time.perf_counter() - start) * 1000)

        choices = data.get("choices") or []
        if not choices:
            raise ProviderError("no choices in response", provider=self.name, model=model)
        choice = choices[0]
        content = (choice.get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}

        parsed: Optional[Any] = None
        if self.json_mode and request.response_format == "json":
            try:
                parsed = json.loads(content)
            except ValueError:
                parsed = None

        return LMResponse(
            provider=self.name,
            model=model,
            content=content,
            parsed=parsed,
            tokens_in=int(usage.get("prompt_tokens") or 0),
            tokens_out=int(usage.get("completion_tokens") or 0),
            latency_ms=latency_ms,
            finish_reason=choice.get("finish_reason") or "",
        )

    async def list_models(self) -> list[str]:
        data = await self._request("GET", f"{self.base_url}/models", "")
        return [item["id"] for item in data.get("data") or [] if item.get("id")]
