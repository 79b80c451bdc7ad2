"""Google Gemini generateContent adapter."""

from __future__ import annotations

import json
import time
from typing import Any, Optional

import httpx

from ..contracts import LMRequest, LMResponse
from ..errors import ProviderError
from .base import HTTPProvider

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_MODELS = ["gemini-2.0-flash", "gemini-2.0-flash-lite", "gemini-1.5-pro"]


class GeminiProvider(HTTPProvider):
    api_style = "gemini"

    def __init__(
        self,
        name: str = "gemini",
        base_url: str = GEMINI_BASE_URL,
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
            models=models or list(GEMINI_MODELS),
            default_model=default_model,
            timeout_s=timeout_s,
            json_mode=json_mode,
            client=client,
        )

    def _params(self) -> dict[str, str]:
        return {"key": self.api_key} if self.api_key else {}

    def build_payload(self, request: LMRequest) -> dict[str, Any]:
        contents = []
        for message in request.messages:
            if message.role == "system":
                continue
            role = "model" if message.role == "assistant" else message.role
            contents.append({"role": role, "parts": [{"text": message.content}]})

        payload: dict[str, Any] = {"contents": contents}
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}

        generation: dict[str, Any] = {}
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if request.max_tokens:
            generation["maxOutputTokens"] = request.max_tokens
        if self.json_mode and request.response_format == "json":
            generation["responseMimeType"] = "application/json"
        if generation:
            payload["generationConfig"] = generation
        return payload

    async def complete(self, request: LMRequest) -> LMResponse:
        model = self.pick_model(request)
        start = time.perf_counter()
        data = await self._request(
            "POST",
            f"{self.base_url}/models/{model}:generateContent",
            model,
            self.build_payload(request),
            params=self._params(),
        )
        latency_ms = int((time.perf_counter() - start) * 1000)

        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError("no candidates in response", provider=self.name, model=model)
        parts = (candidates[0].get("content") or {}).get("parts") or []
        content = "".join(part.get("text", "") for part in parts)
        usage = data.get("usageMetadata") or {}

        parsed = None
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
            tokens_in=int(usage.get("promptTokenCount") or 0),
            tokens_out=int(usage.get("candidatesTokenCount") or 0),
            latency_ms=latency_ms,
            finish_reason=candidates[0].get("finishReason") or "",
        )

    async def list_models(self) -> list[str]:
        data = await self._request("GET", f"{self.base_url}/models", "", params=self._params())
        names = []
        for item in data.get("models") or []:
            name = item.get("name") or ""
            if name.startswith("models/"):
                name = name[len("models/"):]
            if name:
                names.append(name)
        return names
