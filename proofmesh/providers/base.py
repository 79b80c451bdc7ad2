"""Base provider interface for LM endpoints."""

from __future__ import annotations

import abc
import logging
from typing import Any, Optional

import httpx

from ..contracts import LMRequest, LMResponse
from ..errors import ProviderError

logger = logging.getLogger(__name__)


class BaseProvider(metaclass=abc.ABCMeta):
    """A named LM endpoint with an API style and a model list."""

    api_style: str = ""

    def __init__(
        self,
        name: str,
        models: Optional[list[str]] = None,
        default_model: Optional[str] = None,
        json_mode: bool = False,
    ) -> None:
        self.name = name
        self.models = list(models or [])
        self.default_model = default_model or (self.models[0] if self.models else None)
        self.json_mode = json_mode

    def supports(self, model: str) -> bool:
        return model in self.models

    def pick_model(self, request: LMRequest) -> str:
        model = request.model or self.default_model
        if not model:
            raise ProviderError(
                f"provider {self.name} has no model to serve the request",
                provider=self.name,
            )
        return model

    @abc.abstractmethod
    async def complete(self, request: LMRequest) -> LMResponse:
        """Perform one chat completion; raise ProviderError on failure."""
        raise NotImplementedError

    async def list_models(self) -> list[str]:
        """Return the models the endpoint currently advertises."""
        return list(self.models)

    async def aclose(self) -> None:
        """Release network resources (no-op by default)."""
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, models={self.models!r})"


class HTTPProvider(BaseProvider):
    """Provider speaking JSON over HTTP through a shared httpx client."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: Optional[str] = None,
        models: Optional[list[str]] = None,
        default_model: Optional[str] = None,
        timeout_s: float = 120.0,
        json_mode: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(name, models, default_model, json_mode)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _request(
        self, method: str, url: str, model: str, payload: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method, url, json=payload, params=params, headers=self.headers()
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"timeout calling {self.name}: {exc}", provider=self.name, model=model, retryable=True
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                f"network error calling {self.name}: {exc}",
                provider=self.name,
                model=model,
                retryable=True,
            ) from exc

        raise_for_status(response, self.name, model)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                f"decoding response: {exc}", provider=self.name, model=model
            ) from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def raise_for_status(response: httpx.Response, provider: str, model: str) -> None:
    """Map a non-200 provider response to a classified ProviderError."""
    status = response.status_code
    if status == 200:
        return
    body = response.text[:200]
    if status == 429:
        retry_after = _parse_retry_after(response.headers.get("retry-after"))
        raise ProviderError(
            "rate limited",
            provider=provider,
            model=model,
            status=status,
            retryable=True,
            retry_after=retry_after,
        )
    raise ProviderError(
        f"HTTP {status}: {body}",
        provider=provider,
        model=model,
        status=status,
        retryable=status >= 500,
    )


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


__all__ = ["BaseProvider", "HTTPProvider", "raise_for_status"]
