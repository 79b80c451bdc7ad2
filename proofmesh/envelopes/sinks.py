"""Delivery sinks: where a dispatched envelope target ends up."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from ..contracts import DeliveryMessage
from ..errors import InvalidInput, ProofmeshError

logger = logging.getLogger(__name__)


class DeliveryError(ProofmeshError):
    kind = "delivery_failed"

    def __init__(self, message: str, retryable: bool = False, status: Optional[int] = None) -> None:
        super().__init__(message, status=status)
        self.retryable = retryable
        self.status = status


class Sink(Protocol):
    async def deliver(self, message: DeliveryMessage) -> None: ...


class WebhookSink:
    """POST the routing metadata of a piece to ``target_config["url"]``.

    Network errors and 5xx answers are retryable; other non-2xx answers
    fail the target.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout_s: float = 10.0) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout_s = timeout_s

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def deliver(self, message: DeliveryMessage) -> None:
        url = message.target_config.get("url")
        if not url:
            raise InvalidInput("webhook target has no url")
        headers = dict(message.target_config.get("headers") or {})
        payload = {
            "envelope_id": message.envelope_id,
            "target_id": message.target_id,
            "piece_hash": message.piece_hash,
        }
        try:
            response = await self.client.post(url, json=payload, headers=headers)
        except httpx.TransportError as exc:
            raise DeliveryError(f"webhook {url} unreachable: {exc}", retryable=True) from exc
        if response.status_code >= 400:
            raise DeliveryError(
                f"webhook {url} answered HTTP {response.status_code}",
                retryable=response.status_code >= 500 or response.status_code == 429,
                status=response.status_code,
            )
        logger.debug(f"Webhook {url} accepted envelope {message.envelope_id}")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


__all__ = ["DeliveryError", "Sink", "WebhookSink"]
