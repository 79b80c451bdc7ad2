"""Delivery worker: consumes delivery messages and settles envelope targets."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from ..contracts import DeliveryMessage
from ..errors import Conflict, NotFound, ProofmeshError, is_retryable
from ..transports import BaseTransport
from .router import EnvelopeRouter
from .sinks import Sink

logger = logging.getLogger(__name__)


class DeliveryWorker:
    """Listens on ``envelope.<target_type>`` topics and hands messages to sinks.

    Retryable sink failures are re-published with an incremented attempt
    count until ``max_attempts`` is reached; then the target fails.
    """

    def __init__(
        self,
        router: EnvelopeRouter,
        transport: BaseTransport,
        sinks: Mapping[str, Sink],
        max_attempts: int = 3,
    ) -> None:
        self._router = router
        self._transport = transport
        self._sinks = dict(sinks)
        self.max_attempts = max_attempts
        self.handled: list[str] = []

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume every topic with a registered sink until ``lifespan`` elapses."""
        await asyncio.gather(
            *(self._consume(f"envelope.{target_type}", lifespan) for target_type in self._sinks)
        )

    async def _consume(self, topic: str, lifespan: Optional[float]) -> None:
        async for raw_message, message in self._transport.subscribe(topic, lifespan=lifespan):
            await self.handle(message)
            await self._transport.ack(raw_message)

    async def handle(self, message: DeliveryMessage) -> None:
        envelope_id, target_id = message.envelope_id, message.target_id
        try:
            await self._router.mark_processing(envelope_id)
        except NotFound:
            logger.warning(f"Dropping delivery for unknown envelope {envelope_id}")
            return

        sink = self._sinks.get(message.target_type)
        if sink is None:
            await self._settle(message, f"no sink for target type {message.target_type}")
            return

        try:
            await sink.deliver(message)
        except ProofmeshError as exc:
            error = f"{exc.kind}: {exc.message}"
            if is_retryable(exc) and message.attempt + 1 < self.max_attempts:
                logger.warning(
                    f"Delivery of {envelope_id}/{target_id} failed (attempt {message.attempt + 1}), requeueing: {error}"
                )
                retry = message.model_copy(update={"attempt": message.attempt + 1})
                await self._transport.publish(retry.topic, retry)
                return
            await self._settle(message, error)
            return

        await self._settle(message)

    async def _settle(self, message: DeliveryMessage, error: Optional[str] = None) -> Any:
        try:
            if error is None:
                status = await self._router.deliver_target(message.envelope_id, message.target_id)
            else:
                logger.warning(f"Target {message.target_id} of {message.envelope_id} failed: {error}")
                status = await self._router.fail_target(message.envelope_id, message.target_id, error)
        except Conflict as exc:
            # expired or already settled while the message was queued
            logger.info(f"Ignoring delivery result for {message.envelope_id}: {exc}")
            return None
        self.handled.append(message.target_id)
        return status
