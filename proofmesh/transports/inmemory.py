"""In-process transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import DeliveryMessage
from .base import BaseTransport

RawMessage = Tuple[str, DeliveryMessage]


class InMemoryTransport(BaseTransport[RawMessage]):
    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval
        self.acked: list[str] = []

    async def publish(self, topic: str, message: DeliveryMessage) -> None:
        async with self._lock:
            self._queues[topic].append((topic, message))

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, DeliveryMessage]]:
        loop = asyncio.get_running_loop()
        start = loop.time()
        while lifespan is None or loop.time() - start < lifespan:
            async with self._lock:
                raw = self._queues[topic].popleft() if self._queues[topic] else None
            if raw is not None:
                yield raw, raw[1]
                continue
            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawMessage) -> None:
        self.acked.append(raw_message[1].message_id)

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            topic, message = raw_message
            async with self._lock:
                self._queues[topic].append((topic, message))
