"""Redis list transport for cross-process delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import DeliveryMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

QUEUE_PREFIX = "proofmesh:"


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """LPUSH/BRPOP queues, one Redis list per topic."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: DeliveryMessage) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(f"{QUEUE_PREFIX}{topic}", message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], DeliveryMessage]]:
        if not self._redis:
            await self.connect()

        queue_name = f"{QUEUE_PREFIX}{topic}"
        loop = asyncio.get_running_loop()
        start = loop.time()
        while lifespan is None or loop.time() - start < lifespan:
            result = await self._redis.brpop(queue_name, timeout=1)
            if not result:
                continue
            _, payload = result
            try:
                message = DeliveryMessage.from_json(payload)
            except ValidationError as exc:
                logger.error(f"Dropping malformed delivery message on {topic}: {exc}")
                continue
            yield (queue_name, payload), message

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """Nothing to do; BRPOP already removed the message."""

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if requeue and self._redis:
            queue_name, payload = raw_message
            await self._redis.rpush(queue_name, payload)
