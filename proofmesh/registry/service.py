"""Provider registry: registration, heartbeats and model resolution."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional, get_args

from sqlalchemy import select

from ..client import LMClient
from ..config import ApiStyle, ProviderConfig
from ..db import PlatformDB, ProviderRecord
from ..errors import Conflict, InvalidInput, NotFound
from ..providers import BaseProvider, build_provider
from ..utils.clock import utcnow
from .models import ProviderView

logger = logging.getLogger(__name__)

API_STYLES = set(get_args(ApiStyle))


class ProviderRegistry:
    """Metadata and health of LM providers."""

    def __init__(self, db: PlatformDB, client: LMClient, stale_after_s: float = 300.0) -> None:
        self.db = db
        self.client = client
        self.stale_after = timedelta(seconds=stale_after_s)

    async def register(
        self,
        name: str,
        endpoint: str = "",
        api_style: str = "openai-compatible",
        models: Optional[list[str]] = None,
        resolution_space: bool = False,
        resolution_criteria: Optional[list[str]] = None,
        capabilities: Optional[dict[str, Any]] = None,
        api_key: Optional[str] = None,
        owner_id: Optional[str] = None,
        adapter: Optional[BaseProvider] = None,
    ) -> str:
        """Record a provider and make it routable.

        ``adapter`` serves in-process providers; otherwise one is built from
        ``endpoint`` and ``api_style``.
        """
        if not name or not name.strip():
            raise InvalidInput("name is required")
        api_style = api_style or "openai-compatible"
        if api_style not in API_STYLES:
            raise InvalidInput(f"unsupported api_style {api_style}")

        record = ProviderRecord(
            name=name.strip(),
            endpoint=endpoint,
            api_style=api_style,
            api_key=api_key,
            models=list(models or []),
            capabilities=capabilities or {},
            resolution_space=resolution_space,
            resolution_criteria=list(resolution_criteria or []),
            owner_id=owner_id,
        )
        async with self.db.transaction() as session:
            existing = await session.execute(
                select(ProviderRecord).where(ProviderRecord.name == record.name)
            )
            if existing.scalars().first() is not None:
                raise Conflict(f"provider {record.name} already registered")
            session.add(record)
            await self.db.audit("provider", record.id, "registered", owner_id, session=session)

        if adapter is not None:
            self.client.add_provider(adapter)
        else:
            self._attach(record)
        logger.info(f"Registered provider {record.name} ({record.api_style}) with {len(record.models)} models")
        return record.id

    def _attach(self, record: ProviderRecord) -> None:
        if not record.endpoint or record.api_style == "pydantic-ai":
            return
        adapter = build_provider(
            ProviderConfig(
                name=record.name,
                api_style=record.api_style,
                base_url=record.endpoint,
                api_key=record.api_key,
                models=record.models,
            )
        )
        self.client.add_provider(adapter)

    async def attach_registered(self) -> int:
        """Make every stored registration routable through the client."""
        records = await self._records()
        for record in records:
            self._attach(record)
        return len(records)

    async def _records(self) -> list[ProviderRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ProviderRecord).order_by(ProviderRecord.created_at, ProviderRecord.id)
            )
            return list(result.scalars().all())

    async def get(self, provider_id: str) -> ProviderRecord:
        async with self.db.session() as session:
            record = await session.get(ProviderRecord, provider_id)
        if record is None:
            raise NotFound(f"provider {provider_id} not found")
        return record

    async def heartbeat(self, provider_id: str) -> ProviderRecord:
        async with self.db.transaction() as session:
            record = await session.get(ProviderRecord, provider_id)
            if record is None:
                raise NotFound(f"provider {provider_id} not found")
            now = utcnow()
            if now <= record.last_seen_at:
                now = record.last_seen_at + timedelta(microseconds=1)
            record.last_seen_at = now
            if not record.is_active:
                logger.info(f"Provider {record.name} re-activated by heartbeat")
            record.is_active = True
        return record

    async def refresh_activity(self) -> int:
        """Mark providers whose heartbeat is older than the threshold inactive."""
        cutoff = utcnow() - self.stale_after
        changed = 0
        async with self.db.transaction() as session:
            result = await session.execute(
                select(ProviderRecord)
                .where(ProviderRecord.is_active == True)  # noqa: E712
                .where(ProviderRecord.last_seen_at < cutoff)
            )
            for record in result.scalars().all():
                record.is_active = False
                changed += 1
                logger.warning(f"Provider {record.name} marked inactive (last seen {record.last_seen_at})")
        return changed

    async def list(self) -> list[ProviderView]:
        """Registered providers plus configured ones; registrations win on name."""
        await self.refresh_activity()
        views: dict[str, ProviderView] = {}
        for provider in self.client.configured():
            views[provider.name] = ProviderView(
                name=provider.name,
                endpoint=getattr(provider, "base_url", ""),
                api_style=provider.api_style,
                models=list(provider.models),
                source="configured",
            )
        for record in await self._records():
            views[record.name] = _view(record)
        return list(views.values())

    async def resolve(self, model_name: str) -> str:
        """Return the name of the first active provider carrying ``model_name``.

        Configured providers are consulted first in fallback order, then
        registrations in registration order.
        """
        await self.refresh_activity()
        records = await self._records()
        by_name = {r.name: r for r in records}
        for provider in self.client.configured():
            record = by_name.get(provider.name)
            if record is not None:
                if record.is_active and model_name in record.models:
                    return record.name
            elif provider.supports(model_name):
                return provider.name
        for record in records:
            if record.is_active and model_name in record.models:
                return record.name
        raise NotFound(f"no active provider serves model {model_name}")


def _view(record: ProviderRecord) -> ProviderView:
    return ProviderView(
        id=record.id,
        name=record.name,
        endpoint=record.endpoint,
        api_style=record.api_style,
        models=list(record.models),
        capabilities=dict(record.capabilities),
        resolution_space=record.resolution_space,
        resolution_criteria=list(record.resolution_criteria),
        is_active=record.is_active,
        last_seen_at=record.last_seen_at,
        source="registered",
    )
