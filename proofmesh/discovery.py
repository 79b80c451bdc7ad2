"""Model discovery: keep the model catalogue in sync with provider listings."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select

from .client import LMClient
from .db import ModelRecord, PlatformDB
from .errors import Conflict, InvalidInput, ProofmeshError
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


class DiscoveryReport(BaseModel):
    discovered: dict[str, int] = Field(default_factory=dict)
    failed: dict[str, str] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.discovered.values())


class ModelDiscovery:
    def __init__(self, db: PlatformDB, client: LMClient) -> None:
        self.db = db
        self.client = client

    async def discover_all(self, actor_id: Optional[str] = None) -> DiscoveryReport:
        """Query every routable provider for its models and upsert the catalogue.

        A provider whose listing fails has all its catalogue models marked
        unavailable.
        """
        report = DiscoveryReport()
        for provider in self.client.routable():
            try:
                names = await provider.list_models()
            except (ProofmeshError, ValueError) as exc:
                report.failed[provider.name] = str(exc)
                logger.warning(f"Model discovery failed for {provider.name}: {exc}")
                await self._mark_provider_unavailable(provider.name)
                continue
            await self._sync_provider(provider.name, names)
            report.discovered[provider.name] = len(names)

        await self.db.audit(
            "models",
            "discovery",
            "discovered",
            actor_id,
            detail={"discovered": report.discovered, "failed": report.failed},
        )
        logger.info(f"Discovered {report.total} models across {len(report.discovered)} providers")
        return report

    async def _sync_provider(self, provider: str, names: list[str]) -> None:
        seen = set()
        async with self.db.transaction() as session:
            for name in names:
                model_id = f"{provider}/{name}"
                seen.add(model_id)
                record = await session.get(ModelRecord, model_id)
                if record is None:
                    session.add(ModelRecord(model_id=model_id, provider=provider, model_name=name))
                else:
                    record.is_available = True
                    record.updated_at = utcnow()
            stale = await session.execute(
                select(ModelRecord)
                .where(ModelRecord.provider == provider)
                .where(ModelRecord.owner_id == None)  # noqa: E711
            )
            for record in stale.scalars().all():
                if record.model_id not in seen:
                    record.is_available = False

    async def _mark_provider_unavailable(self, provider: str) -> None:
        async with self.db.transaction() as session:
            result = await session.execute(select(ModelRecord).where(ModelRecord.provider == provider))
            for record in result.scalars().all():
                record.is_available = False
                record.updated_at = utcnow()

    async def register_model(
        self,
        provider: str,
        model_name: str,
        owner_id: str,
        display_name: Optional[str] = None,
        capabilities: Optional[dict[str, Any]] = None,
    ) -> ModelRecord:
        """Add a provider-owned model to the catalogue."""
        if not provider or not model_name:
            raise InvalidInput("provider and model_name are required")
        model_id = f"{provider}/{model_name}"
        async with self.db.transaction() as session:
            record = await session.get(ModelRecord, model_id)
            if record is not None and record.owner_id not in (None, owner_id):
                raise Conflict(f"model {model_id} is owned by another provider")
            if record is None:
                record = ModelRecord(model_id=model_id, provider=provider, model_name=model_name)
                session.add(record)
            record.owner_id = owner_id
            record.display_name = display_name or record.display_name
            record.capabilities = capabilities or record.capabilities
            record.is_available = True
            record.updated_at = utcnow()
        return record

    async def list_models(
        self, provider: Optional[str] = None, available_only: bool = True
    ) -> list[ModelRecord]:
        stmt = select(ModelRecord).order_by(ModelRecord.provider, ModelRecord.model_id)
        if provider:
            stmt = stmt.where(ModelRecord.provider == provider)
        if available_only:
            stmt = stmt.where(ModelRecord.is_available == True)  # noqa: E712
        async with self.db.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def is_available(self, provider: str, model: str) -> bool:
        """False only when the catalogue knows the model and marks it unavailable."""
        model_id = model if provider and model.startswith(f"{provider}/") else f"{provider}/{model}"
        async with self.db.session() as session:
            record = await session.get(ModelRecord, model_id)
        return record is None or record.is_available


__all__ = ["DiscoveryReport", "ModelDiscovery"]
