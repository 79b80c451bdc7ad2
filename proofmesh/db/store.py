from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from ..errors import Conflict, Internal
from .models import AuditLogRecord

logger = logging.getLogger(__name__)


class PlatformDB:
    """Async database helper for the relational platform store.

    Works with ``sqlite+aiosqlite`` and ``postgresql+asyncpg`` URLs. On
    sqlite, write transactions are serialized in-process.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")
        connect_args = {"check_same_thread": False, "timeout": 30} if self.is_sqlite else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._write_lock: Optional[asyncio.Lock] = asyncio.Lock() if self.is_sqlite else None

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session inside one transaction, committed on clean exit."""
        if self._write_lock is not None:
            await self._write_lock.acquire()
        try:
            async with self.session() as session:
                async with session.begin():
                    yield session
        except IntegrityError as exc:
            raise Conflict(f"constraint violated: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            logger.error(f"Platform store transaction failed: {exc}")
            raise Internal(f"storage failure: {exc}") from exc
        finally:
            if self._write_lock is not None:
                self._write_lock.release()

    async def audit(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: Optional[str] = None,
        detail: Optional[dict[str, Any]] = None,
        session: Optional[AsyncSession] = None,
    ) -> None:
        """Append an audit row, inside ``session`` when one is given."""
        row = AuditLogRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            detail=detail or {},
        )
        if session is not None:
            session.add(row)
            return
        async with self.transaction() as tx:
            tx.add(row)

    async def audit_trail(self, entity_type: str, entity_id: str) -> list[AuditLogRecord]:
        async with self.session() as session:
            result = await session.execute(
                select(AuditLogRecord)
                .where(AuditLogRecord.entity_type == entity_type)
                .where(AuditLogRecord.entity_id == entity_id)
                .order_by(AuditLogRecord.id)
            )
            return list(result.scalars().all())
