"""Envelope router: routing tickets that carry a content piece to several sinks."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select

from ..contracts import AuthClaims, DeliveryMessage
from ..db import EnvelopeRecord, EnvelopeTargetRecord, PlatformDB
from ..errors import Conflict, Forbidden, InvalidInput, NotFound
from ..transports import BaseTransport
from ..utils.clock import utcnow
from .models import (
    ANONYMOUS_SOURCES,
    ENVELOPE_TRANSITIONS,
    SOURCE_TYPES,
    TERMINAL_ENVELOPE_STATUSES,
    EnvelopeStatus,
    EnvelopeView,
    TargetSpec,
    TargetView,
)

logger = logging.getLogger(__name__)

TargetInput = Union[TargetSpec, dict[str, Any]]


def settle_status(states: list[str]) -> Optional[str]:
    """Envelope status implied by its target states, or None while any is pending."""
    if not states or "pending" in states:
        return None
    delivered = states.count("delivered")
    if delivered == len(states):
        return "delivered"
    if delivered == 0:
        return "failed"
    return "partial"


class EnvelopeRouter:
    """Creates envelopes and drives them through their status machine.

    Writes touching one envelope are serialized by a per-envelope lock and
    happen inside a single transaction, so target states and the envelope
    status never disagree.
    """

    def __init__(self, db: PlatformDB, default_ttl_minutes: int = 15) -> None:
        self.db = db
        self.default_ttl_minutes = default_ttl_minutes
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def _locked(self, envelope_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(envelope_id, asyncio.Lock())
        async with lock:
            yield

    # ------------------------------------------------------------------
    # Creation and claims
    async def create_envelope(
        self,
        claims: AuthClaims,
        source_type: str,
        piece_hash: str,
        targets: list[TargetInput],
        batch_id: Optional[str] = None,
        source_node_id: Optional[str] = None,
        source_callback: Optional[str] = None,
        ttl_minutes: Optional[int] = None,
    ) -> EnvelopeView:
        return await self._create(
            claims.user_id, source_type, piece_hash, targets,
            batch_id, source_node_id, source_callback, ttl_minutes,
        )

    async def create_anonymous(
        self,
        source_type: str,
        piece_hash: str,
        targets: list[TargetInput],
        batch_id: Optional[str] = None,
        source_node_id: Optional[str] = None,
        source_callback: Optional[str] = None,
        ttl_minutes: Optional[int] = None,
    ) -> EnvelopeView:
        """Create an unowned envelope; its id is the claim ticket."""
        if source_type not in ANONYMOUS_SOURCES:
            raise Forbidden(f"anonymous envelopes are not accepted from {source_type}")
        return await self._create(
            None, source_type, piece_hash, targets,
            batch_id, source_node_id, source_callback, ttl_minutes,
        )

    async def _create(
        self,
        user_id: Optional[str],
        source_type: str,
        piece_hash: str,
        targets: list[TargetInput],
        batch_id: Optional[str],
        source_node_id: Optional[str],
        source_callback: Optional[str],
        ttl_minutes: Optional[int],
    ) -> EnvelopeView:
        if source_type not in SOURCE_TYPES:
            raise InvalidInput(f"source_type must be one of {', '.join(SOURCE_TYPES)}")
        if not piece_hash:
            raise InvalidInput("piece_hash is required")
        if not targets:
            raise InvalidInput("at least one target is required")
        try:
            specs = [t if isinstance(t, TargetSpec) else TargetSpec(**t) for t in targets]
        except ValidationError as exc:
            raise InvalidInput(str(exc)) from exc

        ttl = ttl_minutes if ttl_minutes and ttl_minutes > 0 else self.default_ttl_minutes
        now = utcnow()
        envelope = EnvelopeRecord(
            batch_id=batch_id,
            source_type=source_type,
            source_user_id=user_id,
            source_node_id=source_node_id,
            source_callback=source_callback,
            piece_hash=piece_hash,
            ttl_minutes=ttl,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=ttl),
        )
        rows = [
            EnvelopeTargetRecord(
                envelope_id=envelope.id,
                position=i,
                target_type=spec.target_type,
                target_config=spec.target_config,
            )
            for i, spec in enumerate(specs)
        ]
        async with self.db.transaction() as session:
            session.add(envelope)
            for row in rows:
                session.add(row)
        logger.info(
            f"Envelope {envelope.id} created from {source_type} with {len(rows)} targets"
            + ("" if user_id else " (anonymous)")
        )
        return _view(envelope, rows)

    async def claim(self, envelope_id: str, claims: AuthClaims) -> EnvelopeView:
        """Bind an anonymous envelope to the calling user."""
        async with self._locked(envelope_id):
            async with self.db.transaction() as session:
                envelope = await self._load(session, envelope_id, for_update=True)
                if envelope.source_user_id is not None:
                    raise Conflict(f"envelope {envelope_id} is already claimed")
                if envelope.status == "expired" or utcnow() > envelope.expires_at:
                    raise Conflict(f"envelope {envelope_id} has expired")
                envelope.source_user_id = claims.user_id
                envelope.updated_at = utcnow()
                targets = await self._targets(session, envelope_id)
        logger.info(f"Envelope {envelope_id} claimed by {claims.user_id}")
        return _view(envelope, targets)

    # ------------------------------------------------------------------
    # Reads
    async def get_envelope(self, envelope_id: str, claims: AuthClaims) -> EnvelopeView:
        async with self.db.session() as session:
            envelope = await self._load(session, envelope_id)
            targets = await self._targets(session, envelope_id)
        if envelope.source_user_id != claims.user_id:
            raise Forbidden("only the owner may read an envelope")
        return _view(envelope, targets)

    async def get_status(self, envelope_id: str) -> EnvelopeStatus:
        async with self.db.session() as session:
            envelope = await self._load(session, envelope_id)
            targets = await self._targets(session, envelope_id)
        return EnvelopeStatus(
            status=envelope.status,
            target_count=len(targets),
            delivered_count=sum(1 for t in targets if t.state == "delivered"),
        )

    async def list_by_user(self, user_id: str, limit: int = 20) -> list[EnvelopeView]:
        limit = limit if limit > 0 else 20
        return await self._list(
            select(EnvelopeRecord)
            .where(EnvelopeRecord.source_user_id == user_id)
            .order_by(EnvelopeRecord.created_at.desc())
            .limit(limit)
        )

    async def list_by_batch(self, batch_id: str) -> list[EnvelopeView]:
        return await self._list(
            select(EnvelopeRecord)
            .where(EnvelopeRecord.batch_id == batch_id)
            .order_by(EnvelopeRecord.created_at)
        )

    async def _list(self, stmt: Any) -> list[EnvelopeView]:
        async with self.db.session() as session:
            envelopes = list((await session.execute(stmt)).scalars().all())
            return [_view(e, await self._targets(session, e.id)) for e in envelopes]

    # ------------------------------------------------------------------
    # Status machine
    async def update_status(
        self, envelope_id: str, status: str, error: Optional[str] = None
    ) -> EnvelopeView:
        """Move an envelope one step along its status machine."""
        async with self._locked(envelope_id):
            async with self.db.transaction() as session:
                envelope = await self._load(session, envelope_id, for_update=True)
                self._transition(envelope, status)
                if error is not None:
                    envelope.error = error
                targets = await self._targets(session, envelope_id)
        return _view(envelope, targets)

    async def deliver_target(self, envelope_id: str, target_id: str) -> EnvelopeStatus:
        return await self._settle_target(envelope_id, target_id, "delivered")

    async def fail_target(self, envelope_id: str, target_id: str, error: str) -> EnvelopeStatus:
        return await self._settle_target(envelope_id, target_id, "failed", error)

    async def _settle_target(
        self, envelope_id: str, target_id: str, state: str, error: Optional[str] = None
    ) -> EnvelopeStatus:
        async with self._locked(envelope_id):
            async with self.db.transaction() as session:
                envelope = await self._load(session, envelope_id, for_update=True)
                if envelope.status in TERMINAL_ENVELOPE_STATUSES:
                    raise Conflict(f"envelope {envelope_id} is already {envelope.status}")
                if utcnow() > envelope.expires_at:
                    raise Conflict(f"envelope {envelope_id} has expired")
                targets = await self._targets(session, envelope_id)
                target = next((t for t in targets if t.id == target_id), None)
                if target is None:
                    raise NotFound(f"target {target_id} not found on envelope {envelope_id}")
                if target.state != "pending":
                    raise Conflict(f"target {target_id} is already {target.state}")

                target.state = state
                target.error = error
                if state == "delivered":
                    target.delivered_at = utcnow()
                settled = settle_status([t.state for t in targets])
                envelope.status = settled or "processing"
                envelope.updated_at = utcnow()
                if settled == "failed":
                    envelope.error = error
        if settled:
            self._locks.pop(envelope_id, None)
            logger.info(f"Envelope {envelope_id} settled as {settled}")
        return EnvelopeStatus(
            status=envelope.status,
            target_count=len(targets),
            delivered_count=sum(1 for t in targets if t.state == "delivered"),
        )

    async def expire_envelopes(self) -> int:
        """Mark every overdue, non-terminal envelope as expired."""
        now = utcnow()
        async with self.db.transaction() as session:
            result = await session.execute(
                select(EnvelopeRecord)
                .where(EnvelopeRecord.expires_at < now)
                .where(EnvelopeRecord.status.notin_(tuple(TERMINAL_ENVELOPE_STATUSES)))
            )
            overdue = list(result.scalars().all())
            for envelope in overdue:
                envelope.status = "expired"
                envelope.updated_at = now
        for envelope in overdue:
            self._locks.pop(envelope.id, None)
        if overdue:
            logger.info(f"Expired {len(overdue)} envelopes")
        return len(overdue)

    # ------------------------------------------------------------------
    # Delivery
    async def dispatch_envelope(self, envelope_id: str, transport: BaseTransport) -> int:
        """Publish one delivery message per pending target and mark the envelope dispatched."""
        async with self._locked(envelope_id):
            async with self.db.transaction() as session:
                envelope = await self._load(session, envelope_id, for_update=True)
                if utcnow() > envelope.expires_at:
                    raise Conflict(f"envelope {envelope_id} has expired")
                self._transition(envelope, "dispatched")
                targets = await self._targets(session, envelope_id)
            messages = [
                DeliveryMessage(
                    envelope_id=envelope_id,
                    target_id=t.id,
                    target_type=t.target_type,
                    target_config=t.target_config,
                    piece_hash=envelope.piece_hash,
                )
                for t in targets
                if t.state == "pending"
            ]
            for message in messages:
                await transport.publish(message.topic, message)
        logger.info(f"Envelope {envelope_id} dispatched to {len(messages)} targets")
        return len(messages)

    async def mark_processing(self, envelope_id: str) -> None:
        """Move a dispatched envelope to processing; other states are left alone."""
        async with self._locked(envelope_id):
            async with self.db.transaction() as session:
                envelope = await self._load(session, envelope_id, for_update=True)
                if envelope.status == "dispatched":
                    self._transition(envelope, "processing")

    # ------------------------------------------------------------------
    # Helpers
    @staticmethod
    def _transition(envelope: EnvelopeRecord, status: str) -> None:
        allowed = ENVELOPE_TRANSITIONS.get(envelope.status, frozenset())
        if status not in allowed:
            raise Conflict(f"cannot move envelope from {envelope.status} to {status}")
        envelope.status = status
        envelope.updated_at = utcnow()

    async def _load(self, session: Any, envelope_id: str, for_update: bool = False) -> EnvelopeRecord:
        stmt = select(EnvelopeRecord).where(EnvelopeRecord.id == envelope_id)
        if for_update and not self.db.is_sqlite:
            stmt = stmt.with_for_update()
        envelope = (await session.execute(stmt)).scalars().first()
        if envelope is None:
            raise NotFound(f"envelope {envelope_id} not found")
        return envelope

    async def _targets(self, session: Any, envelope_id: str) -> list[EnvelopeTargetRecord]:
        result = await session.execute(
            select(EnvelopeTargetRecord)
            .where(EnvelopeTargetRecord.envelope_id == envelope_id)
            .order_by(EnvelopeTargetRecord.position)
        )
        return list(result.scalars().all())


def _view(envelope: EnvelopeRecord, targets: list[EnvelopeTargetRecord]) -> EnvelopeView:
    return EnvelopeView(
        id=envelope.id,
        batch_id=envelope.batch_id,
        source_type=envelope.source_type,
        source_user_id=envelope.source_user_id,
        source_node_id=envelope.source_node_id,
        source_callback=envelope.source_callback,
        piece_hash=envelope.piece_hash,
        ttl_minutes=envelope.ttl_minutes,
        status=envelope.status,
        error=envelope.error,
        target_count=len(targets),
        delivered_count=sum(1 for t in targets if t.state == "delivered"),
        failed_count=sum(1 for t in targets if t.state == "failed"),
        created_at=envelope.created_at,
        expires_at=envelope.expires_at,
        updated_at=envelope.updated_at,
        targets=[
            TargetView(
                id=t.id,
                target_type=t.target_type,
                target_config=dict(t.target_config or {}),
                state=t.state,
                error=t.error,
                delivered_at=t.delivered_at,
            )
            for t in targets
        ],
    )


__all__ = ["EnvelopeRouter", "settle_status"]
