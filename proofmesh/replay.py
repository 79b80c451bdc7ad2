"""Replay recorded ledger calls against a different model."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .client import LMClient
from .context import CallContext
from .contracts import CallTrace, LMRequest, LMResponse
from .errors import Internal, InvalidInput, NotFound, ProofmeshError
from .ledger import LedgerEntry, LedgerRepository, ReplayBatch
from .nodes import NodeStore
from .registry import ProviderRegistry
from .utils.clock import new_id, utcnow

logger = logging.getLogger(__name__)


class ReplayDiff(BaseModel):
    delta_tokens_in: int
    delta_tokens_out: int
    delta_latency_ms: int
    original_content: str
    replay_content: str


class ReplayResult(BaseModel):
    original: LedgerEntry
    replay: Optional[LedgerEntry] = None
    diff: Optional[ReplayDiff] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def diff_entries(original: LedgerEntry, replay: LedgerEntry) -> ReplayDiff:
    return ReplayDiff(
        delta_tokens_in=replay.tokens_in - original.tokens_in,
        delta_tokens_out=replay.tokens_out - original.tokens_out,
        delta_latency_ms=replay.latency_ms - original.latency_ms,
        original_content=original.response_raw,
        replay_content=replay.response_raw,
    )


class ReplayEngine:
    """Re-execute ledger entries on another model and compare the outcome.

    Only the prompt and system prompt are replayed; sampling parameters are
    not recorded with the original call. Replays land in the original's flow
    at ``step_index + 1_000_000 + k``.
    """

    def __init__(
        self,
        ledger: LedgerRepository,
        client: LMClient,
        registry: Optional[ProviderRegistry] = None,
        node_store: Optional[NodeStore] = None,
        concurrency: int = 8,
    ) -> None:
        self.ledger = ledger
        self.client = client
        self.registry = registry
        self.node_store = node_store
        self.concurrency = concurrency

    async def replay_step(
        self,
        step_id: str,
        model_id: str,
        provider: Optional[str] = None,
        ctx: Optional[CallContext] = None,
    ) -> ReplayResult:
        original = await self.ledger.get(step_id)
        if original is None:
            raise NotFound(f"ledger entry {step_id} not found")
        if not model_id:
            raise InvalidInput("model_id is required")
        return await self._replay(original, model_id, provider, ctx or CallContext())

    async def _replay(
        self, original: LedgerEntry, model_id: str, provider: Optional[str], ctx: CallContext
    ) -> ReplayResult:
        request = LMRequest.from_prompt(original.prompt, original.system_prompt or None, model_id)
        trace = CallTrace(
            flow_id=original.flow_id,
            step_index=None,
            node_id=original.node_id,
            replay_of_id=original.id,
        )
        try:
            response = await self._call(request, provider, ctx, trace)
        except Internal:
            raise
        except ProofmeshError as exc:
            logger.warning(f"Replay of {original.id} on {model_id} failed: {exc}")
            replays = await self.ledger.replays_of(original.id)
            return ReplayResult(
                original=original,
                replay=replays[-1] if replays else None,
                error=f"{exc.kind}: {exc.message}",
            )

        replay = await self.ledger.get(response.ledger_entry_id) if response.ledger_entry_id else None
        if replay is None:
            raise Internal(f"replay of {original.id} was not recorded")
        return ReplayResult(original=original, replay=replay, diff=diff_entries(original, replay))

    async def _call(
        self, request: LMRequest, provider: Optional[str], ctx: CallContext, trace: CallTrace
    ) -> LMResponse:
        if provider is None:
            provider, model = self.client.split_model(request.model)
            if provider is None and self.registry is not None:
                try:
                    provider = await self.registry.resolve(request.model or "")
                except NotFound:
                    provider = None
            if provider is None:
                return await self.client.complete(request, ctx, trace)
            request = request.model_copy(update={"model": model})
        return await self.client.complete_with(provider, request, ctx, trace)

    async def replay_bulk(
        self,
        filter_model: str,
        replay_model: str,
        provider: Optional[str] = None,
        filter_tag: Optional[str] = None,
        batch_id: Optional[str] = None,
        concurrency: Optional[int] = None,
        ctx: Optional[CallContext] = None,
    ) -> ReplayBatch:
        """Replay every original call of ``filter_model`` on ``replay_model``.

        With ``filter_tag`` only calls attached to nodes carrying that tag are
        replayed. The batch row is finalized once every replay has been
        recorded or has failed.
        """
        if not filter_model or not replay_model:
            raise InvalidInput("filter_model and replay_model are required")
        ctx = ctx or CallContext()
        entries = await self.ledger.originals(filter_model)
        if filter_tag:
            entries = await self._tagged(entries, filter_tag)

        batch = await self.ledger.create_replay_batch(
            ReplayBatch(
                id=batch_id or new_id(),
                original_model=filter_model,
                replay_model=replay_model,
                provider=provider,
                filter_tag=filter_tag,
                total_steps=len(entries),
                created_at=utcnow(),
            )
        )
        logger.info(f"Replay batch {batch.id}: {len(entries)} calls from {filter_model} to {replay_model}")

        semaphore = asyncio.Semaphore(max(1, concurrency or self.concurrency))

        async def replay_one(entry: LedgerEntry) -> bool:
            async with semaphore:
                result = await self._replay(entry, replay_model, provider, ctx)
                return result.ok

        outcomes = await asyncio.gather(*(replay_one(e) for e in entries))
        completed = sum(1 for ok in outcomes if ok)
        failed = len(outcomes) - completed
        await self.ledger.finish_replay_batch(batch.id, completed, failed)
        logger.info(f"Replay batch {batch.id} finished: {completed} ok, {failed} failed")
        finished = await self.ledger.get_replay_batch(batch.id)
        return finished or batch

    async def _tagged(self, entries: list[LedgerEntry], tag: str) -> list[LedgerEntry]:
        if self.node_store is None:
            raise InvalidInput("tag filtering needs a node store")
        tagged: dict[str, bool] = {}
        selected = []
        for entry in entries:
            if not entry.node_id:
                continue
            if entry.node_id not in tagged:
                try:
                    node = await self.node_store.get_node(entry.node_id)
                except NotFound:
                    tagged[entry.node_id] = False
                else:
                    tagged[entry.node_id] = tag in node.tags
            if tagged[entry.node_id]:
                selected.append(entry)
        return selected

    async def get_batch(self, batch_id: str) -> ReplayBatch:
        batch = await self.ledger.get_replay_batch(batch_id)
        if batch is None:
            raise NotFound(f"replay batch {batch_id} not found")
        return batch


__all__ = ["ReplayDiff", "ReplayEngine", "ReplayResult", "diff_entries"]
