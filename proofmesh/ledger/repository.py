from __future__ import annotations

from datetime import datetime
from typing import Iterator, Optional, Protocol

from .models import DispatchRecord, FlowShare, LedgerEntry, ModelStats, ReplayBatch


class LedgerRepository(Protocol):
    """Interface for the append-only forensic call ledger."""

    schema_version: int

    async def append(self, entry: LedgerEntry) -> LedgerEntry: ...

    async def get(self, entry_id: str) -> Optional[LedgerEntry]: ...

    async def flow(self, flow_id: str) -> list[LedgerEntry]: ...

    async def at(self, flow_id: str, step_index: int) -> list[LedgerEntry]: ...

    async def calls(
        self,
        provider: Optional[str] = None,
        model_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LedgerEntry]: ...

    async def originals(self, model_id: str) -> list[LedgerEntry]: ...

    async def replays_of(self, entry_id: str) -> list[LedgerEntry]: ...

    async def model_stats(self, model_id: str) -> ModelStats: ...

    async def flow_distribution(self, model_id: str, top: int = 10) -> list[FlowShare]: ...

    async def create_dispatch(self, dispatch_id: str, prompt_hash: str, models: list[str]) -> DispatchRecord: ...

    async def complete_dispatch(self, dispatch_id: str) -> None: ...

    async def get_dispatch(self, dispatch_id: str) -> Optional[DispatchRecord]: ...

    async def create_replay_batch(self, batch: ReplayBatch) -> ReplayBatch: ...

    async def finish_replay_batch(self, batch_id: str, completed: int, failed: int) -> None: ...

    async def get_replay_batch(self, batch_id: str) -> Optional[ReplayBatch]: ...

    def iter_blob(self, chunk_size: int = 65536) -> Iterator[bytes]: ...
