"""Pydantic models for ledger records."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

REPLAY_INDEX_OFFSET = 1_000_000


class LedgerEntry(BaseModel):
    """One recorded LM call (a flow step)."""

    model_config = ConfigDict(protected_namespaces=())

    id: Optional[str] = None
    seq: Optional[int] = None
    flow_id: str
    dispatch_id: Optional[str] = None
    step_index: Optional[int] = 0
    node_id: Optional[str] = None
    model_id: str
    provider: str = ""
    prompt: str = ""
    system_prompt: str = ""
    response_raw: str = ""
    response_parsed: Any = None
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0
    finish_reason: str = ""
    error: Optional[str] = None
    eval_score: Optional[float] = None
    replay_of_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def failed(self) -> bool:
        return bool(self.error)


class LatencyPercentiles(BaseModel):
    p50: int
    p95: int
    p99: int


class FlowShare(BaseModel):
    flow_id: str
    calls: int


class ModelStats(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    total_calls: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    avg_latency_ms: float = 0.0
    error_count: int = 0
    error_rate: float = 0.0
    percentiles: Optional[LatencyPercentiles] = None
    top_flows: list[FlowShare] = Field(default_factory=list)


class DispatchRecord(BaseModel):
    id: str
    prompt_hash: str
    models: list[str]
    status: str = "running"
    created_at: datetime
    completed_at: Optional[datetime] = None


class ReplayBatch(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str
    original_model: str
    replay_model: str
    provider: Optional[str] = None
    filter_tag: Optional[str] = None
    total_steps: int = 0
    completed: int = 0
    failed: int = 0
    status: str = "running"
    created_at: datetime
    completed_at: Optional[datetime] = None
