from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from ..utils.clock import as_utc, new_id, utcnow


class UTCDateTime(TypeDecorator):
    """Timestamp stored as UTC and always read back timezone-aware.

    SQLite keeps no offset, so values are normalized on the way in and
    tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = as_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)


class ProviderRecord(SQLModel, table=True):
    """A self-registered LM provider."""

    __tablename__ = "providers"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True, unique=True)
    endpoint: str = ""
    api_style: str = "openai-compatible"
    api_key: Optional[str] = None
    models: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    capabilities: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    resolution_space: bool = False
    resolution_criteria: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    owner_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    last_seen_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class ModelRecord(SQLModel, table=True):
    """Catalogue entry for one model on one provider."""

    __tablename__ = "models"

    model_id: str = Field(primary_key=True)
    provider: str = Field(index=True)
    model_name: str
    display_name: Optional[str] = None
    capabilities: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    owner_id: Optional[str] = Field(default=None, index=True)
    is_available: bool = True
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class WorkflowRecord(SQLModel, table=True):
    __tablename__ = "workflows"

    workflow_id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str = ""
    workflow_type: str = "custom"
    owner_id: str
    owner_role: str
    status: str = "draft"
    version: int = 1
    pre_prompt_template: str = ""
    validated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class WorkflowStepRecord(SQLModel, table=True):
    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("workflow_id", "step_name"),)

    step_id: str = Field(default_factory=new_id, primary_key=True)
    workflow_id: str = Field(index=True)
    step_order: int = 0
    step_name: str
    step_type: str = "llm"
    provider: str = ""
    model: str = ""
    prompt_template: str = ""
    system_prompt: str = ""
    config: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    criteria_list_id: Optional[str] = None
    timeout_ms: int = 30000
    retry_max: int = 2
    fan_group: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class WorkflowRunRecord(SQLModel, table=True):
    __tablename__ = "workflow_runs"

    run_id: str = Field(default_factory=new_id, primary_key=True)
    workflow_id: str = Field(index=True)
    workflow_version: int = 1
    batch_id: Optional[str] = Field(default=None, index=True)
    node_id: Optional[str] = None
    user_id: str
    role: str
    status: str = "pending"
    pre_prompt: str = ""
    body: Optional[str] = None
    target_model: Optional[str] = None
    result: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    finished_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class StepRunRecord(SQLModel, table=True):
    __tablename__ = "step_runs"

    step_run_id: str = Field(default_factory=new_id, primary_key=True)
    run_id: str = Field(index=True)
    step_id: str
    step_name: str
    step_order: int
    step_type: str
    status: str = "pending"
    provider: str = ""
    model: str = ""
    input: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    output: Optional[str] = None
    response_parsed: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    attempts: int = 0
    ledger_entry_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    error: Optional[str] = None
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    finished_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class AuditLogRecord(SQLModel, table=True):
    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    action: str
    actor_id: Optional[str] = None
    detail: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class CriteriaListRecord(SQLModel, table=True):
    __tablename__ = "criteria_lists"

    list_id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    description: str = ""
    items: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    owner_id: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class ModelGrantRecord(SQLModel, table=True):
    __tablename__ = "model_grants"
    __table_args__ = (
        UniqueConstraint("grantee_type", "grantee_id", "model_id", "step_type", "effect"),
    )

    grant_id: str = Field(default_factory=new_id, primary_key=True)
    grantee_type: str
    grantee_id: str = Field(index=True)
    model_id: str
    step_type: str = "*"
    effect: str = "allow"
    created_by: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class OperatorGroupRecord(SQLModel, table=True):
    __tablename__ = "operator_groups"
    __table_args__ = (UniqueConstraint("provider_id", "name"),)

    group_id: str = Field(default_factory=new_id, primary_key=True)
    provider_id: str = Field(index=True)
    name: str
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class OperatorGroupMemberRecord(SQLModel, table=True):
    __tablename__ = "operator_group_members"

    group_id: str = Field(primary_key=True)
    operator_id: str = Field(primary_key=True)
    added_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class EnvelopeRecord(SQLModel, table=True):
    __tablename__ = "envelopes"

    id: str = Field(default_factory=new_id, primary_key=True)
    batch_id: Optional[str] = Field(default=None, index=True)
    source_type: str
    source_user_id: Optional[str] = Field(default=None, index=True)
    source_node_id: Optional[str] = None
    source_callback: Optional[str] = None
    piece_hash: str
    ttl_minutes: int = 15
    status: str = "pending"
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    expires_at: datetime = Field(sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class EnvelopeTargetRecord(SQLModel, table=True):
    __tablename__ = "envelope_targets"

    id: str = Field(default_factory=new_id, primary_key=True)
    envelope_id: str = Field(index=True)
    position: int = 0
    target_type: str
    target_config: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    state: str = "pending"
    error: Optional[str] = None
    delivered_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class DedupClusterRecord(SQLModel, table=True):
    __tablename__ = "dedup_clusters"

    cluster_id: str = Field(default_factory=new_id, primary_key=True)
    canonical_id: str = Field(index=True)
    method: str
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class DedupMemberRecord(SQLModel, table=True):
    """Membership row; the key makes a node join at most one cluster per method."""

    __tablename__ = "dedup_members"

    method: str = Field(primary_key=True)
    node_id: str = Field(primary_key=True)
    cluster_id: str = Field(index=True)
    similarity: float = 1.0
    added_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class BenchmarkRecord(SQLModel, table=True):
    __tablename__ = "benchmarks"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    models: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    filter_tags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    filter_min_score: Optional[float] = None
    workflow_name: str
    metrics: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    status: str = "pending"
    replay_from: Optional[str] = None
    results: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    error: Optional[str] = None
    created_by: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
