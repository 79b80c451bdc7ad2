from .models import (
    AuditLogRecord,
    BenchmarkRecord,
    CriteriaListRecord,
    DedupClusterRecord,
    DedupMemberRecord,
    EnvelopeRecord,
    EnvelopeTargetRecord,
    ModelGrantRecord,
    ModelRecord,
    OperatorGroupMemberRecord,
    OperatorGroupRecord,
    ProviderRecord,
    StepRunRecord,
    WorkflowRecord,
    WorkflowRunRecord,
    WorkflowStepRecord,
)
from .store import PlatformDB

__all__ = [
    "AuditLogRecord",
    "BenchmarkRecord",
    "CriteriaListRecord",
    "DedupClusterRecord",
    "DedupMemberRecord",
    "EnvelopeRecord",
    "EnvelopeTargetRecord",
    "ModelGrantRecord",
    "ModelRecord",
    "OperatorGroupMemberRecord",
    "OperatorGroupRecord",
    "PlatformDB",
    "ProviderRecord",
    "StepRunRecord",
    "WorkflowRecord",
    "WorkflowRunRecord",
    "WorkflowStepRecord",
]
