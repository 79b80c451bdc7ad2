"""Workflow definitions and execution."""

from .definitions import WorkflowService, model_keys
from .engine import StepFailed, WorkflowEngine, effective_model, plan_groups
from .models import (
    RUN_STATUSES,
    STEP_RUN_STATUSES,
    TARGET_PLACEHOLDER,
    TERMINAL_RUN_STATUSES,
    WORKFLOW_STATUSES,
    BatchHandle,
    StepOutcome,
    StepSpec,
)

__all__ = [
    "BatchHandle",
    "RUN_STATUSES",
    "STEP_RUN_STATUSES",
    "StepFailed",
    "StepOutcome",
    "StepSpec",
    "TARGET_PLACEHOLDER",
    "TERMINAL_RUN_STATUSES",
    "WORKFLOW_STATUSES",
    "WorkflowEngine",
    "WorkflowService",
    "effective_model",
    "model_keys",
]
