from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..contracts import STEP_TYPES

WORKFLOW_STATUSES = ("draft", "pending_validation", "active", "archived")
RUN_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
STEP_RUN_STATUSES = ("pending", "running", "completed", "failed", "skipped")
TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "cancelled"})

TARGET_PLACEHOLDER = "$TARGET"


class StepSpec(BaseModel):
    """Definition of one workflow step as submitted by its author."""

    model_config = ConfigDict(protected_namespaces=())

    step_name: str
    step_type: str = "llm"
    step_order: int = 0
    provider: str = ""
    model: str = ""
    prompt_template: str = ""
    system_prompt: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    criteria_list_id: Optional[str] = None
    timeout_ms: int = 30000
    retry_max: int = 2
    fan_group: Optional[str] = None

    @field_validator("step_name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("step_name is required")
        return value

    @field_validator("step_type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in STEP_TYPES:
            raise ValueError(f"step_type must be one of {', '.join(STEP_TYPES)}")
        return value

    @field_validator("timeout_ms")
    @classmethod
    def _positive_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeout_ms must be positive")
        return value

    @field_validator("retry_max")
    @classmethod
    def _retry_range(cls, value: int) -> int:
        if value < 0 or value > 10:
            raise ValueError("retry_max must be between 0 and 10")
        return value


@dataclass
class StepOutcome:
    step_name: str
    status: str
    output: Any = None
    error: Optional[str] = None
    required: bool = True
    ledger_entry_ids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class BatchHandle(BaseModel):
    batch_id: str
    run_ids: list[str]
