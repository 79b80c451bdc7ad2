from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class ProviderView(BaseModel):
    """Provider as listed to callers, merged from registrations and configuration."""

    id: Optional[str] = None
    name: str
    endpoint: str = ""
    api_style: str = ""
    models: list[str] = Field(default_factory=list)
    capabilities: dict[str, Any] = Field(default_factory=dict)
    resolution_space: bool = False
    resolution_criteria: list[str] = Field(default_factory=list)
    is_active: bool = True
    last_seen_at: Optional[datetime] = None
    source: Literal["registered", "configured"] = "registered"
