from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

SOURCE_TYPES = ("horostracker", "witheout", "api", "mcp")
ANONYMOUS_SOURCES = ("witheout", "api")
TARGET_TYPES = ("horostracker", "googledrive", "webhook", "email", "s3", "ipfs")

ENVELOPE_STATUSES = ("pending", "dispatched", "processing", "delivered", "partial", "failed", "expired")
TERMINAL_ENVELOPE_STATUSES = frozenset({"delivered", "partial", "failed", "expired"})
TARGET_STATES = ("pending", "delivered", "failed")

# Forward moves of the envelope status machine; expiry is allowed from any
# non-terminal state.
ENVELOPE_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"dispatched", "expired"}),
    "dispatched": frozenset({"processing", "expired"}),
    "processing": frozenset({"delivered", "partial", "failed", "expired"}),
}


class TargetSpec(BaseModel):
    target_type: str
    target_config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("target_type")
    @classmethod
    def _known_target(cls, value: str) -> str:
        if value not in TARGET_TYPES:
            raise ValueError(f"target_type must be one of {', '.join(TARGET_TYPES)}")
        return value


class TargetView(BaseModel):
    id: str
    target_type: str
    target_config: dict[str, Any]
    state: str
    error: Optional[str] = None
    delivered_at: Optional[datetime] = None


class EnvelopeView(BaseModel):
    id: str
    batch_id: Optional[str] = None
    source_type: str
    source_user_id: Optional[str] = None
    source_node_id: Optional[str] = None
    source_callback: Optional[str] = None
    piece_hash: str
    ttl_minutes: int
    status: str
    error: Optional[str] = None
    target_count: int
    delivered_count: int
    failed_count: int
    created_at: datetime
    expires_at: datetime
    updated_at: datetime
    targets: list[TargetView] = Field(default_factory=list)


class EnvelopeStatus(BaseModel):
    """The only view of an envelope served without authentication."""

    status: str
    target_count: int
    delivered_count: int
