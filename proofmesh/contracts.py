"""Shared request/response contracts for proofmesh components."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils.clock import new_id

Role = Literal["anon", "user", "operator", "provider"]
MessageRole = Literal["system", "user", "assistant"]
StepType = Literal["author", "validate", "chain", "fan", "llm"]

STEP_TYPES: tuple[str, ...] = ("author", "validate", "chain", "fan", "llm")


class AuthClaims(BaseModel):
    """Authentication claims attached to an incoming operation."""

    user_id: str
    handle: str = ""
    role: Role = "user"


class Message(BaseModel):
    role: MessageRole
    content: str


class LMRequest(BaseModel):
    """Provider-neutral chat completion request."""

    model_config = ConfigDict(protected_namespaces=())

    model: Optional[str] = None
    messages: list[Message]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    response_format: Literal["text", "json"] = "text"

    @classmethod
    def from_prompt(
        cls, prompt: str, system: Optional[str] = None, model: Optional[str] = None, **kwargs: Any
    ) -> "LMRequest":
        messages = []
        if system:
            messages.append(Message(role="system", content=system))
        messages.append(Message(role="user", content=prompt))
        return cls(model=model, messages=messages, **kwargs)

    @property
    def system_prompt(self) -> str:
        return "\n\n".join(m.content for m in self.messages if m.role == "system")

    @property
    def prompt(self) -> str:
        return "\n\n".join(m.content for m in self.messages if m.role != "system")


class LMResponse(BaseModel):
    """Result of one successful provider call."""

    model_config = ConfigDict(protected_namespaces=())

    provider: str
    model: str
    content: str = ""
    parsed: Any = None
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0
    finish_reason: str = ""
    error: Optional[str] = None
    ledger_entry_id: Optional[str] = None


class CallTrace(BaseModel):
    """Ledger linkage for an LM call made on behalf of a flow."""

    flow_id: str
    step_index: Optional[int] = 0
    node_id: Optional[str] = None
    dispatch_id: Optional[str] = None
    replay_of_id: Optional[str] = None


class ModelResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model: str
    provider: str = ""
    content: str = ""
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0
    error: Optional[str] = None
    ledger_entry_id: Optional[str] = None


class DispatchRequest(BaseModel):
    prompt: str
    system: Optional[str] = None
    models: list[str]
    timeout_s: Optional[float] = None
    persist: bool = True

    @field_validator("prompt")
    @classmethod
    def _prompt_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("prompt is required")
        return value

    @field_validator("models")
    @classmethod
    def _models_required(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one model is required")
        return value


class DispatchResult(BaseModel):
    dispatch_id: str
    status: str
    results: list[ModelResult]
    timed_out: bool = False


class DeliveryMessage(BaseModel):
    """One envelope target handed to a delivery transport."""

    message_id: str = Field(default_factory=new_id)
    envelope_id: str
    target_id: str
    target_type: str
    target_config: dict[str, Any] = Field(default_factory=dict)
    piece_hash: str = ""
    attempt: int = 0

    @property
    def topic(self) -> str:
        return f"envelope.{self.target_type}"

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "DeliveryMessage":
        return cls.model_validate_json(data)


__all__ = [
    "AuthClaims",
    "CallTrace",
    "DeliveryMessage",
    "DispatchRequest",
    "DispatchResult",
    "LMRequest",
    "LMResponse",
    "Message",
    "MessageRole",
    "ModelResult",
    "Role",
    "STEP_TYPES",
    "StepType",
]
