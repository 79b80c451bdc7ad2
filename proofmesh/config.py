from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


ApiStyle = Literal[
    "openai-compatible",
    "anthropic",
    "gemini",
    "mistral",
    "groq",
    "openrouter",
    "huggingface",
    "pydantic-ai",
]


class ProviderConfig(BaseModel):
    """One LM provider reachable through the client."""

    name: str
    api_style: ApiStyle = "openai-compatible"
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    models: list[str] = Field(default_factory=list)
    default_model: Optional[str] = None
    timeout_s: float = 120.0
    json_mode: bool = False

    def resolved_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.getenv(self.api_key_env)
        return None


class LedgerConfig(BaseModel):
    path: str = "flows.db"
    stats_min_samples: int = 20


class DispatchConfig(BaseModel):
    default_timeout_s: float = 30.0


class WorkflowConfig(BaseModel):
    backoff_base_s: float = 0.25
    backoff_cap_s: float = 4.0


class ReplayConfig(BaseModel):
    concurrency: int = 8


class EnvelopeConfig(BaseModel):
    default_ttl_minutes: int = 15


class RateLimitConfig(BaseModel):
    limit: int
    window_s: float


class RateLimitsConfig(BaseModel):
    search: RateLimitConfig = RateLimitConfig(limit=30, window_s=60)
    batch_resolution: RateLimitConfig = RateLimitConfig(limit=10, window_s=3600)


class RegistryConfig(BaseModel):
    stale_after_s: float = 300.0


class FederationConfig(BaseModel):
    enabled: bool = False


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class ProofmeshConfig(BaseModel):
    """Top-level configuration model."""

    providers: list[ProviderConfig] = Field(default_factory=list)
    database_url: str = "sqlite+aiosqlite:///proofmesh.db"
    ledger: LedgerConfig = LedgerConfig()
    dispatch: DispatchConfig = DispatchConfig()
    workflows: WorkflowConfig = WorkflowConfig()
    replay: ReplayConfig = ReplayConfig()
    envelopes: EnvelopeConfig = EnvelopeConfig()
    rate_limits: RateLimitsConfig = RateLimitsConfig()
    registry: RegistryConfig = RegistryConfig()
    federation: FederationConfig = FederationConfig()
    transport: TransportConfig = TransportConfig()


def load_config(path: Optional[str] = None) -> ProofmeshConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PROOFMESH_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PROOFMESH_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ProofmeshConfig(**data)
    else:
        config = ProofmeshConfig()

    env_db_url = os.getenv("PROOFMESH_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_ledger = os.getenv("PROOFMESH_LEDGER_PATH")
    if env_ledger:
        config.ledger.path = env_ledger
    return config
