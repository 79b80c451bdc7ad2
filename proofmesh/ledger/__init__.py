"""Forensic call ledger."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ProofmeshConfig, load_config
from .models import (
    REPLAY_INDEX_OFFSET,
    DispatchRecord,
    FlowShare,
    LatencyPercentiles,
    LedgerEntry,
    ModelStats,
    ReplayBatch,
)
from .repository import LedgerRepository
from .sqlite import SCHEMA_VERSION, SQLiteLedger


def get_ledger(
    path: Optional[str] = None, config: Optional[ProofmeshConfig] = None
) -> SQLiteLedger:
    """Open the ledger database.

    The path can be provided explicitly, via ``PROOFMESH_LEDGER_PATH`` or
    from loaded configuration. ``":memory:"`` yields a throwaway ledger.
    """

    config = config or load_config()
    path = path or os.getenv("PROOFMESH_LEDGER_PATH") or config.ledger.path
    return SQLiteLedger(path, stats_min_samples=config.ledger.stats_min_samples)


__all__ = [
    "DispatchRecord",
    "FlowShare",
    "LatencyPercentiles",
    "LedgerEntry",
    "LedgerRepository",
    "ModelStats",
    "REPLAY_INDEX_OFFSET",
    "ReplayBatch",
    "SCHEMA_VERSION",
    "SQLiteLedger",
    "get_ledger",
]
