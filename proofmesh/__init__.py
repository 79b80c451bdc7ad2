"""Proofmesh: multi-provider LM orchestration with a forensic call ledger."""

from .client import LMClient
from .config import ProofmeshConfig, load_config
from .context import CallContext
from .contracts import AuthClaims, DispatchRequest, DispatchResult, LMRequest, LMResponse
from .dispatch import Dispatcher
from .ledger import SQLiteLedger, get_ledger
from .runtime import Runtime
from .transports import get_transport
from .workflows import StepSpec, WorkflowEngine, WorkflowService

__version__ = "0.1.0"
__all__ = [
    "AuthClaims",
    "CallContext",
    "DispatchRequest",
    "DispatchResult",
    "Dispatcher",
    "LMClient",
    "LMRequest",
    "LMResponse",
    "ProofmeshConfig",
    "Runtime",
    "SQLiteLedger",
    "StepSpec",
    "WorkflowEngine",
    "WorkflowService",
    "get_ledger",
    "get_transport",
    "load_config",
]
