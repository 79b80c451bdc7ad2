"""Process-wide wiring of every proofmesh component."""

from __future__ import annotations

import logging
from typing import Iterator, Optional

from .benchmark import BenchmarkRunner
from .client import LMClient
from .config import ProofmeshConfig, load_config
from .db import PlatformDB
from .dedup import DedupEngine
from .discovery import ModelDiscovery
from .dispatch import Dispatcher
from .envelopes import EnvelopeRouter
from .errors import Forbidden
from .grants import GrantEngine
from .ledger import SQLiteLedger, get_ledger
from .nodes import InMemoryNodeStore, InMemoryUserStore, NodeStore, UserStore
from .providers import BaseProvider, build_providers
from .ratelimit import RateLimiters
from .registry import ProviderRegistry
from .replay import ReplayEngine
from .transports import BaseTransport, get_transport
from .workflows import WorkflowEngine, WorkflowService

logger = logging.getLogger(__name__)


class Runtime:
    """Owns the shared state of one proofmesh process.

    Build it with :meth:`from_config`, then ``await runtime.open()`` (or use
    it as an async context manager) before calling any component.
    """

    def __init__(
        self,
        config: ProofmeshConfig,
        db: PlatformDB,
        ledger: SQLiteLedger,
        client: LMClient,
        transport: BaseTransport,
        node_store: NodeStore,
        user_store: UserStore,
    ) -> None:
        self.config = config
        self.db = db
        self.ledger = ledger
        self.client = client
        self.transport = transport
        self.node_store = node_store
        self.user_store = user_store

        self.registry = ProviderRegistry(db, client, stale_after_s=config.registry.stale_after_s)
        self.grants = GrantEngine(db)
        self.discovery = ModelDiscovery(db, client)
        self.dispatcher = Dispatcher(
            client, self.registry, ledger, default_timeout_s=config.dispatch.default_timeout_s
        )
        self.workflows = WorkflowService(db, self.grants)
        self.engine = WorkflowEngine(
            db,
            client,
            self.registry,
            self.grants,
            ledger,
            discovery=self.discovery,
            backoff_base_s=config.workflows.backoff_base_s,
            backoff_cap_s=config.workflows.backoff_cap_s,
        )
        self.replay = ReplayEngine(
            ledger, client, self.registry, node_store, concurrency=config.replay.concurrency
        )
        self.benchmarks = BenchmarkRunner(db, self.workflows, self.engine, node_store, ledger)
        self.envelopes = EnvelopeRouter(db, default_ttl_minutes=config.envelopes.default_ttl_minutes)
        self.dedup = DedupEngine(db, node_store)
        self.rate_limiters = RateLimiters(config.rate_limits)

    @classmethod
    def from_config(
        cls,
        config: Optional[ProofmeshConfig] = None,
        providers: Optional[list[BaseProvider]] = None,
        node_store: Optional[NodeStore] = None,
        user_store: Optional[UserStore] = None,
        transport: Optional[BaseTransport] = None,
    ) -> "Runtime":
        config = config or load_config()
        ledger = get_ledger(config=config)
        client = LMClient(build_providers(config) if providers is None else providers, ledger)
        return cls(
            config,
            PlatformDB(config.database_url),
            ledger,
            client,
            transport or get_transport(config=config),
            node_store or InMemoryNodeStore(),
            user_store or InMemoryUserStore(),
        )

    async def open(self) -> "Runtime":
        await self.db.init_db()
        attached = await self.registry.attach_registered()
        logger.info(
            f"Runtime ready: {len(self.client.configured())} configured providers, {attached} registered"
        )
        return self

    async def close(self) -> None:
        await self.client.aclose()
        await self.transport.disconnect()
        await self.db.dispose()
        self.ledger.close()

    async def __aenter__(self) -> "Runtime":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def download_ledger(self, chunk_size: int = 65536) -> Iterator[bytes]:
        """Stream the ledger database file; only allowed with federation enabled."""
        if not self.config.federation.enabled:
            raise Forbidden("ledger download requires federation to be enabled")
        return self.ledger.iter_blob(chunk_size)


__all__ = ["Runtime"]
