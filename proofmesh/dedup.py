"""Duplicate detection: normalized-hash exact layer plus trigram fuzzy layer."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select

from .db import DedupClusterRecord, DedupMemberRecord, PlatformDB
from .errors import Conflict, InvalidInput, NotFound
from .nodes import NodeStore

logger = logging.getLogger(__name__)

CheckMethod = Literal["exact", "fuzzy", "all"]
CLUSTER_METHODS = ("exact", "fuzzy")
DEFAULT_THRESHOLD = 0.8

_WHITESPACE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, collapse every run of Unicode whitespace to one space, trim."""
    return _WHITESPACE.sub(" ", text.lower()).strip()


def body_hash(text: str) -> str:
    return hashlib.sha256(normalize(text).encode("utf-8")).hexdigest()


def trigrams(text: str) -> set[str]:
    norm = normalize(text)
    if len(norm) < 3:
        return {norm} if norm else set()
    return {norm[i : i + 3] for i in range(len(norm) - 2)}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


class DedupMatch(BaseModel):
    node_id: str
    method: Literal["exact", "fuzzy"]
    similarity: float


class CheckResult(BaseModel):
    body_hash: str
    matches: list[DedupMatch] = Field(default_factory=list)
    cluster_id: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return bool(self.matches)


class ClusterMember(BaseModel):
    node_id: str
    similarity: float = 1.0


class ClusterView(BaseModel):
    cluster_id: str
    canonical_id: str
    method: str
    created_by: Optional[str] = None
    members: list[ClusterMember] = Field(default_factory=list)


class DedupEngine:
    def __init__(self, db: PlatformDB, node_store: NodeStore) -> None:
        self.db = db
        self.node_store = node_store

    async def check(
        self,
        body: str,
        threshold: float = DEFAULT_THRESHOLD,
        method: CheckMethod = "all",
        node_type: Optional[str] = "question",
        exclude_id: Optional[str] = None,
    ) -> CheckResult:
        """Compare ``body`` against every candidate node of ``node_type``.

        The exact layer always runs; candidates it matches are not reported
        again by the fuzzy layer.
        """
        if method not in ("exact", "fuzzy", "all"):
            raise InvalidInput(f"unknown dedup method {method}")
        if not 0.0 < threshold <= 1.0:
            raise InvalidInput("threshold must be in (0, 1]")

        digest = body_hash(body)
        grams = trigrams(body) if method != "exact" else set()
        matches: list[DedupMatch] = []
        for node in await self.node_store.list_nodes(node_type=node_type):
            if node.id == exclude_id:
                continue
            if body_hash(node.body) == digest:
                matches.append(DedupMatch(node_id=node.id, method="exact", similarity=1.0))
                continue
            if method == "exact":
                continue
            similarity = jaccard(grams, trigrams(node.body))
            if similarity >= threshold:
                matches.append(DedupMatch(node_id=node.id, method="fuzzy", similarity=round(similarity, 4)))

        matches.sort(key=lambda m: (m.method != "exact", -m.similarity))
        cluster_id = await self._cluster_of([m.node_id for m in matches if m.method == "exact"])
        return CheckResult(body_hash=digest, matches=matches, cluster_id=cluster_id)

    async def _cluster_of(self, node_ids: list[str]) -> Optional[str]:
        if not node_ids:
            return None
        async with self.db.session() as session:
            result = await session.execute(
                select(DedupMemberRecord).where(DedupMemberRecord.node_id.in_(node_ids))
            )
            members = list(result.scalars().all())
        if not members:
            return None
        members.sort(key=lambda m: (m.method != "exact", node_ids.index(m.node_id)))
        return members[0].cluster_id

    # ------------------------------------------------------------------
    # Clusters
    async def create_cluster(
        self,
        canonical_id: str,
        method: str,
        members: list[ClusterMember],
        created_by: Optional[str] = None,
    ) -> ClusterView:
        """Create a cluster around ``canonical_id``.

        Members already clustered under the same method are skipped.
        """
        if method not in CLUSTER_METHODS:
            raise InvalidInput(f"method must be one of {', '.join(CLUSTER_METHODS)}")
        if not canonical_id:
            raise InvalidInput("canonical_id is required")

        cluster = DedupClusterRecord(canonical_id=canonical_id, method=method, created_by=created_by)
        skipped = 0
        async with self.db.transaction() as session:
            if await session.get(DedupMemberRecord, (method, canonical_id)) is not None:
                raise Conflict(f"node {canonical_id} already belongs to a {method} cluster")
            session.add(cluster)
            session.add(
                DedupMemberRecord(
                    method=method, node_id=canonical_id, cluster_id=cluster.cluster_id, similarity=1.0
                )
            )
            seen = {canonical_id}
            for member in members:
                if member.node_id in seen:
                    continue
                seen.add(member.node_id)
                if await session.get(DedupMemberRecord, (method, member.node_id)) is not None:
                    skipped += 1
                    continue
                session.add(
                    DedupMemberRecord(
                        method=method,
                        node_id=member.node_id,
                        cluster_id=cluster.cluster_id,
                        similarity=member.similarity,
                    )
                )
        if skipped:
            logger.info(f"Cluster {cluster.cluster_id}: skipped {skipped} already-clustered members")
        return await self.get_cluster(cluster.cluster_id)

    async def get_cluster(self, cluster_id: str) -> ClusterView:
        async with self.db.session() as session:
            cluster = await session.get(DedupClusterRecord, cluster_id)
            if cluster is None:
                raise NotFound(f"cluster {cluster_id} not found")
            result = await session.execute(
                select(DedupMemberRecord)
                .where(DedupMemberRecord.cluster_id == cluster_id)
                .order_by(DedupMemberRecord.added_at, DedupMemberRecord.node_id)
            )
            members = list(result.scalars().all())
        return ClusterView(
            cluster_id=cluster.cluster_id,
            canonical_id=cluster.canonical_id,
            method=cluster.method,
            created_by=cluster.created_by,
            members=[ClusterMember(node_id=m.node_id, similarity=m.similarity) for m in members],
        )

    async def list_clusters(self, method: Optional[str] = None, limit: int = 100) -> list[DedupClusterRecord]:
        stmt = select(DedupClusterRecord).order_by(DedupClusterRecord.created_at.desc())
        if method:
            stmt = stmt.where(DedupClusterRecord.method == method)
        async with self.db.session() as session:
            return list((await session.execute(stmt.limit(limit if limit > 0 else 100))).scalars().all())

    async def remove_member(self, cluster_id: str, node_id: str) -> None:
        async with self.db.transaction() as session:
            cluster = await session.get(DedupClusterRecord, cluster_id)
            if cluster is None:
                raise NotFound(f"cluster {cluster_id} not found")
            if node_id == cluster.canonical_id:
                raise Conflict("the canonical member cannot be removed")
            member = await session.get(DedupMemberRecord, (cluster.method, node_id))
            if member is None or member.cluster_id != cluster_id:
                raise NotFound(f"node {node_id} is not in cluster {cluster_id}")
            await session.delete(member)


__all__ = [
    "CheckResult",
    "ClusterMember",
    "ClusterView",
    "DedupEngine",
    "DedupMatch",
    "body_hash",
    "jaccard",
    "normalize",
    "trigrams",
]
