"""Node and user store interfaces consumed by the core.

The argument tree itself lives outside proofmesh; the core only needs the
operations declared here. The in-memory stores back tests and local runs.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from .contracts import Role
from .errors import InvalidInput, NotFound
from .utils.clock import new_id, utcnow


class Node(BaseModel):
    id: str = Field(default_factory=new_id)
    type: str = "question"
    body: str
    author_id: Optional[str] = None
    parent_id: Optional[str] = None
    root_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    view_count: int = 0
    deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def score(self) -> Optional[float]:
        value = self.metadata.get("score")
        return float(value) if value is not None else None


class User(BaseModel):
    id: str = Field(default_factory=new_id)
    handle: str
    role: Role = "user"
    credits: int = 0


class NodeStore(Protocol):
    async def create_node(self, node: Node) -> Node: ...

    async def get_node(self, node_id: str) -> Node: ...

    async def get_tree(self, node_id: str) -> list[Node]: ...

    async def get_nodes_by_root(self, root_id: str) -> list[Node]: ...

    async def search_nodes(self, query: str, limit: int = 20) -> list[Node]: ...

    async def list_nodes(
        self, node_type: Optional[str] = None, tags: Optional[list[str]] = None, limit: int = 1000
    ) -> list[Node]: ...

    async def increment_view_count(self, node_id: str) -> None: ...

    async def soft_delete_node(self, node_id: str) -> None: ...


class UserStore(Protocol):
    async def get_user_by_id(self, user_id: str) -> User: ...

    async def get_user_by_handle(self, handle: str) -> User: ...

    async def debit_credits(
        self, user_id: str, amount: int, reason: str, entity_type: str, entity_id: str
    ) -> int: ...


class InMemoryNodeStore:
    """Dictionary-backed node store."""

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._lock = asyncio.Lock()

    async def create_node(self, node: Node) -> Node:
        async with self._lock:
            if node.root_id is None:
                parent = self._nodes.get(node.parent_id) if node.parent_id else None
                node.root_id = (parent.root_id or parent.id) if parent else node.id
            self._nodes[node.id] = node
        return node

    async def get_node(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None or node.deleted:
            raise NotFound(f"node {node_id} not found")
        return node

    async def get_tree(self, node_id: str) -> list[Node]:
        root = await self.get_node(node_id)
        tree = [root]
        frontier = [root.id]
        while frontier:
            children = [n for n in self._nodes.values() if n.parent_id in frontier and not n.deleted]
            tree.extend(children)
            frontier = [c.id for c in children]
        return tree

    async def get_nodes_by_root(self, root_id: str) -> list[Node]:
        return [n for n in self._nodes.values() if n.root_id == root_id and not n.deleted]

    async def search_nodes(self, query: str, limit: int = 20) -> list[Node]:
        needle = query.lower()
        hits = [n for n in self._nodes.values() if not n.deleted and needle in n.body.lower()]
        return hits[:limit]

    async def list_nodes(
        self, node_type: Optional[str] = None, tags: Optional[list[str]] = None, limit: int = 1000
    ) -> list[Node]:
        wanted = set(tags or [])
        nodes = [
            n
            for n in self._nodes.values()
            if not n.deleted
            and (node_type is None or n.type == node_type)
            and wanted.issubset(n.tags)
        ]
        return sorted(nodes, key=lambda n: n.created_at)[:limit]

    async def increment_view_count(self, node_id: str) -> None:
        node = await self.get_node(node_id)
        node.view_count += 1

    async def soft_delete_node(self, node_id: str) -> None:
        node = await self.get_node(node_id)
        node.deleted = True


class InMemoryUserStore:
    """Dictionary-backed user store with a credit ledger."""

    def __init__(self, users: Optional[list[User]] = None) -> None:
        self._users: dict[str, User] = {u.id: u for u in users or []}
        self.debits: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    def add(self, user: User) -> User:
        self._users[user.id] = user
        return user

    async def get_user_by_id(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFound(f"user {user_id} not found")
        return user

    async def get_user_by_handle(self, handle: str) -> User:
        for user in self._users.values():
            if user.handle == handle:
                return user
        raise NotFound(f"user @{handle} not found")

    async def debit_credits(
        self, user_id: str, amount: int, reason: str, entity_type: str, entity_id: str
    ) -> int:
        async with self._lock:
            user = await self.get_user_by_id(user_id)
            if amount <= 0:
                raise InvalidInput("amount must be positive")
            if user.credits < amount:
                raise InvalidInput(f"insufficient credits: {user.credits} < {amount}")
            user.credits -= amount
            self.debits.append(
                {
                    "user_id": user_id,
                    "amount": amount,
                    "reason": reason,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                }
            )
            return user.credits
