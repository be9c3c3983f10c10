from __future__ import annotations

import logging
from typing import Any, Iterable
from uuid import uuid4

from franchisecore.core.errors import (
    CycleError,
    DatabaseError,
    HierarchyValidationError,
    NodeNotFoundError,
    UpstreamFetchError,
)
from franchisecore.domain.types import (
    NODE_STATUSES,
    NODE_TYPE_RANK,
    PATH_SEPARATOR,
    STATUS_ACTIVE,
    FranchiseNode,
    TreeNode,
    utc_now,
)
from franchisecore.persistence.store import RecordStore


logger = logging.getLogger(__name__)

NODES_TABLE = "hierarchy_nodes"


def build_tree(flat_nodes: Iterable[FranchiseNode]) -> list[TreeNode]:
    """Assemble a forest from flat rows in O(n).

    Nodes whose parent is missing from the input become orphan roots. Corrupt
    parent pointers that form a cycle are broken by promoting the first
    unreachable node (in input order) to a root, so the result is always a
    forest. Levels are recomputed from the tree shape: roots are 0 and every
    child sits at its parent's level plus one.
    """
    entries: dict[str, TreeNode] = {}
    order: list[str] = []
    for node in flat_nodes:
        if node.id in entries:
            logger.warning("hierarchy_duplicate_node node_id=%s", node.id)
            continue
        entries[node.id] = TreeNode(node=node, level=0)
        order.append(node.id)

    position = {node_id: index for index, node_id in enumerate(order)}
    parent_of: dict[str, str] = {}
    roots: list[TreeNode] = []
    for node_id in order:
        parent_id = entries[node_id].node.parent_id
        if parent_id and parent_id != node_id and parent_id in entries:
            parent_of[node_id] = parent_id
        else:
            roots.append(entries[node_id])
    for node_id in order:
        parent_id = parent_of.get(node_id)
        if parent_id is not None:
            entries[parent_id].children.append(entries[node_id])

    reached: set[str] = set()

    def _mark(root: TreeNode) -> None:
        root.level = 0
        stack = [root]
        while stack:
            current = stack.pop()
            reached.add(current.id)
            for child in current.children:
                child.level = current.level + 1
                stack.append(child)

    for root in roots:
        _mark(root)
    for node_id in order:
        if node_id in reached:
            continue
        # Only nodes on or hanging off a parent cycle are still unreached.
        promoted = entries[node_id]
        entries[parent_of.pop(node_id)].children.remove(promoted)
        logger.warning("hierarchy_cycle_broken node_id=%s", node_id)
        roots.append(promoted)
        _mark(promoted)

    roots.sort(key=lambda item: position[item.id])
    return roots


class HierarchyIndex:
    """Arena over a node set keyed by id, answering ancestry via path prefixes."""

    def __init__(self, nodes: Iterable[FranchiseNode]) -> None:
        self._nodes: dict[str, FranchiseNode] = {}
        for node in nodes:
            self._nodes.setdefault(node.id, node)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, node_id: str) -> FranchiseNode | None:
        return self._nodes.get(node_id)

    def nodes(self) -> list[FranchiseNode]:
        return list(self._nodes.values())

    def ancestors_of(self, node_id: str) -> list[FranchiseNode]:
        # Nearest first; ancestors missing from the index are skipped.
        node = self._nodes.get(node_id)
        if node is None:
            return []
        chain = []
        for ancestor_id in reversed(node.path_ids[:-1]):
            ancestor = self._nodes.get(ancestor_id)
            if ancestor is not None:
                chain.append(ancestor)
        return chain

    def descendants_of(self, node_id: str) -> list[FranchiseNode]:
        node = self._nodes.get(node_id)
        if node is None:
            return []
        prefix = node.path + PATH_SEPARATOR
        return [item for item in self._nodes.values() if item.path.startswith(prefix)]

    def is_descendant(self, candidate_id: str, ancestor_id: str) -> bool:
        candidate = self._nodes.get(candidate_id)
        ancestor = self._nodes.get(ancestor_id)
        if candidate is None or ancestor is None:
            return False
        return candidate.path.startswith(ancestor.path + PATH_SEPARATOR)


def ancestry_is_complete(node: FranchiseNode, chain: list[FranchiseNode]) -> bool:
    # A chain is trustworthy only when it covers every id on the node's path.
    return [item.id for item in chain] == list(reversed(node.path_ids))


class HierarchyStore:
    """Tenant-scoped reads and privileged writes over hierarchy nodes."""

    def __init__(self, store: RecordStore, tenant_id: str) -> None:
        self._store = store
        self.tenant_id = tenant_id

    async def _named(self, name: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            return await self._store.run_named_query(name, {"tenant_id": self.tenant_id, **params})
        except DatabaseError as exc:
            logger.warning("hierarchy_fetch_failed tenant_id=%s query=%s", self.tenant_id, name)
            raise UpstreamFetchError(name) from exc

    async def load_nodes(
        self, root_id: str | None = None, max_depth: int | None = None
    ) -> list[FranchiseNode]:
        rows = await self._named("hierarchy_subtree", {"root_id": root_id, "max_depth": max_depth})
        return [FranchiseNode.from_record(row) for row in rows]

    async def load_tree(self, root_id: str | None = None, max_depth: int | None = None) -> list[TreeNode]:
        return build_tree(await self.load_nodes(root_id=root_id, max_depth=max_depth))

    async def find_node(self, node_id: str) -> FranchiseNode | None:
        try:
            rows = await self._store.read(NODES_TABLE, {"tenant_id": self.tenant_id, "id": node_id})
        except DatabaseError as exc:
            raise UpstreamFetchError("hierarchy_node") from exc
        return FranchiseNode.from_record(rows[0]) if rows else None

    async def get_node(self, node_id: str) -> FranchiseNode:
        node = await self.find_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    async def get_descendants(self, node_id: str) -> list[FranchiseNode]:
        nodes = await self.load_nodes(root_id=node_id)
        return [node for node in nodes if node.id != node_id]

    async def get_ancestry(self, node_id: str) -> list[FranchiseNode]:
        """Return the node followed by its ancestors, nearest first."""
        rows = await self._named("hierarchy_ancestors", {"node_id": node_id})
        return [FranchiseNode.from_record(row) for row in rows]

    async def create_node(
        self,
        *,
        name: str,
        node_type: str,
        parent_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        operational_status: str = STATUS_ACTIVE,
        node_id: str | None = None,
    ) -> FranchiseNode:
        if node_type not in NODE_TYPE_RANK:
            raise HierarchyValidationError(f"Unknown node type: {node_type}")
        if operational_status not in NODE_STATUSES:
            raise HierarchyValidationError(f"Unknown operational status: {operational_status}")
        node_id = node_id or uuid4().hex
        if PATH_SEPARATOR in node_id:
            raise HierarchyValidationError(f"Node id may not contain {PATH_SEPARATOR!r}")
        if await self.find_node(node_id) is not None:
            raise HierarchyValidationError(f"Node already exists: {node_id}")

        if parent_id is None:
            level, path = 0, node_id
        else:
            parent = await self.get_node(parent_id)
            _require_rank(parent, node_type)
            level, path = parent.level + 1, parent.path + PATH_SEPARATOR + node_id

        node = FranchiseNode(
            id=node_id,
            tenant_id=self.tenant_id,
            name=name,
            node_type=node_type,
            parent_id=parent_id,
            level=level,
            path=path,
            operational_status=operational_status,
            metadata=dict(metadata or {}),
        )
        now = utc_now()
        stored = await self._store.insert(
            NODES_TABLE, {**node.to_record(), "created_at": now, "updated_at": now}
        )
        logger.info(
            "hierarchy_node_created tenant_id=%s node_id=%s parent_id=%s",
            self.tenant_id,
            node_id,
            parent_id,
        )
        return FranchiseNode.from_record(stored)

    async def validate_reparent(
        self, node_id: str, new_parent_id: str | None
    ) -> tuple[FranchiseNode, FranchiseNode | None]:
        node = await self.get_node(node_id)
        if new_parent_id is None:
            return node, None
        if new_parent_id == node_id:
            raise CycleError(node_id, new_parent_id)
        new_parent = await self.get_node(new_parent_id)
        if node_id in new_parent.path_ids:
            raise CycleError(node_id, new_parent_id)
        _require_rank(new_parent, node.node_type)
        return node, new_parent

    async def reparent(self, node_id: str, new_parent_id: str | None) -> FranchiseNode:
        node, new_parent = await self.validate_reparent(node_id, new_parent_id)
        if node.parent_id == new_parent_id:
            return node
        if new_parent is None:
            new_level, new_path = 0, node.id
        else:
            new_level, new_path = new_parent.level + 1, new_parent.path + PATH_SEPARATOR + node.id
        rows = await self._store.run_named_query(
            "reparent_subtree",
            {
                "tenant_id": self.tenant_id,
                "node_id": node.id,
                "new_parent_id": new_parent_id,
                "old_path": node.path,
                "new_path": new_path,
                "level_delta": new_level - node.level,
            },
        )
        logger.info(
            "hierarchy_node_reparented tenant_id=%s node_id=%s new_parent_id=%s moved=%s",
            self.tenant_id,
            node_id,
            new_parent_id,
            rows[0]["updated"] if rows else 0,
        )
        return await self.get_node(node_id)

    async def set_status(self, node_id: str, status: str) -> FranchiseNode:
        if status not in NODE_STATUSES:
            raise HierarchyValidationError(f"Unknown operational status: {status}")
        node = await self.get_node(node_id)
        if node.operational_status == status:
            return node
        stored = await self._store.upsert(
            NODES_TABLE,
            {"id": node.id, "operational_status": status, "updated_at": utc_now()},
        )
        logger.info(
            "hierarchy_node_status tenant_id=%s node_id=%s status=%s",
            self.tenant_id,
            node_id,
            status,
        )
        return FranchiseNode.from_record(stored)


def _require_rank(parent: FranchiseNode, child_type: str) -> None:
    if NODE_TYPE_RANK[child_type] <= NODE_TYPE_RANK[parent.node_type]:
        raise HierarchyValidationError(
            f"A {child_type} cannot sit under a {parent.node_type}"
        )
