"""
Graph Store - the single authoritative collection of Nodes, Connections and Groups.

The store enforces the cascade invariants:
1. Connection endpoints exist; removing a node removes every connection touching it.
2. Group members exist; removing a node detaches it and drops groups left empty.
3. Batch items belong to exactly one node and never exceed MAX_BATCH_ITEMS.

The UI layer records a HistoryStore snapshot before each user command; the
scheduler writes run results through ``apply_run_update`` which bypasses the
user-edit rules of ``update_node``.
"""

import logging
from dataclasses import dataclass
from typing import Any

import pydantic

from flowcanvas.config import get_default_model
from flowcanvas.errors import GraphIntegrityError
from flowcanvas.graph.layout import group_bounds, resolve_overlap
from flowcanvas.graph.models import (
    MAX_BATCH_ITEMS,
    PENDING_IMAGE_PLACEHOLDER,
    Actor,
    BatchItem,
    BatchMode,
    Connection,
    Group,
    Node,
    NodeKind,
    NodeStatus,
    Point,
    Visibility,
)

logger = logging.getLogger(__name__)

# Edits to these fields count as the user touching a failed node
_USER_EDIT_FIELDS = frozenset({"content", "instruction", "input_image"})

_NAME_PREFIXES = {
    NodeKind.TEXT: "Text",
    NodeKind.IMAGE: "Image",
    NodeKind.BATCH_IMAGE: "Batch",
}


def _updated_node(node: Node, changes: dict[str, Any]) -> Node:
    """Merge and validate a partial update; plain dicts become models."""
    try:
        return Node.model_validate({**node.model_dump(), **changes})
    except pydantic.ValidationError as e:
        raise GraphIntegrityError(f"Invalid update for node {node.id}: {e}") from e


@dataclass(frozen=True)
class GraphSnapshot:
    """Immutable deep copy of the three collections at one point in time."""

    nodes: tuple[Node, ...]
    connections: tuple[Connection, ...]
    groups: tuple[Group, ...]

    def node_map(self) -> dict[str, Node]:
        """Fresh deep copies keyed by id, safe to mutate."""
        return {n.id: n.model_copy(deep=True) for n in self.nodes}

    def get_node(self, node_id: str) -> Node | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def get_group(self, group_id: str) -> Group | None:
        for g in self.groups:
            if g.id == group_id:
                return g
        return None

    def incoming(self, node_id: str) -> list[Connection]:
        return [c for c in self.connections if c.to_id == node_id]

    def is_generated(self, node_id: str) -> bool:
        return any(c.to_id == node_id for c in self.connections)


class GraphStore:
    """
    Owns the canonical graph collections and their mutation primitives.

    Example:
        store = GraphStore()
        a = store.create_node(NodeKind.IMAGE, Point(x=0, y=0))
        b = store.create_node(NodeKind.TEXT, Point(x=0, y=400))
        c = store.create_node(NodeKind.IMAGE, Point(x=400, y=200))
        store.add_connection(a.id, c.id)
        store.add_connection(b.id, c.id)
        group = store.add_group([a.id, b.id, c.id])
    """

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._connections: dict[str, Connection] = {}
        self._groups: dict[str, Group] = {}

    # === READS ===

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    @property
    def groups(self) -> list[Group]:
        return list(self._groups.values())

    def get_node(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def get_connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def get_group(self, group_id: str) -> Group | None:
        return self._groups.get(group_id)

    def get_incoming(self, node_id: str) -> list[Connection]:
        return [c for c in self._connections.values() if c.to_id == node_id]

    def get_outgoing(self, node_id: str) -> list[Connection]:
        return [c for c in self._connections.values() if c.from_id == node_id]

    def is_generated(self, node_id: str) -> bool:
        """A node is generated iff at least one connection points into it."""
        return any(c.to_id == node_id for c in self._connections.values())

    def group_of(self, node_id: str) -> Group | None:
        for group in self._groups.values():
            if node_id in group.node_ids:
                return group
        return None

    # === SNAPSHOTS ===

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(
            nodes=tuple(n.model_copy(deep=True) for n in self._nodes.values()),
            connections=tuple(c.model_copy(deep=True) for c in self._connections.values()),
            groups=tuple(g.model_copy(deep=True) for g in self._groups.values()),
        )

    def restore(self, snapshot: GraphSnapshot) -> None:
        """Replace the live collections with copies of ``snapshot``."""
        self._nodes = {n.id: n.model_copy(deep=True) for n in snapshot.nodes}
        self._connections = {c.id: c.model_copy(deep=True) for c in snapshot.connections}
        self._groups = {g.id: g.model_copy(deep=True) for g in snapshot.groups}

    # === NODES ===

    def add_node(self, node: Node) -> Node:
        if node.id in self._nodes:
            raise GraphIntegrityError(f"Node {node.id} already exists")
        self._nodes[node.id] = node
        return node

    def create_node(
        self,
        kind: NodeKind,
        position: Point | None = None,
        name_prefix: str | None = None,
        **fields: Any,
    ) -> Node:
        """Create a node with the default name, size and model for its kind."""
        prefix = name_prefix or _NAME_PREFIXES[kind]
        count = sum(1 for n in self._nodes.values() if n.kind == kind) + 1
        fields.setdefault("name", f"{prefix} {count}")
        fields.setdefault("model", get_default_model(kind.value))
        return self.add_node(Node(kind=kind, position=position or Point(), **fields))

    def update_node(self, node_id: str, **changes: Any) -> Node | None:
        """
        Apply a user edit to a node.

        Derived rules:
        - a node in error whose content/instruction/input image is edited
          returns to idle; if it is generated and the content itself was not
          edited, its error text is replaced by a pending placeholder.
        - a dimension change pushes overlapping siblings away once.
        - a batch mode change drops incoming (merged) or outgoing
          (independent) connections.
        """
        node = self._nodes.get(node_id)
        if node is None:
            return None
        unknown = changes.keys() - Node.model_fields.keys()
        if unknown:
            raise GraphIntegrityError(f"Unknown node fields: {sorted(unknown)}")

        previous = node
        updated = _updated_node(node, changes)

        if previous.status == NodeStatus.ERROR and _USER_EDIT_FIELDS & changes.keys():
            updated.status = NodeStatus.IDLE
            if self.is_generated(node_id) and "content" not in changes:
                updated.content = (
                    PENDING_IMAGE_PLACEHOLDER if updated.kind == NodeKind.IMAGE else ""
                )

        self._nodes[node_id] = updated

        if ("width" in changes or "height" in changes) and updated.width and updated.height:
            siblings = [n for n in self._nodes.values() if n.id != node_id]
            for moved in resolve_overlap(updated, siblings):
                sibling = self._nodes[moved.node_id]
                self._nodes[moved.node_id] = sibling.model_copy(update={"position": moved.position})

        mode_changed = "batch_mode" in changes and changes["batch_mode"] != previous.batch_mode
        if updated.is_batch and mode_changed:
            self._apply_batch_connectivity(updated)

        return updated

    def apply_run_update(self, node_id: str, **changes: Any) -> Node | None:
        """Write scheduler results into the live node, without edit rules."""
        node = self._nodes.get(node_id)
        if node is None:
            return None
        updated = _updated_node(node, changes)
        self._nodes[node_id] = updated
        return updated

    def remove_node(self, node_id: str) -> bool:
        """Remove a node, its connections and its group membership."""
        if node_id not in self._nodes:
            return False
        del self._nodes[node_id]

        self._connections = {
            cid: c
            for cid, c in self._connections.items()
            if c.from_id != node_id and c.to_id != node_id
        }

        for group in list(self._groups.values()):
            if node_id in group.node_ids:
                group.node_ids = [nid for nid in group.node_ids if nid != node_id]
                if not group.node_ids:
                    del self._groups[group.id]
                    logger.debug(f"Group {group.id} removed after its last node was deleted")
        return True

    # === CONNECTIONS ===

    def add_connection(self, from_id: str, to_id: str) -> Connection | None:
        """
        Connect ``from_id`` to ``to_id``.

        Returns None for self-loops, duplicates, and edges that would make a
        merged batch node a consumer or an independent batch node a producer.
        """
        if from_id not in self._nodes or to_id not in self._nodes:
            raise GraphIntegrityError(f"Connection endpoints must exist: {from_id} -> {to_id}")
        if from_id == to_id:
            return None
        if any(c.from_id == from_id and c.to_id == to_id for c in self._connections.values()):
            return None

        source, target = self._nodes[from_id], self._nodes[to_id]
        if source.is_batch and source.batch_mode == BatchMode.INDEPENDENT:
            logger.debug(f"Refusing outgoing connection from independent batch node {from_id}")
            return None
        if target.is_batch and target.batch_mode == BatchMode.MERGED:
            logger.debug(f"Refusing incoming connection into merged batch node {to_id}")
            return None

        connection = Connection.between(from_id, to_id)
        self._connections[connection.id] = connection
        return connection

    def remove_connection(self, connection_id: str) -> bool:
        return self._connections.pop(connection_id, None) is not None

    def _apply_batch_connectivity(self, node: Node) -> None:
        if node.batch_mode == BatchMode.MERGED:
            doomed = [c.id for c in self.get_incoming(node.id)]
        else:
            doomed = [c.id for c in self.get_outgoing(node.id)]
        for connection_id in doomed:
            del self._connections[connection_id]
        if doomed:
            logger.info(
                f"Batch node {node.id} switched to {node.batch_mode}: "
                f"removed {len(doomed)} connection(s)"
            )

    # === BATCH ITEMS ===

    def add_batch_items(self, node_id: str, sources: list[str]) -> list[BatchItem]:
        node = self._require_batch_node(node_id)
        if len(node.batch_items) + len(sources) > MAX_BATCH_ITEMS:
            raise GraphIntegrityError(f"A batch node holds at most {MAX_BATCH_ITEMS} items")
        items = [BatchItem(source=source) for source in sources]
        node.batch_items = [*node.batch_items, *items]
        return items

    def remove_batch_item(self, node_id: str, item_id: str) -> bool:
        node = self._require_batch_node(node_id)
        remaining = [i for i in node.batch_items if i.id != item_id]
        if len(remaining) == len(node.batch_items):
            return False
        node.batch_items = remaining
        return True

    def reset_batch_item(self, node_id: str, item_id: str) -> BatchItem | None:
        """Return an item to idle and drop its result (retry preparation)."""
        node = self._require_batch_node(node_id)
        for item in node.batch_items:
            if item.id == item_id:
                item.status = NodeStatus.IDLE
                item.result = None
                return item
        return None

    def update_batch_item(self, node_id: str, item_id: str, **changes: Any) -> BatchItem | None:
        """Write a run result into one live item; None if the node or item is gone."""
        node = self._nodes.get(node_id)
        if node is None:
            return None
        for index, item in enumerate(node.batch_items):
            if item.id == item_id:
                updated = BatchItem.model_validate({**item.model_dump(), **changes})
                node.batch_items = [
                    *node.batch_items[:index],
                    updated,
                    *node.batch_items[index + 1 :],
                ]
                return updated
        return None

    def append_batch_item(self, node_id: str, item: BatchItem) -> BatchItem | None:
        """Append a generated item; run output is not subject to MAX_BATCH_ITEMS."""
        node = self._nodes.get(node_id)
        if node is None:
            return None
        node.batch_items = [*node.batch_items, item.model_copy()]
        return item

    def _require_batch_node(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None or not node.is_batch:
            raise GraphIntegrityError(f"{node_id} is not a batch-image node")
        return node

    # === GROUPS ===

    def add_group(
        self,
        node_ids: list[str],
        actor: Actor | None = None,
        name: str | None = None,
    ) -> Group | None:
        """
        Group the given nodes.

        Nodes that already belong to a group are skipped; fewer than two
        remaining nodes is a no-op. The group is private when any member is a
        private node owned by someone other than ``actor``.
        """
        missing = [nid for nid in node_ids if nid not in self._nodes]
        if missing:
            raise GraphIntegrityError(f"Unknown group members: {missing}")

        members = [self._nodes[nid] for nid in node_ids if self._nodes[nid].group_id is None]
        if len(members) < 2:
            return None

        actor_id = actor.id if actor else None
        tainted = any(
            m.source_visibility == Visibility.PRIVATE and m.owner_id != actor_id for m in members
        )
        position, size = group_bounds(members)
        group = Group(
            name=name or f"New Group {len(self._groups) + 1}",
            node_ids=[m.id for m in members],
            position=position,
            size=size,
            owner_id=actor_id,
            visibility=Visibility.PRIVATE if tainted else Visibility.PUBLIC,
        )
        return self.attach_group(group)

    def attach_group(self, group: Group) -> Group:
        """Register a fully built group and point its members at it."""
        missing = [nid for nid in group.node_ids if nid not in self._nodes]
        if missing:
            raise GraphIntegrityError(f"Unknown group members: {missing}")
        if group.id in self._groups:
            raise GraphIntegrityError(f"Group {group.id} already exists")
        for node_id in group.node_ids:
            self._nodes[node_id].group_id = group.id
        self._groups[group.id] = group
        return group

    def remove_group(self, group_id: str) -> bool:
        """Ungroup: drop the group and clear member references, keeping the nodes."""
        group = self._groups.pop(group_id, None)
        if group is None:
            return False
        for node_id in group.node_ids:
            node = self._nodes.get(node_id)
            if node is not None and node.group_id == group_id:
                node.group_id = None
        return True
