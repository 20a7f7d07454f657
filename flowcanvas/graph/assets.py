"""
Workflow assets - reusable templates saved from a group or a selection.

An asset stores nodes with positions relative to its own bounding box and
connections by (serialized) node id. Importing re-ids everything, so the
same asset can be placed on a canvas any number of times.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field

from flowcanvas.errors import GraphIntegrityError, PermissionDeniedError
from flowcanvas.graph.layout import (
    IMPORT_PADDING,
    IMPORT_STEP,
    Rect,
    find_free_position,
    group_bounds,
    node_rect,
)
from flowcanvas.graph.models import (
    DEFAULT_NODE_HEIGHT,
    DEFAULT_NODE_WIDTH,
    Actor,
    Connection,
    Group,
    Node,
    NodeKind,
    Point,
    Role,
    Visibility,
    new_id,
)
from flowcanvas.graph.store import GraphStore

logger = logging.getLogger(__name__)

PRESET_TAG = "preset"
IMPORT_GROUP_PADDING = 60
DEFAULT_IMPORT_NAME = "Imported workflow"


class SerializedNode(BaseModel):
    id: str
    name: str = ""
    kind: NodeKind = NodeKind.TEXT
    position: Point = Field(default_factory=Point)
    content: str = ""
    instruction: str = ""
    input_image: str | None = None
    width: float | None = None
    height: float | None = None
    model: str | None = None


class SerializedConnection(BaseModel):
    from_node: str
    to_node: str


class WorkflowAsset(BaseModel):
    """A saved workflow template or preset."""

    id: str = Field(default_factory=lambda: new_id("asset"))
    name: str = ""
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    nodes: list[SerializedNode] = Field(default_factory=list)
    connections: list[SerializedConnection] = Field(default_factory=list)
    visibility: Visibility = Visibility.PUBLIC
    owner_id: str | None = None

    @property
    def is_preset(self) -> bool:
        return PRESET_TAG in self.tags

    def is_restricted_for(self, actor: Actor) -> bool:
        """True when ``actor`` may use the asset but not read or change it."""
        return (
            self.visibility == Visibility.PRIVATE
            and self.owner_id is not None
            and not actor.is_admin
            and self.owner_id != actor.id
        )

    def is_visible_to(self, actor: Actor) -> bool:
        return (
            self.visibility != Visibility.PRIVATE
            or actor.is_admin
            or self.owner_id == actor.id
        )

    def check_can_delete(self, actor: Actor) -> None:
        if self.is_restricted_for(actor):
            raise PermissionDeniedError(f"Asset {self.id} is private to another user")

    @classmethod
    def load(cls, path: str | Path) -> "WorkflowAsset":
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))

    def save(self, path: str | Path) -> None:
        Path(path).write_text(self.model_dump_json(indent=2), encoding="utf-8")


@dataclass
class ImportResult:
    """Ids created on the canvas by one import."""

    node_ids: list[str] = field(default_factory=list)
    connection_ids: list[str] = field(default_factory=list)
    group: Group | None = None


def _origin(nodes: list[Node]) -> Point:
    return Point(x=min(n.position.x for n in nodes), y=min(n.position.y for n in nodes))


def _relative(node: Node, origin: Point) -> Point:
    return Point(x=node.position.x - origin.x, y=node.position.y - origin.y)


def _require_author(actor: Actor) -> None:
    if actor.role == Role.GUEST:
        raise PermissionDeniedError("Guests cannot save workflows")


def export_group(
    store: GraphStore,
    group_id: str,
    actor: Actor,
    name: str | None = None,
    tags: list[str] | None = None,
    notes: str = "",
    visibility: Visibility = Visibility.PUBLIC,
) -> WorkflowAsset | None:
    """
    Save a group as a clean template.

    Only root text nodes keep their content (the user's prompts); images
    are always dropped, as are connections leaving the group.
    """
    _require_author(actor)
    group = store.get_group(group_id)
    if group is None:
        raise GraphIntegrityError(f"Unknown group {group_id}")

    members = [n for nid in group.node_ids if (n := store.get_node(nid)) is not None]
    if not members:
        return None

    member_ids = {n.id for n in members}
    connections = [
        c for c in store.connections if c.from_id in member_ids and c.to_id in member_ids
    ]
    origin = _origin(members)

    nodes = []
    for node in members:
        keep_content = node.kind == NodeKind.TEXT and not store.is_generated(node.id)
        nodes.append(
            SerializedNode(
                id=node.id,
                name=node.name,
                kind=node.kind,
                position=_relative(node, origin),
                content=node.content if keep_content else "",
                instruction=node.instruction,
                input_image=None,
                model=node.model,
            )
        )

    asset = WorkflowAsset(
        name=name or group.name,
        tags=tags or [],
        notes=notes,
        nodes=nodes,
        connections=[
            SerializedConnection(from_node=c.from_id, to_node=c.to_id) for c in connections
        ],
        visibility=visibility,
        owner_id=actor.id,
    )
    logger.info(f"Exported group {group.name or group_id} as asset {asset.id}")
    return asset


def export_selection(store: GraphStore, node_ids: list[str], actor: Actor) -> WorkflowAsset | None:
    """Save selected nodes as a private preset, content and images included."""
    _require_author(actor)
    selected = [n for nid in node_ids if (n := store.get_node(nid)) is not None]
    if not selected:
        return None

    selected_ids = {n.id for n in selected}
    origin = _origin(selected)
    nodes = [
        SerializedNode(
            id=node.id,
            name=node.name,
            kind=node.kind,
            position=_relative(node, origin),
            content=node.content,
            instruction=node.instruction,
            input_image=node.input_image,
            width=node.width,
            height=node.height,
            model=node.model,
        )
        for node in selected
    ]
    connections = [
        SerializedConnection(from_node=c.from_id, to_node=c.to_id)
        for c in store.connections
        if c.from_id in selected_ids and c.to_id in selected_ids
    ]

    return WorkflowAsset(
        id=f"preset-{int(time.time() * 1000)}",
        name=f"Preset {time.strftime('%H:%M:%S')}",
        tags=[PRESET_TAG],
        notes="Saved from selection",
        nodes=nodes,
        connections=connections,
        visibility=Visibility.PRIVATE,
        owner_id=actor.id,
    )


def _occupied_rects(store: GraphStore) -> list[Rect]:
    rects = [node_rect(n) for n in store.nodes]
    rects += [
        Rect(
            left=g.position.x,
            top=g.position.y,
            right=g.position.x + g.size.width,
            bottom=g.position.y + g.size.height,
        )
        for g in store.groups
    ]
    return rects


def import_workflow(
    store: GraphStore,
    asset: WorkflowAsset,
    actor: Actor,
    target: Point | None = None,
) -> ImportResult:
    """
    Place a copy of ``asset`` on the canvas.

    The copy lands at the first spot right of ``target`` that keeps clear of
    existing nodes and groups. Nodes of someone else's private asset are
    locked. Non-preset imports are grouped under the asset's name.
    """
    result = ImportResult()
    if not asset.nodes:
        return result

    locked = asset.is_restricted_for(actor)
    visibility = asset.visibility

    min_x = min(n.position.x for n in asset.nodes)
    min_y = min(n.position.y for n in asset.nodes)
    max_x = max(n.position.x + (n.width or DEFAULT_NODE_WIDTH) for n in asset.nodes)
    max_y = max(n.position.y + (n.height or DEFAULT_NODE_HEIGHT) for n in asset.nodes)
    placement = find_free_position(
        target or Point(),
        width=max_x - min_x,
        height=max_y - min_y,
        occupied=_occupied_rects(store),
        padding=IMPORT_PADDING,
        step=IMPORT_STEP,
    )

    id_map: dict[str, str] = {}
    for data in asset.nodes:
        node = Node(
            id=new_id(data.kind.value),
            name=data.name,
            kind=data.kind,
            position=Point(
                x=data.position.x - min_x + placement.x,
                y=data.position.y - min_y + placement.y,
            ),
            width=data.width or DEFAULT_NODE_WIDTH,
            height=data.height or DEFAULT_NODE_HEIGHT,
            content=data.content,
            instruction=data.instruction,
            input_image=data.input_image,
            model=data.model,
            owner_id=asset.owner_id,
            source_visibility=visibility,
            locked=locked,
        )
        store.add_node(node)
        id_map[data.id] = node.id
        result.node_ids.append(node.id)

    for data in asset.connections:
        from_id, to_id = id_map.get(data.from_node), id_map.get(data.to_node)
        if from_id is None or to_id is None:
            logger.warning(f"Skipping dangling connection {data.from_node} -> {data.to_node}")
            continue
        connection: Connection | None = store.add_connection(from_id, to_id)
        if connection is not None:
            result.connection_ids.append(connection.id)

    if not asset.is_preset:
        members = [store.get_node(nid) for nid in result.node_ids]
        position, size = group_bounds(members, padding=IMPORT_GROUP_PADDING, header_space=0)
        result.group = store.attach_group(
            Group(
                name=asset.name or DEFAULT_IMPORT_NAME,
                node_ids=list(result.node_ids),
                position=position,
                size=size,
                owner_id=asset.owner_id,
                visibility=visibility,
            )
        )

    logger.info(
        f"Imported {asset.name or asset.id}: {len(result.node_ids)} node(s), "
        f"{len(result.connection_ids)} connection(s) at ({placement.x:.0f}, {placement.y:.0f})"
    )
    return result
