"""
Graph data model - Nodes, Connections, Groups and batch items.

These are the value types shared by the GraphStore, the HistoryStore and the
ExecutionScheduler. Positions and sizes are cosmetic; execution only reads
kinds, instructions, payloads and connectivity.
"""

import time
import uuid
from enum import StrEnum

from pydantic import BaseModel, Field

DEFAULT_NODE_WIDTH = 320
DEFAULT_NODE_HEIGHT = 320

MAX_BATCH_ITEMS = 9

GENERATED_IMAGE_LABEL = "Generated image"
PENDING_IMAGE_PLACEHOLDER = "Waiting for generation..."


def new_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


class NodeKind(StrEnum):
    """What a node produces."""

    TEXT = "text"
    IMAGE = "image"
    BATCH_IMAGE = "batch-image"


class NodeStatus(StrEnum):
    """Execution status shared by nodes and batch items."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class BatchMode(StrEnum):
    """How a batch-image node maps its items onto generation calls."""

    INDEPENDENT = "independent"  # one call per item, output-only
    MERGED = "merged"  # one call for all items, input-only


class Visibility(StrEnum):
    PUBLIC = "public"
    PRIVATE = "private"


class Role(StrEnum):
    USER = "user"
    ADMIN = "admin"
    GUEST = "guest"


class Point(BaseModel):
    x: float = 0
    y: float = 0


class Size(BaseModel):
    width: float = 0
    height: float = 0


class Actor(BaseModel):
    """The user on whose behalf graph edits and runs happen."""

    id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class NodeSettings(BaseModel):
    """Per-node generation settings forwarded to the runner."""

    aspect_ratio: str | None = None
    resolution: str | None = None
    google_search: bool = False


class BatchItem(BaseModel):
    """One source/result pair inside a batch-image node."""

    id: str = Field(default_factory=lambda: new_id("item"))
    source: str | None = None
    result: str | None = None
    status: NodeStatus = NodeStatus.IDLE


class Node(BaseModel):
    """
    A single node placed on the canvas.

    ``content`` holds text payloads (or status text for image nodes),
    ``input_image`` a user-supplied source image and ``output_image`` the
    last generated image.
    """

    id: str = Field(default_factory=lambda: new_id("node"))
    name: str = ""
    kind: NodeKind = NodeKind.TEXT
    position: Point = Field(default_factory=Point)
    width: float | None = DEFAULT_NODE_WIDTH
    height: float | None = DEFAULT_NODE_HEIGHT
    content: str = ""
    instruction: str = ""
    status: NodeStatus = NodeStatus.IDLE
    input_image: str | None = None
    output_image: str | None = None
    model: str | None = None
    settings: NodeSettings = Field(default_factory=NodeSettings)
    batch_mode: BatchMode = BatchMode.INDEPENDENT
    batch_items: list[BatchItem] = Field(default_factory=list)
    group_id: str | None = None
    owner_id: str | None = None
    source_visibility: Visibility = Visibility.PUBLIC
    locked: bool = False

    model_config = {"extra": "forbid"}

    @property
    def is_batch(self) -> bool:
        return self.kind == NodeKind.BATCH_IMAGE

    @property
    def produces_image(self) -> bool:
        return self.kind in (NodeKind.IMAGE, NodeKind.BATCH_IMAGE)


class Connection(BaseModel):
    """A directed data-flow edge from a producer to a consumer."""

    id: str
    from_id: str = Field(description="Producer node ID")
    to_id: str = Field(description="Consumer node ID")

    @classmethod
    def between(cls, from_id: str, to_id: str) -> "Connection":
        return cls(id=f"{from_id}-{to_id}", from_id=from_id, to_id=to_id)


class Group(BaseModel):
    """A named subset of nodes executed together as one workflow."""

    id: str = Field(default_factory=lambda: new_id("group"))
    name: str = ""
    node_ids: list[str] = Field(default_factory=list)
    position: Point = Field(default_factory=Point)
    size: Size = Field(default_factory=Size)
    owner_id: str | None = None
    visibility: Visibility = Visibility.PUBLIC
