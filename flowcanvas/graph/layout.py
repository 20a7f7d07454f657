"""
Layout helpers - pure geometry used by the graph store and asset import.

Nothing here recurses or iterates to a fixed point: every helper is a
one-shot local repair over the rectangles it is given.
"""

from dataclasses import dataclass

from flowcanvas.graph.models import DEFAULT_NODE_HEIGHT, DEFAULT_NODE_WIDTH, Node, Point, Size

OVERLAP_PADDING = 20
GROUP_PADDING = 40
GROUP_HEADER_SPACE = 30
IMPORT_PADDING = 50
IMPORT_STEP = 100


@dataclass(frozen=True)
class Rect:
    left: float
    top: float
    right: float
    bottom: float

    @property
    def center_x(self) -> float:
        return (self.left + self.right) / 2

    @property
    def center_y(self) -> float:
        return (self.top + self.bottom) / 2

    def overlaps(self, other: "Rect", padding: float = 0) -> bool:
        return (
            self.left < other.right + padding
            and self.right + padding > other.left
            and self.top < other.bottom + padding
            and self.bottom + padding > other.top
        )


@dataclass(frozen=True)
class RepositionedSibling:
    node_id: str
    position: Point


def node_rect(node: Node) -> Rect:
    """Bounding rectangle of a node, using default dimensions when unsized."""
    width = node.width or DEFAULT_NODE_WIDTH
    height = node.height or DEFAULT_NODE_HEIGHT
    return Rect(
        left=node.position.x,
        top=node.position.y,
        right=node.position.x + width,
        bottom=node.position.y + height,
    )


def resolve_overlap(
    moved: Node,
    siblings: list[Node],
    padding: float = OVERLAP_PADDING,
) -> list[RepositionedSibling]:
    """
    Push siblings that now overlap ``moved`` out of its rectangle.

    Each overlapping sibling moves once, along the axis of largest
    center-to-center displacement, to sit ``padding`` beyond the moved
    node's edge. Pushed siblings are not re-checked against each other.
    """
    r1 = node_rect(moved)
    repositioned: list[RepositionedSibling] = []

    for other in siblings:
        if other.id == moved.id:
            continue
        r2 = node_rect(other)
        if not r1.overlaps(r2):
            continue

        dx = r2.center_x - r1.center_x
        dy = r2.center_y - r1.center_y
        other_w = r2.right - r2.left
        other_h = r2.bottom - r2.top
        new_x, new_y = other.position.x, other.position.y

        if abs(dx) > abs(dy):
            new_x = r1.right + padding if dx > 0 else r1.left - other_w - padding
        else:
            new_y = r1.bottom + padding if dy > 0 else r1.top - other_h - padding

        repositioned.append(RepositionedSibling(other.id, Point(x=new_x, y=new_y)))

    return repositioned


def bounding_rect(nodes: list[Node]) -> Rect:
    rects = [node_rect(n) for n in nodes]
    return Rect(
        left=min(r.left for r in rects),
        top=min(r.top for r in rects),
        right=max(r.right for r in rects),
        bottom=max(r.bottom for r in rects),
    )


def group_bounds(
    nodes: list[Node],
    padding: float = GROUP_PADDING,
    header_space: float = GROUP_HEADER_SPACE,
) -> tuple[Point, Size]:
    """Frame position and size for a group around ``nodes``."""
    box = bounding_rect(nodes)
    position = Point(x=box.left - padding, y=box.top - padding - header_space)
    size = Size(
        width=(box.right - box.left) + 2 * padding,
        height=(box.bottom - box.top) + 2 * padding + header_space,
    )
    return position, size


def find_free_position(
    target: Point,
    width: float,
    height: float,
    occupied: list[Rect],
    padding: float = IMPORT_PADDING,
    step: float = IMPORT_STEP,
) -> Point:
    """Shift ``target`` right until a width×height box clears every occupied rect."""
    x, y = target.x, target.y
    while any(Rect(x, y, x + width, y + height).overlaps(r, padding) for r in occupied):
        x += step
    return Point(x=x, y=y)
