"""
Tests for GraphStore mutation primitives and cascade rules.
"""

import pytest

from flowcanvas.errors import GraphIntegrityError
from flowcanvas.graph.models import (
    MAX_BATCH_ITEMS,
    PENDING_IMAGE_PLACEHOLDER,
    Actor,
    BatchMode,
    NodeKind,
    NodeStatus,
    Point,
    Visibility,
)
from tests.conftest import add


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------
class TestNodes:
    def test_add_duplicate_id_raises(self, store):
        add(store, "a")
        with pytest.raises(GraphIntegrityError):
            add(store, "a")

    def test_create_node_assigns_defaults(self, store):
        first = store.create_node(NodeKind.TEXT)
        second = store.create_node(NodeKind.TEXT, Point(x=10, y=20))
        image = store.create_node(NodeKind.IMAGE)

        assert first.name == "Text 1"
        assert second.name == "Text 2"
        assert second.position == Point(x=10, y=20)
        assert image.name == "Image 1"
        assert image.width == 320 and image.height == 320
        assert first.model == "gemini-3-pro-preview"
        assert image.model == "gemini-2.5-flash-image"

    def test_create_node_uses_configured_models(self, store, isolated_config):
        isolated_config.write_text('{"models": {"image": "custom-image"}}')
        node = store.create_node(NodeKind.BATCH_IMAGE)
        assert node.model == "custom-image"
        assert node.name == "Batch 1"

    def test_update_unknown_node_returns_none(self, store):
        assert store.update_node("missing", content="x") is None

    def test_update_unknown_field_raises(self, store):
        add(store, "a")
        with pytest.raises(GraphIntegrityError):
            store.update_node("a", colour="red")

    def test_update_replaces_node(self, store):
        add(store, "a")
        updated = store.update_node("a", instruction="describe")
        assert updated.instruction == "describe"
        assert store.get_node("a").instruction == "describe"

    def test_plain_dict_partials_become_models(self, store):
        add(store, "a")
        add(store, "b", x=330)

        store.update_node("a", position={"x": 5, "y": 0}, settings={"aspect_ratio": "16:9"})
        store.update_node("b", width=400)

        node = store.get_node("a")
        assert node.position == Point(x=5, y=0)
        assert node.settings.aspect_ratio == "16:9"

    def test_invalid_value_raises(self, store):
        add(store, "a")
        with pytest.raises(GraphIntegrityError):
            store.update_node("a", status="exploded")
        assert store.get_node("a").status == NodeStatus.IDLE


# ---------------------------------------------------------------------------
# Error reset rule
# ---------------------------------------------------------------------------
class TestErrorReset:
    def test_editing_failed_generated_image_shows_placeholder(self, store):
        add(store, "src")
        add(store, "img", NodeKind.IMAGE, status=NodeStatus.ERROR, content="boom")
        store.add_connection("src", "img")

        updated = store.update_node("img", instruction="try again")

        assert updated.status == NodeStatus.IDLE
        assert updated.content == PENDING_IMAGE_PLACEHOLDER

    def test_editing_failed_generated_text_clears_content(self, store):
        add(store, "src")
        add(store, "txt", status=NodeStatus.ERROR, content="boom")
        store.add_connection("src", "txt")

        updated = store.update_node("txt", instruction="summarise")

        assert updated.status == NodeStatus.IDLE
        assert updated.content == ""

    def test_editing_content_keeps_new_content(self, store):
        add(store, "src")
        add(store, "txt", status=NodeStatus.ERROR, content="boom")
        store.add_connection("src", "txt")

        updated = store.update_node("txt", content="typed by hand")

        assert updated.status == NodeStatus.IDLE
        assert updated.content == "typed by hand"

    def test_root_node_keeps_error_text(self, store):
        add(store, "root", NodeKind.IMAGE, status=NodeStatus.ERROR, content="boom")

        updated = store.update_node("root", input_image="abc")

        assert updated.status == NodeStatus.IDLE
        assert updated.content == "boom"

    def test_moving_failed_node_keeps_error(self, store):
        add(store, "a", status=NodeStatus.ERROR, content="boom")
        updated = store.update_node("a", position=Point(x=50, y=50))
        assert updated.status == NodeStatus.ERROR


# ---------------------------------------------------------------------------
# Overlap repulsion on resize
# ---------------------------------------------------------------------------
class TestResizeRepulsion:
    def test_resize_pushes_overlapping_sibling_once(self, store):
        add(store, "a", x=0, y=0)
        add(store, "b", x=330, y=0)
        add(store, "far", x=2000, y=2000)

        store.update_node("a", width=400)

        assert store.get_node("b").position == Point(x=420, y=0)
        assert store.get_node("far").position == Point(x=2000, y=2000)

    def test_resize_pushes_vertically_when_below(self, store):
        add(store, "a", x=0, y=0)
        add(store, "b", x=0, y=330)

        store.update_node("a", height=400)

        assert store.get_node("b").position == Point(x=0, y=420)

    def test_non_dimension_edit_does_not_move_siblings(self, store):
        add(store, "a", x=0, y=0)
        add(store, "b", x=100, y=0)

        store.update_node("a", instruction="x")

        assert store.get_node("b").position == Point(x=100, y=0)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------
class TestConnections:
    def test_connection_id_is_from_to(self, store):
        add(store, "a")
        add(store, "b")
        connection = store.add_connection("a", "b")
        assert connection.id == "a-b"
        assert store.is_generated("b")
        assert not store.is_generated("a")

    def test_self_loop_and_duplicate_are_ignored(self, store):
        add(store, "a")
        add(store, "b")
        assert store.add_connection("a", "a") is None
        store.add_connection("a", "b")
        assert store.add_connection("a", "b") is None
        assert len(store.connections) == 1

    def test_missing_endpoint_raises(self, store):
        add(store, "a")
        with pytest.raises(GraphIntegrityError):
            store.add_connection("a", "ghost")

    def test_independent_batch_cannot_produce(self, store):
        add(store, "batch", NodeKind.BATCH_IMAGE)
        add(store, "img", NodeKind.IMAGE)
        assert store.add_connection("batch", "img") is None

    def test_merged_batch_cannot_consume(self, store):
        add(store, "txt")
        add(store, "batch", NodeKind.BATCH_IMAGE, batch_mode=BatchMode.MERGED)
        assert store.add_connection("txt", "batch") is None

    def test_switch_to_merged_drops_incoming(self, store):
        add(store, "txt")
        add(store, "batch", NodeKind.BATCH_IMAGE)
        store.add_connection("txt", "batch")

        store.update_node("batch", batch_mode=BatchMode.MERGED)

        assert store.get_incoming("batch") == []

    def test_switch_to_independent_drops_outgoing(self, store):
        add(store, "batch", NodeKind.BATCH_IMAGE, batch_mode=BatchMode.MERGED)
        add(store, "img", NodeKind.IMAGE)
        store.add_connection("batch", "img")

        store.update_node("batch", batch_mode=BatchMode.INDEPENDENT)

        assert store.get_outgoing("batch") == []

    def test_remove_connection(self, store):
        add(store, "a")
        add(store, "b")
        store.add_connection("a", "b")
        assert store.remove_connection("a-b") is True
        assert store.remove_connection("a-b") is False


# ---------------------------------------------------------------------------
# Cascades
# ---------------------------------------------------------------------------
class TestRemoveNode:
    def test_remove_cascades_connections(self, store):
        add(store, "a")
        add(store, "b")
        add(store, "c")
        store.add_connection("a", "b")
        store.add_connection("b", "c")

        assert store.remove_node("b") is True

        assert store.connections == []
        assert store.remove_node("b") is False

    def test_remove_detaches_from_group_and_drops_empty_group(self, store):
        add(store, "a")
        add(store, "b", x=400)
        group = store.add_group(["a", "b"])

        store.remove_node("a")
        assert store.get_group(group.id).node_ids == ["b"]

        store.remove_node("b")
        assert store.get_group(group.id) is None


# ---------------------------------------------------------------------------
# Batch items
# ---------------------------------------------------------------------------
class TestBatchItems:
    def test_add_items_up_to_cap(self, store):
        add(store, "batch", NodeKind.BATCH_IMAGE)
        store.add_batch_items("batch", [f"img-{i}" for i in range(MAX_BATCH_ITEMS)])

        with pytest.raises(GraphIntegrityError):
            store.add_batch_items("batch", ["one-too-many"])
        assert len(store.get_node("batch").batch_items) == MAX_BATCH_ITEMS

    def test_items_require_batch_node(self, store):
        add(store, "img", NodeKind.IMAGE)
        with pytest.raises(GraphIntegrityError):
            store.add_batch_items("img", ["x"])

    def test_remove_and_reset_item(self, store):
        add(store, "batch", NodeKind.BATCH_IMAGE)
        first, second = store.add_batch_items("batch", ["a", "b"])
        store.update_batch_item("batch", second.id, status=NodeStatus.ERROR, result="r")

        assert store.remove_batch_item("batch", first.id) is True
        assert store.remove_batch_item("batch", first.id) is False

        reset = store.reset_batch_item("batch", second.id)
        assert reset.status == NodeStatus.IDLE
        assert reset.result is None


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------
class TestGroups:
    def test_group_bounds_and_membership(self, store):
        add(store, "a", x=0, y=0)
        add(store, "b", x=400, y=0)

        group = store.add_group(["a", "b"])

        assert group.name == "New Group 1"
        assert group.position == Point(x=-40, y=-70)
        assert group.size.width == 800
        assert group.size.height == 430
        assert store.get_node("a").group_id == group.id
        assert store.group_of("b") == group

    def test_grouped_nodes_are_skipped(self, store):
        add(store, "a")
        add(store, "b", x=400)
        add(store, "c", x=800)
        store.add_group(["a", "b"])

        assert store.add_group(["a", "c"]) is None
        assert store.get_node("c").group_id is None

    def test_unknown_member_raises(self, store):
        add(store, "a")
        with pytest.raises(GraphIntegrityError):
            store.add_group(["a", "ghost"])

    def test_foreign_private_node_taints_group(self, store):
        add(store, "a", owner_id="someone", source_visibility=Visibility.PRIVATE)
        add(store, "b", x=400)

        group = store.add_group(["a", "b"], actor=Actor(id="me"))

        assert group.visibility == Visibility.PRIVATE
        assert group.owner_id == "me"

    def test_own_private_node_keeps_group_public(self, store):
        add(store, "a", owner_id="me", source_visibility=Visibility.PRIVATE)
        add(store, "b", x=400)

        group = store.add_group(["a", "b"], actor=Actor(id="me"))

        assert group.visibility == Visibility.PUBLIC

    def test_remove_group_keeps_nodes(self, store):
        add(store, "a")
        add(store, "b", x=400)
        group = store.add_group(["a", "b"])

        assert store.remove_group(group.id) is True

        assert store.get_node("a").group_id is None
        assert len(store.nodes) == 2


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------
def test_snapshot_is_isolated_from_later_edits(store):
    add(store, "a", content="before")
    snapshot = store.snapshot()

    store.update_node("a", content="after")
    store.get_node("a").name = "mutated in place"

    assert snapshot.get_node("a").content == "before"
    assert snapshot.get_node("a").name == ""

    store.restore(snapshot)
    assert store.get_node("a").content == "before"
