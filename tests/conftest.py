"""Shared fixtures: an isolated configuration file and small graph builders."""

import pytest

import flowcanvas.config as config_module
from flowcanvas.graph.models import Actor, Node, NodeKind, Point, Role
from flowcanvas.graph.store import GraphStore
from flowcanvas.observability import clear_trace_context
from flowcanvas.runtime.event_bus import EventBus


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point configuration at an empty temp file and drop env overrides."""
    config_file = tmp_path / "configuration.json"
    monkeypatch.setattr(config_module, "FLOWCANVAS_CONFIG_FILE", config_file)
    monkeypatch.delenv("FLOWCANVAS_API_URL", raising=False)
    monkeypatch.delenv("FLOWCANVAS_ACCESS_TOKEN", raising=False)
    yield config_file
    clear_trace_context()


@pytest.fixture
def store():
    return GraphStore()


@pytest.fixture
def actor():
    return Actor(id="user-1")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=Role.ADMIN)


@pytest.fixture
def bus():
    return EventBus()


def add(store: GraphStore, node_id: str, kind: NodeKind = NodeKind.TEXT, x=0, y=0, **fields):
    """Add a node with a fixed id at (x, y)."""
    return store.add_node(Node(id=node_id, kind=kind, position=Point(x=x, y=y), **fields))
