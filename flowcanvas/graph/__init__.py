"""Graph model, store, history, layout, provenance, assets and the execution scheduler."""

from flowcanvas.graph.assets import (
    ImportResult,
    SerializedConnection,
    SerializedNode,
    WorkflowAsset,
    export_group,
    export_selection,
    import_workflow,
)
from flowcanvas.graph.batch import BatchExpander, BatchOutcome
from flowcanvas.graph.history import HistoryStore
from flowcanvas.graph.models import (
    MAX_BATCH_ITEMS,
    Actor,
    BatchItem,
    BatchMode,
    Connection,
    Group,
    Node,
    NodeKind,
    NodeSettings,
    NodeStatus,
    Point,
    Role,
    Size,
    Visibility,
)
from flowcanvas.graph.provenance import ProvenanceLog, ProvenanceRecord, is_prompt_secret
from flowcanvas.graph.scheduler import ExecutionScheduler, RootOutputPolicy, RunReport
from flowcanvas.graph.store import GraphSnapshot, GraphStore

__all__ = [
    # Model
    "Node",
    "NodeKind",
    "NodeStatus",
    "NodeSettings",
    "BatchItem",
    "BatchMode",
    "Connection",
    "Group",
    "Point",
    "Size",
    "Actor",
    "Role",
    "Visibility",
    "MAX_BATCH_ITEMS",
    # Store
    "GraphStore",
    "GraphSnapshot",
    "HistoryStore",
    # Execution
    "ExecutionScheduler",
    "RootOutputPolicy",
    "RunReport",
    "BatchExpander",
    "BatchOutcome",
    # Provenance
    "ProvenanceLog",
    "ProvenanceRecord",
    "is_prompt_secret",
    # Assets
    "WorkflowAsset",
    "SerializedNode",
    "SerializedConnection",
    "ImportResult",
    "export_group",
    "export_selection",
    "import_workflow",
]
