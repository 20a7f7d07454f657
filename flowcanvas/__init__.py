"""
FlowCanvas - a node-graph workflow engine for text and image generation.

Nodes hold an instruction and payloads; connections route payloads from
producers to consumers; groups are executed as one workflow with maximal
parallel fan-out.
"""

from flowcanvas.config import RuntimeConfig
from flowcanvas.graph import (
    Actor,
    ExecutionScheduler,
    GraphStore,
    HistoryStore,
    Node,
    NodeKind,
    NodeStatus,
    ProvenanceLog,
    RunReport,
    WorkflowAsset,
)
from flowcanvas.runner import HttpNodeRunner, MockNodeRunner, NodeRunnerPort
from flowcanvas.runtime import EventBus

__version__ = "0.1.0"

__all__ = [
    "Actor",
    "EventBus",
    "ExecutionScheduler",
    "GraphStore",
    "HistoryStore",
    "HttpNodeRunner",
    "MockNodeRunner",
    "Node",
    "NodeKind",
    "NodeStatus",
    "NodeRunnerPort",
    "ProvenanceLog",
    "RunReport",
    "RuntimeConfig",
    "WorkflowAsset",
]
