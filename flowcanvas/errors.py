"""
Exception hierarchy for graph mutation and node execution.

Node execution errors never cross a node boundary: the scheduler catches
them and writes ``status=error`` plus the message into the failing node.
"""


class FlowCanvasError(Exception):
    """Base class for all flowcanvas errors."""


class GraphIntegrityError(FlowCanvasError):
    """Raised when a mutation would break a graph store invariant."""


class NodeExecutionError(FlowCanvasError):
    """Base class for failures surfaced on a single node."""


class ValidationError(NodeExecutionError):
    """Raised when a node has neither an instruction nor usable inputs."""


class AuthError(NodeExecutionError):
    """Raised when credentials are missing or rejected."""


class QuotaError(NodeExecutionError):
    """Raised when the account is forbidden or inactive (HTTP 403)."""


class BalanceError(QuotaError):
    """Raised when the account balance is insufficient (HTTP 402)."""


class GenerationError(NodeExecutionError):
    """Raised for any other failure reported by the generation service."""


class PermissionDeniedError(FlowCanvasError):
    """Raised when the actor may not save or delete a workflow asset."""
