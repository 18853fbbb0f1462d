"""
Workflow error taxonomy.

Every failure the engine reports is attached to the node that produced it so
the editor can highlight exactly which node failed. Graph errors are raised
before anything executes; node errors are captured per node and propagated
downstream as UpstreamFailedError, keeping the identity of the original
failing node.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class NodeErrorInfo(BaseModel):
    """Serializable view of a workflow error."""

    code: str
    message: str
    node_id: str | None = None
    origin_node_id: str | None = None
    status_code: int | None = None


class WorkflowError(Exception):
    """Base class for all errors raised by the workflow core."""

    code = "workflow_error"

    def __init__(self, message: str, node_id: str | None = None):
        self.message = message
        self.node_id = node_id
        super().__init__(message)

    @property
    def origin_node_id(self) -> str | None:
        return self.node_id

    def to_info(self) -> NodeErrorInfo:
        return NodeErrorInfo(
            code=self.code,
            message=self.message,
            node_id=self.node_id,
            origin_node_id=self.origin_node_id,
        )

    def __str__(self) -> str:
        if self.node_id:
            return f"[{self.node_id}] {self.message}"
        return self.message


# ---------------------------------------------------------------------------
# Graph errors (raised by the resolver, nothing has executed yet)
# ---------------------------------------------------------------------------


class GraphError(WorkflowError):
    code = "graph_error"


class UnknownNodeError(GraphError):
    code = "unknown_node"


class DuplicateNodeError(GraphError):
    code = "duplicate_node"


class CycleDetectedError(GraphError):
    code = "cycle_detected"

    def __init__(self, node_id: str, cycle: list[str] | None = None):
        self.cycle = cycle or [node_id]
        path = " -> ".join(self.cycle)
        super().__init__(f"Cycle detected involving nodes: {path}", node_id=node_id)


# ---------------------------------------------------------------------------
# Node errors (captured per node during a run)
# ---------------------------------------------------------------------------


class NodeError(WorkflowError):
    code = "node_error"


class MissingInputError(NodeError):
    code = "missing_input"

    def __init__(self, message: str, node_id: str | None = None, role: str | None = None):
        self.role = role
        super().__init__(message, node_id=node_id)


class InvalidParameterError(NodeError):
    code = "invalid_parameter"

    def __init__(self, message: str, node_id: str | None = None, field: str | None = None):
        self.field = field
        super().__init__(message, node_id=node_id)


class ServiceError(NodeError):
    """Wraps a Generation Service failure with whatever status it returned."""

    code = "service_error"

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        status_code: int | None = None,
        details: Any = None,
    ):
        self.status_code = status_code
        self.details = details
        super().__init__(message, node_id=node_id)

    def to_info(self) -> NodeErrorInfo:
        info = super().to_info()
        info.status_code = self.status_code
        return info


class UpstreamFailedError(NodeError):
    """A dependency already failed this run; the node was not executed."""

    code = "upstream_failed"

    def __init__(self, node_id: str, cause: WorkflowError):
        # Chain to the original failure, never to an intermediate hop
        while isinstance(cause, UpstreamFailedError):
            cause = cause.cause
        self.cause = cause
        super().__init__(
            f"Upstream node {cause.node_id} failed: {cause.message}",
            node_id=node_id,
        )

    @property
    def origin_node_id(self) -> str | None:
        return self.cause.node_id
