"""
Graph models: the editor's node/edge view of a workflow, plus node results.

Graphs arrive straight from the ReactFlow editor, so both `kind`/`type` and
camelCase/snake_case edge handles are accepted. These models carry no
behavior beyond validation helpers; execution lives in the services package.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class NodeKind(str, Enum):
    TEXT_INPUT = "textInput"
    IMAGE_INPUT = "imageInput"
    CONTROL_NET = "controlNet"
    RERENDERING = "rerendering"
    TOOL = "tool"
    ENGINE = "engine"
    GEAR = "gear"
    OUTPUT = "output"


class Node(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    kind: NodeKind = Field(validation_alias=AliasChoices("kind", "type"))
    data: dict[str, Any] = Field(default_factory=dict)


class Edge(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    source: str
    target: str
    source_handle: str | None = Field(
        default=None, validation_alias=AliasChoices("source_handle", "sourceHandle")
    )
    target_handle: str | None = Field(
        default=None, validation_alias=AliasChoices("target_handle", "targetHandle")
    )


ResultType = Literal["image", "text", "adapter", "none"]


class NodeResult(BaseModel):
    """Typed value produced by a node, with provenance."""

    node_id: str
    type: ResultType
    # Kind of the producing node, stamped by the engine
    kind: NodeKind | None = None
    url: str | None = None
    text: str | None = None
    model_id: str | None = None
    weight: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def image(cls, node_id: str, url: str, **metadata: Any) -> "NodeResult":
        return cls(node_id=node_id, type="image", url=url, metadata=metadata)

    @classmethod
    def text_value(cls, node_id: str, text: str) -> "NodeResult":
        return cls(node_id=node_id, type="text", text=text)

    @classmethod
    def adapter(cls, node_id: str, model_id: str, weight: float) -> "NodeResult":
        return cls(node_id=node_id, type="adapter", model_id=model_id, weight=weight)


class ExecutionPlan(BaseModel):
    """Ordered ancestor set of a target node."""

    target_id: str
    order: list[str]
    # node -> upstream node ids inside the plan (deduplicated, edge order)
    upstream: dict[str, list[str]] = Field(default_factory=dict)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.upstream


# ---------------------------------------------------------------------------
# Parsing / validation helpers
# ---------------------------------------------------------------------------


def parse_nodes(raw_nodes: list[Node | dict[str, Any]]) -> list[Node]:
    return [n if isinstance(n, Node) else Node.model_validate(n) for n in raw_nodes]


def parse_edges(raw_edges: list[Edge | dict[str, Any]]) -> list[Edge]:
    return [e if isinstance(e, Edge) else Edge.model_validate(e) for e in raw_edges]

