"""
Node kind registry: source of truth for what each node kind accepts.

Maps every NodeKind to its input roles. A role names a slot on the node
(matching a ReactFlow target handle when the editor sets one), the result
type it accepts, which producer kinds may fill it, and its cardinality.
Rerendering and tool nodes derive their roles from their sub-type.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from flowforge.models.graph import Node, NodeKind, ResultType


class InputRole(BaseModel):
    key: str
    accepts: ResultType
    # Producer kinds allowed to fill this role; None means any producer
    producers: frozenset[NodeKind] | None = None
    min_count: int = 1
    max_count: int | None = 1
    # Target handles that feed this role (the role key itself always does)
    handles: tuple[str, ...] = ()

    def accepts_handle(self, handle: str | None) -> bool:
        return bool(handle) and (handle == self.key or handle in self.handles)

    def accepts_producer(self, kind: NodeKind, result_type: ResultType) -> bool:
        if result_type != self.accepts:
            return False
        return self.producers is None or kind in self.producers


class NodeKindSpec(BaseModel):
    inputs: list[InputRole]
    calls_service: bool = True


_IMAGE_PRODUCERS = frozenset({
    NodeKind.IMAGE_INPUT,
    NodeKind.CONTROL_NET,
    NodeKind.RERENDERING,
    NodeKind.TOOL,
    NodeKind.ENGINE,
    NodeKind.OUTPUT,
})

# Rerendering image cardinality per sub-type: (min, max)
RERENDERING_IMAGE_COUNTS: dict[str, tuple[int, int | None]] = {
    "reimagine": (1, 1),
    "reangle": (1, 1),
    "reference": (1, 1),
    "rescene": (2, 2),
    "remix": (2, None),
}


def _text_prompt(min_count: int = 0) -> InputRole:
    return InputRole(
        key="prompt",
        accepts="text",
        producers=frozenset({NodeKind.TEXT_INPUT}),
        min_count=min_count,
        max_count=None,
        handles=("text",),
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
# Keys match the ReactFlow node `type` values used in the editor.

NODE_REGISTRY: dict[NodeKind, NodeKindSpec] = {
    # ---- Source nodes ----
    NodeKind.TEXT_INPUT: NodeKindSpec(inputs=[], calls_service=False),
    NodeKind.IMAGE_INPUT: NodeKindSpec(inputs=[], calls_service=False),

    # ---- Parameter nodes ----
    NodeKind.GEAR: NodeKindSpec(inputs=[], calls_service=False),

    # ---- Image operators ----
    NodeKind.CONTROL_NET: NodeKindSpec(
        inputs=[
            InputRole(key="image", accepts="image", producers=_IMAGE_PRODUCERS, handles=("input",)),
        ],
    ),
    NodeKind.RERENDERING: NodeKindSpec(
        # Image role cardinality depends on the sub-type, see roles_for()
        inputs=[
            InputRole(key="image", accepts="image", producers=_IMAGE_PRODUCERS, max_count=None,
                      handles=("input", "object", "scene")),
            _text_prompt(),
        ],
    ),
    NodeKind.TOOL: NodeKindSpec(
        inputs=[
            InputRole(key="image", accepts="image", producers=_IMAGE_PRODUCERS, handles=("input",)),
        ],
    ),

    # ---- Generation ----
    NodeKind.ENGINE: NodeKindSpec(
        inputs=[
            _text_prompt(min_count=1),
            InputRole(key="guide", accepts="image", producers=frozenset({NodeKind.CONTROL_NET}),
                      min_count=0, max_count=None, handles=("controlnet",)),
            InputRole(key="adapter", accepts="adapter", producers=frozenset({NodeKind.GEAR}),
                      min_count=0, max_count=None, handles=("gear", "lora")),
            InputRole(key="reference", accepts="image", producers=frozenset({NodeKind.RERENDERING}),
                      min_count=0, max_count=None),
            InputRole(key="seed", accepts="image",
                      producers=frozenset({NodeKind.IMAGE_INPUT, NodeKind.TOOL, NodeKind.ENGINE, NodeKind.OUTPUT}),
                      min_count=0, max_count=None, handles=("image",)),
        ],
    ),

    # ---- Presentation ----
    NodeKind.OUTPUT: NodeKindSpec(
        inputs=[
            InputRole(key="image", accepts="image", producers=_IMAGE_PRODUCERS, handles=("input",)),
        ],
        calls_service=False,
    ),
}


def get_node_spec(kind: NodeKind) -> NodeKindSpec:
    return NODE_REGISTRY[kind]


def roles_for(node: Node) -> list[InputRole]:
    """Input roles of a concrete node, specialised by its sub-type."""
    spec = get_node_spec(node.kind)
    if node.kind == NodeKind.RERENDERING:
        return [_specialise_rerendering(role, node.data) for role in spec.inputs]
    if node.kind == NodeKind.TOOL and _data_value(node.data, "toolType") == "inpaint":
        mask = InputRole(key="mask", accepts="image", producers=_IMAGE_PRODUCERS, min_count=0)
        return [*spec.inputs, mask]
    return list(spec.inputs)


def _specialise_rerendering(role: InputRole, data: dict[str, Any]) -> InputRole:
    if role.key != "image":
        return role
    sub_type = _data_value(data, "rerenderingType")
    min_count, max_count = RERENDERING_IMAGE_COUNTS.get(sub_type, (1, None))
    return role.model_copy(update={"min_count": min_count, "max_count": max_count})


def _data_value(data: dict[str, Any], key: str) -> Any:
    """Read an editor data key, accepting its snake_case spelling too."""
    if key in data:
        return data[key]
    snake = "".join(f"_{c.lower()}" if c.isupper() else c for c in key)
    return data.get(snake)
