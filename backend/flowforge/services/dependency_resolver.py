"""
Dependency resolver: turns an editor graph and a target node into an execution plan.

Pipeline: Validate ids → Collect ancestors (reverse BFS) → Toposort (three-colour DFS)

Only the target's ancestor subgraph is live. Nodes and edges outside it are
never executed and never validated beyond id uniqueness, since half-edited
islands elsewhere on the canvas are normal.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any

from flowforge.models.graph import Edge, ExecutionPlan, Node, parse_edges, parse_nodes
from flowforge.services.errors import CycleDetectedError, DuplicateNodeError, UnknownNodeError

logger = logging.getLogger(__name__)

WHITE, GRAY, BLACK = 0, 1, 2


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve(
    nodes: list[Node | dict[str, Any]],
    edges: list[Edge | dict[str, Any]],
    target_id: str,
) -> ExecutionPlan:
    """
    Compute the ordered ancestor set of `target_id`.

    Raises:
        DuplicateNodeError: two nodes share an id.
        UnknownNodeError: the target, or a node feeding the live subgraph, is absent.
        CycleDetectedError: a cycle is reachable from the target.
    """
    node_map = build_node_map(parse_nodes(nodes))
    if target_id not in node_map:
        raise UnknownNodeError(f"Target node '{target_id}' not found in graph", node_id=target_id)

    upstream = collect_ancestors(node_map, parse_edges(edges), target_id)
    order = toposort(upstream, target_id)

    skipped = len(node_map) - len(order)
    if skipped:
        logger.debug("Plan for %s ignores %d node(s) outside its ancestor subgraph", target_id, skipped)

    return ExecutionPlan(target_id=target_id, order=order, upstream=upstream)


def build_node_map(nodes: list[Node]) -> dict[str, Node]:
    node_map: dict[str, Node] = {}
    for node in nodes:
        if node.id in node_map:
            raise DuplicateNodeError(f"Duplicate node ID '{node.id}'", node_id=node.id)
        node_map[node.id] = node
    return node_map


# ---------------------------------------------------------------------------
# Ancestor collection
# ---------------------------------------------------------------------------


def collect_ancestors(
    node_map: dict[str, Node],
    edges: list[Edge],
    target_id: str,
) -> dict[str, list[str]]:
    """
    Walk edges backwards from the target.

    Returns the induced subgraph as node -> upstream node ids. Multiple edges
    between the same pair of nodes count as one dependency.
    """
    incoming: dict[str, list[str]] = {}
    for edge in edges:
        incoming.setdefault(edge.target, []).append(edge.source)

    upstream: dict[str, list[str]] = {}
    queue: deque[str] = deque([target_id])
    while queue:
        node_id = queue.popleft()
        if node_id in upstream:
            continue
        deps: list[str] = []
        for source in incoming.get(node_id, []):
            if source not in node_map:
                raise UnknownNodeError(
                    f"Edge into '{node_id}' references unknown source node '{source}'",
                    node_id=source,
                )
            if source not in deps:
                deps.append(source)
                queue.append(source)
        upstream[node_id] = deps
    return upstream


# ---------------------------------------------------------------------------
# Toposort (three-colour DFS)
# ---------------------------------------------------------------------------


def toposort(upstream: dict[str, list[str]], target_id: str) -> list[str]:
    """
    Order the subgraph so every dependency precedes its dependents.

    Iterative to stay clear of the recursion limit on long chains. Visiting a
    GRAY node means we followed an edge back into the current DFS path.
    """
    color: dict[str, int] = {nid: WHITE for nid in upstream}
    order: list[str] = []
    path: list[str] = []
    stack: list[tuple[str, int]] = [(target_id, 0)]

    while stack:
        node_id, dep_index = stack.pop()
        if dep_index == 0:
            if color[node_id] == BLACK:
                continue
            color[node_id] = GRAY
            path.append(node_id)

        deps = upstream[node_id]
        if dep_index < len(deps):
            stack.append((node_id, dep_index + 1))
            dep = deps[dep_index]
            if color[dep] == GRAY:
                cycle = path[path.index(dep):] + [dep]
                raise CycleDetectedError(dep, cycle=cycle)
            if color[dep] == WHITE:
                stack.append((dep, 0))
            continue

        color[node_id] = BLACK
        path.pop()
        order.append(node_id)

    return order

