"""
Workflow execution engine.

Takes an editor graph and a target node, resolves the target's ancestor
subgraph into an execution plan, runs every planned node at most once and
returns the target's result.

Key concepts:
- Input roles: incoming edges are matched to the roles a node kind declares
  (by target handle, else by producer kind) and checked for cardinality
  before the node's executor runs.
- Parallel execution: every planned node is scheduled immediately and waits
  only on its own upstream nodes, so independent branches overlap.
- Single-flight cache: a node shared by several consumers (or by a
  concurrent run) is executed once; the others await the same outcome.
  Node work runs in engine-owned tasks, so cancelling one run does not
  abandon nodes another run is waiting on.
- Failure is local: a failed node fails its dependents with
  UpstreamFailedError, while unrelated branches run to completion.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from enum import Enum
from typing import Any, AsyncIterator, Callable, Literal

from pydantic import BaseModel, Field, ValidationError

from flowforge.agents.generation import GenerationService
from flowforge.models.graph import (
    Edge,
    ExecutionPlan,
    Node,
    NodeResult,
    parse_edges,
    parse_nodes,
)
from flowforge.models.node_registry import InputRole, get_node_spec, roles_for
from flowforge.services.dependency_resolver import build_node_map, resolve
from flowforge.services.errors import (
    GraphError,
    InvalidParameterError,
    MissingInputError,
    NodeError,
    NodeErrorInfo,
    ServiceError,
    UpstreamFailedError,
    WorkflowError,
)
from flowforge.services.node_executors import ResolvedInputs, get_executor
from flowforge.services.result_cache import NodeOutcome, ResultCache

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], None]

# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class NodeState(str, Enum):
    PENDING = "pending"
    AWAITING_DEPENDENCIES = "awaiting_dependencies"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NodeExecutionResult(BaseModel):
    node_id: str
    node_type: str | None = None
    status: Literal["succeeded", "failed"]
    output: NodeResult | None = None
    error: NodeErrorInfo | None = None
    execution_time_ms: int = 0
    cached: bool = False


class WorkflowExecutionResult(BaseModel):
    success: bool
    target_node_id: str
    output: NodeResult | None = None
    execution_order: list[str] = Field(default_factory=list)
    node_results: list[NodeExecutionResult] = Field(default_factory=list)
    total_execution_time_ms: int = 0
    error: NodeErrorInfo | None = None

    @property
    def image_url(self) -> str | None:
        if self.success and self.output is not None and self.output.type == "image":
            return self.output.url
        return None


# ---------------------------------------------------------------------------
# Input resolution
# ---------------------------------------------------------------------------


def _match_role(roles: list[InputRole], edge: Edge, result: NodeResult) -> InputRole | None:
    """An explicit target handle wins; otherwise the first role taking this producer."""
    if edge.target_handle:
        for role in roles:
            if role.accepts_handle(edge.target_handle) and role.accepts == result.type:
                return role
    if result.kind is None:
        return None
    return next((r for r in roles if r.accepts_producer(result.kind, result.type)), None)


def resolve_node_inputs(
    node: Node,
    incoming: list[Edge],
    outcomes: dict[str, NodeOutcome],
) -> ResolvedInputs:
    """
    Group upstream results by input role and enforce role cardinality.

    Within a role, inputs arriving on a declared handle come first, in the
    order the role lists its handles (so a rescene node sees its object image
    before its scene image); the rest follow in edge order.

    Raises:
        MissingInputError: a role has fewer inputs than it requires.
        InvalidParameterError: a role has more inputs than it accepts.
    """
    roles = roles_for(node)
    ranked: dict[str, list[tuple[int, int, NodeResult]]] = {role.key: [] for role in roles}

    for position, edge in enumerate(incoming):
        result = outcomes[edge.source].result
        role = _match_role(roles, edge, result)
        if role is None:
            logger.warning(
                "Node %s (%s) cannot accept %s input from %s; ignoring edge",
                node.id, node.kind.value, result.type, edge.source,
            )
            continue
        if edge.target_handle in role.handles:
            rank = role.handles.index(edge.target_handle)
        else:
            rank = len(role.handles)
        ranked[role.key].append((rank, position, result))

    resolved: ResolvedInputs = {}
    for role in roles:
        entries = sorted(ranked[role.key], key=lambda entry: (entry[0], entry[1]))
        values = [result for _, _, result in entries]
        if len(values) < role.min_count:
            raise MissingInputError(
                f"{_describe(node)} requires {role.min_count} '{role.key}' input(s), got {len(values)}",
                node_id=node.id,
                role=role.key,
            )
        if role.max_count is not None and len(values) > role.max_count:
            raise InvalidParameterError(
                f"{_describe(node)} accepts at most {role.max_count} '{role.key}' input(s), got {len(values)}",
                node_id=node.id,
                field=role.key,
            )
        resolved[role.key] = values
    return resolved


def _describe(node: Node) -> str:
    sub_type = node.data.get("rerenderingType") or node.data.get("toolType")
    if sub_type:
        return f"{node.kind.value} ({sub_type}) node"
    return f"{node.kind.value} node"


# ---------------------------------------------------------------------------
# Run bookkeeping
# ---------------------------------------------------------------------------


class _Run:
    """State of one engine invocation."""

    def __init__(
        self,
        plan: ExecutionPlan,
        node_map: dict[str, Node],
        edges: list[Edge],
        generation: int,
        on_event: EventCallback | None,
    ):
        self.plan = plan
        self.node_map = node_map
        self.generation = generation
        self.on_event = on_event
        self.incoming: dict[str, list[Edge]] = {nid: [] for nid in plan.order}
        for edge in edges:
            if edge.target in plan and edge.source in plan:
                self.incoming[edge.target].append(edge)
        self.futures: dict[str, asyncio.Future[NodeOutcome]] = {}
        self.owned: set[str] = set()
        self.states: dict[str, NodeState] = {nid: NodeState.PENDING for nid in plan.order}

    def emit(self, event: dict[str, Any]) -> None:
        if self.on_event is not None:
            self.on_event(event)

    def transition(self, node_id: str, state: NodeState) -> None:
        self.states[node_id] = state
        logger.debug("Node %s -> %s", node_id, state.value)
        self.emit({"event": "node_state", "node_id": node_id, "state": state.value})

    def finish(self, node_id: str, outcome: NodeOutcome, cached: bool) -> NodeExecutionResult:
        self.transition(node_id, NodeState.SUCCEEDED if outcome.succeeded else NodeState.FAILED)
        node_result = _to_execution_result(self.node_map[node_id], outcome, cached)
        if outcome.succeeded:
            self.emit({
                "event": "node_complete",
                "node_id": node_id,
                "status": "succeeded",
                "output": outcome.result.model_dump(mode="json"),
                "execution_time_ms": outcome.execution_time_ms,
                "cached": cached,
            })
        else:
            self.emit({
                "event": "node_error",
                "node_id": node_id,
                "error": node_result.error.model_dump(),
                "execution_time_ms": outcome.execution_time_ms,
                "cached": cached,
            })
        return node_result


def _to_execution_result(node: Node, outcome: NodeOutcome, cached: bool) -> NodeExecutionResult:
    return NodeExecutionResult(
        node_id=outcome.node_id,
        node_type=node.kind.value,
        status=outcome.status,
        output=outcome.result,
        error=outcome.error.to_info() if outcome.error is not None else None,
        execution_time_ms=outcome.execution_time_ms,
        cached=cached,
    )


def _max_concurrency() -> int | None:
    raw = os.getenv("FLOWFORGE_MAX_CONCURRENCY", "").strip()
    if not raw:
        return None
    try:
        parsed = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid FLOWFORGE_MAX_CONCURRENCY=%r", raw)
        return None
    return parsed if parsed > 0 else None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class WorkflowEngine:
    """
    Executes workflow graphs against a Generation Service.

    One engine backs one editing session. Results stay cached across runs
    until clear_cache(), so re-running a target only executes nodes that
    have not succeeded yet.
    """

    def __init__(
        self,
        service: GenerationService,
        cache: ResultCache | None = None,
        max_concurrency: int | None = None,
    ):
        self.service = service
        self.cache = cache if cache is not None else ResultCache()
        limit = max_concurrency if max_concurrency is not None else _max_concurrency()
        self._semaphore = asyncio.Semaphore(limit) if limit else None
        self._node_tasks: set[asyncio.Task] = set()

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    async def execute_workflow(
        self,
        nodes: list[Node | dict[str, Any]],
        edges: list[Edge | dict[str, Any]],
        target_node_id: str,
    ) -> str | None:
        """Run the graph and return the target's image URL, or None on failure."""
        result = await self.run(nodes, edges, target_node_id)
        if not result.success:
            logger.warning("Workflow for %s failed: %s", target_node_id, result.error.message)
        return result.image_url

    def clear_cache(self) -> int:
        return self.cache.clear()

    def plan(
        self,
        nodes: list[Node | dict[str, Any]],
        edges: list[Edge | dict[str, Any]],
        target_node_id: str,
    ) -> ExecutionPlan:
        try:
            return resolve(nodes, edges, target_node_id)
        except ValidationError as e:
            raise GraphError(f"Invalid graph: {e.errors()[0]['msg']}") from e

    async def run(
        self,
        nodes: list[Node | dict[str, Any]],
        edges: list[Edge | dict[str, Any]],
        target_node_id: str,
        on_event: EventCallback | None = None,
    ) -> WorkflowExecutionResult:
        """
        Execute the target's ancestor subgraph.

        Graph errors fail the whole run before anything executes. Node errors
        are captured per node; the run fails when the target did not succeed.
        """
        start_time = time.perf_counter()

        try:
            node_list = parse_nodes(nodes)
            edge_list = parse_edges(edges)
            plan = resolve(node_list, edge_list, target_node_id)
        except ValidationError as e:
            error = GraphError(f"Invalid graph: {e.errors()[0]['msg']}")
            return self._graph_failure(target_node_id, error, start_time, on_event)
        except GraphError as e:
            return self._graph_failure(target_node_id, e, start_time, on_event)

        run = _Run(
            plan=plan,
            node_map=build_node_map(node_list),
            edges=edge_list,
            generation=self.cache.generation,
            on_event=on_event,
        )
        run.emit({
            "event": "workflow_start",
            "target_node_id": target_node_id,
            "execution_order": plan.order,
            "total_nodes": len(plan.order),
        })

        # Claims happen without awaiting, so concurrent runs cannot double-claim
        tasks: list[asyncio.Task] = []
        for node_id in plan.order:
            future, owner = self.cache.claim(node_id)
            run.futures[node_id] = future
            if owner:
                run.owned.add(node_id)
                task = asyncio.create_task(self._run_node(node_id, future, run))
                self._node_tasks.add(task)
                task.add_done_callback(self._node_tasks.discard)
                tasks.append(task)
            else:
                logger.debug("Node %s served from cache", node_id)

        if tasks:
            # Node tasks belong to the engine; other runs may be awaiting their futures
            await asyncio.shield(asyncio.gather(*tasks))
        shared = [f for nid, f in run.futures.items() if nid not in run.owned and not f.done()]
        if shared:
            await asyncio.wait(shared)

        node_results: list[NodeExecutionResult] = []
        for node_id in plan.order:
            future = run.futures[node_id]
            if node_id in run.owned:
                outcome = future.result()
                node_results.append(_to_execution_result(run.node_map[node_id], outcome, cached=False))
            else:
                outcome = self._shared_outcome(node_id, future)
                node_results.append(run.finish(node_id, outcome, cached=True))

        self.cache.evict_failures()

        target = next(nr for nr in node_results if nr.node_id == target_node_id)
        total_ms = _elapsed_ms(start_time)
        result = WorkflowExecutionResult(
            success=target.status == "succeeded",
            target_node_id=target_node_id,
            output=target.output,
            execution_order=plan.order,
            node_results=node_results,
            total_execution_time_ms=total_ms,
            error=target.error,
        )
        failed = sum(1 for nr in node_results if nr.status == "failed")
        logger.info(
            "Workflow run for %s finished in %d ms: %d node(s), %d failed, %d cached",
            target_node_id, total_ms, len(node_results), failed,
            sum(1 for nr in node_results if nr.cached),
        )
        self._emit_final(run.emit, result)
        return result

    async def run_streaming(
        self,
        nodes: list[Node | dict[str, Any]],
        edges: list[Edge | dict[str, Any]],
        target_node_id: str,
    ) -> AsyncIterator[str]:
        """
        Run the graph, yielding Server-Sent Events as nodes change state.

        Event types: workflow_start, node_state, node_complete, node_error,
        workflow_complete, workflow_error.
        """
        event_queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

        async def coordinator():
            try:
                await self.run(nodes, edges, target_node_id, on_event=event_queue.put_nowait)
            except Exception as e:
                logger.exception("Coordinator error: %s", e)
                await event_queue.put({
                    "event": "workflow_error",
                    "target_node_id": target_node_id,
                    "error": {"code": "internal_error", "message": f"{type(e).__name__}: {e}"},
                })
            finally:
                # Signal end of events
                await event_queue.put(None)

        coordinator_task = asyncio.create_task(coordinator())

        try:
            while True:
                event = await event_queue.get()
                if event is None:
                    break
                yield f"data: {json.dumps(event)}\n\n"
        finally:
            if not coordinator_task.done():
                coordinator_task.cancel()
                try:
                    await coordinator_task
                except asyncio.CancelledError:
                    pass

    # -----------------------------------------------------------------------
    # Node execution
    # -----------------------------------------------------------------------

    async def _run_node(self, node_id: str, future: asyncio.Future[NodeOutcome], run: _Run) -> None:
        node = run.node_map[node_id]
        run.transition(node_id, NodeState.AWAITING_DEPENDENCIES)

        deps = run.plan.upstream[node_id]
        pending = [run.futures[dep] for dep in deps if not run.futures[dep].done()]
        try:
            if pending:
                # wait() rather than gather(): shared futures must never be cancelled from here
                await asyncio.wait(pending)
        except asyncio.CancelledError:
            self.cache.release(node_id, future)
            raise

        start = time.perf_counter()
        try:
            dep_outcomes = {dep: self._shared_outcome(dep, run.futures[dep]) for dep in deps}
            failed = next((o for o in dep_outcomes.values() if not o.succeeded), None)
            if failed is not None:
                raise UpstreamFailedError(node_id, failed.error)

            inputs = resolve_node_inputs(node, run.incoming[node_id], dep_outcomes)
            run.transition(node_id, NodeState.EXECUTING)
            exec_fn = get_executor(node.kind)
            # Only service-bound kinds count against the concurrency limit
            if self._semaphore is not None and get_node_spec(node.kind).calls_service:
                async with self._semaphore:
                    result = await exec_fn(node, inputs, self.service)
            else:
                result = await exec_fn(node, inputs, self.service)

            outcome = NodeOutcome(
                node_id=node_id,
                status="succeeded",
                result=result.model_copy(update={"kind": node.kind}),
                execution_time_ms=_elapsed_ms(start),
            )

        except asyncio.CancelledError:
            self.cache.release(node_id, future)
            raise

        except WorkflowError as e:
            if e.node_id is None:
                e.node_id = node_id
            if isinstance(e, UpstreamFailedError):
                logger.info("Node %s skipped: %s", node_id, e.message)
            else:
                logger.warning("Node %s failed: %s", node_id, e.message)
            outcome = NodeOutcome(node_id=node_id, status="failed", error=e, execution_time_ms=_elapsed_ms(start))

        except Exception as e:
            logger.exception("Node %s failed: %s", node_id, e)
            error = ServiceError(f"{type(e).__name__}: {e}", node_id=node_id)
            outcome = NodeOutcome(node_id=node_id, status="failed", error=error, execution_time_ms=_elapsed_ms(start))

        self._settle(node_id, future, outcome, run.generation)
        run.finish(node_id, outcome, cached=False)

    def _settle(
        self,
        node_id: str,
        future: asyncio.Future[NodeOutcome],
        outcome: NodeOutcome,
        generation: int,
    ) -> None:
        """Store the outcome, then release waiters even if the cache moved on."""
        stored = self.cache.put(node_id, outcome, generation=generation)
        if not future.done():
            future.set_result(outcome)
        if not stored:
            logger.info("Discarded result of %s from a superseded run", node_id)

    @staticmethod
    def _shared_outcome(node_id: str, future: asyncio.Future[NodeOutcome]) -> NodeOutcome:
        if future.cancelled():
            error: NodeError = ServiceError("Execution was cancelled", node_id=node_id)
            return NodeOutcome(node_id=node_id, status="failed", error=error)
        return future.result()

    # -----------------------------------------------------------------------
    # Reporting
    # -----------------------------------------------------------------------

    def _graph_failure(
        self,
        target_node_id: str,
        error: GraphError,
        start_time: float,
        on_event: EventCallback | None = None,
    ) -> WorkflowExecutionResult:
        logger.warning("Workflow for %s rejected: %s", target_node_id, error)
        result = WorkflowExecutionResult(
            success=False,
            target_node_id=target_node_id,
            total_execution_time_ms=_elapsed_ms(start_time),
            error=error.to_info(),
        )
        if on_event is not None:
            self._emit_final(on_event, result)
        return result

    @staticmethod
    def _emit_final(emit: EventCallback, result: WorkflowExecutionResult) -> None:
        summary = {
            "target_node_id": result.target_node_id,
            "total_execution_time_ms": result.total_execution_time_ms,
            "node_results": [nr.model_dump(mode="json") for nr in result.node_results],
        }
        if result.success:
            emit({
                "event": "workflow_complete",
                "success": True,
                "output": result.output.model_dump(mode="json"),
                **summary,
            })
        else:
            emit({
                "event": "workflow_error",
                "error": result.error.model_dump(),
                **summary,
            })


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
