"""
Workflow execution API endpoints.

The editor posts its whole graph (nodes and edges as ReactFlow holds them)
together with the node the user asked to run. Only that node's ancestors
execute. Results are cached per engine, so re-running a node after editing
an unrelated branch does not repeat earlier generation calls; /cache/clear
starts over.
"""

import logging
from functools import lru_cache
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from flowforge.agents.generation import RunwareGenerationService
from flowforge.models.graph import ExecutionPlan
from flowforge.services.errors import GraphError
from flowforge.services.workflow_executor import WorkflowEngine, WorkflowExecutionResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])


class ExecuteWorkflowRequest(BaseModel):
    nodes: List[Dict[str, Any]]
    edges: List[Dict[str, Any]] = []
    target_node_id: str


class ClearCacheResponse(BaseModel):
    cleared: bool
    generation: int


@lru_cache(maxsize=1)
def get_engine() -> WorkflowEngine:
    """Process-wide engine backed by the Runware Generation Service."""
    try:
        service = RunwareGenerationService()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    logger.info("Workflow engine initialised with Runware at %s", service.api_url)
    return WorkflowEngine(service)


@router.post("/execute", response_model=WorkflowExecutionResult)
async def execute_workflow(
    request: ExecuteWorkflowRequest,
    engine: WorkflowEngine = Depends(get_engine),
):
    """
    Run the target node's ancestor subgraph.

    Node failures still return 200 with success=false and the failing node in
    `error`; a malformed graph (unknown target, duplicate id, cycle) is a 422.
    """
    result = await engine.run(request.nodes, request.edges, request.target_node_id)
    # Graph errors are rejected before planning, so there is no execution order
    if not result.success and not result.execution_order:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=result.error.model_dump(),
        )
    return result


@router.post("/execute/stream")
async def execute_workflow_stream(
    request: ExecuteWorkflowRequest,
    engine: WorkflowEngine = Depends(get_engine),
):
    """Run the target node, streaming node state changes as Server-Sent Events."""
    return StreamingResponse(
        engine.run_streaming(request.nodes, request.edges, request.target_node_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.post("/plan", response_model=ExecutionPlan)
async def plan_workflow(
    request: ExecuteWorkflowRequest,
    engine: WorkflowEngine = Depends(get_engine),
):
    """Resolve the execution order for a target node without running anything."""
    try:
        return engine.plan(request.nodes, request.edges, request.target_node_id)
    except GraphError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.to_info().model_dump(),
        )


@router.post("/cache/clear", response_model=ClearCacheResponse)
async def clear_cache(engine: WorkflowEngine = Depends(get_engine)):
    generation = engine.clear_cache()
    return ClearCacheResponse(cleared=True, generation=generation)
