"""Workflow, run and trigger routes."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from core.container import container
from core.logging import get_logger
from models.graph import WorkflowGraph
from services.execution import (
    ExecutionCoordinator,
    GraphInvalidError,
    TriggerConflictError,
    TriggerError,
    WorkflowNotFoundError,
)
from services.node_registry import NodeHandlerRegistry
from services.triggers import TriggerManager

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["workflow"])


class RunRequest(BaseModel):
    input: Optional[Any] = None


def _store():
    return container.store()


# =============================================================================
# WORKFLOWS
# =============================================================================

@router.get("/workflows")
async def list_workflows(store=Depends(_store)):
    workflows = await store.list_workflows()
    return {"success": True, "workflows": [w.model_dump(mode="json") for w in workflows]}


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str, store=Depends(_store)):
    graph = await store.get_workflow(workflow_id)
    if graph is None:
        raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_id}")
    return {"success": True, "workflow": graph.model_dump(mode="json")}


@router.post("/workflows")
async def save_workflow(
    graph: WorkflowGraph,
    store=Depends(_store),
    trigger_manager: TriggerManager = Depends(lambda: container.trigger_manager())
):
    """Save a workflow and rebuild its trigger registrations.

    A trigger conflict or bad cron rule restores the previous version, so the
    stored graph and its registrations never disagree.
    """
    previous = await store.get_workflow(graph.id)
    if not await store.save_workflow(graph):
        raise HTTPException(status_code=500, detail="Failed to save workflow")

    try:
        triggers = await trigger_manager.refresh_triggers(graph.id)
    except TriggerError as e:
        if previous is not None:
            await store.save_workflow(previous)
        else:
            await store.delete_workflow(graph.id)
        status_code = 409 if isinstance(e, TriggerConflictError) else 422
        logger.warning("Workflow save rejected", workflow_id=graph.id, error=str(e))
        raise HTTPException(status_code=status_code, detail=str(e))

    logger.info("Workflow saved", workflow_id=graph.id, nodes=len(graph.nodes), edges=len(graph.edges))
    return {"success": True, "workflow_id": graph.id, "triggers": triggers}


@router.delete("/workflows/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    store=Depends(_store),
    trigger_manager: TriggerManager = Depends(lambda: container.trigger_manager())
):
    removed_triggers = await trigger_manager.deactivate_workflow_triggers(workflow_id)
    if not await store.delete_workflow(workflow_id):
        raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_id}")
    logger.info("Workflow deleted", workflow_id=workflow_id, triggers=removed_triggers)
    return {"success": True, "workflow_id": workflow_id, "deactivated_triggers": removed_triggers}


@router.post("/workflows/{workflow_id}/run")
async def run_workflow(
    workflow_id: str,
    request: Optional[RunRequest] = None,
    trigger_manager: TriggerManager = Depends(lambda: container.trigger_manager())
):
    """Run a workflow manually and wait for the result."""
    input_data = request.input if request is not None else None
    try:
        result = await trigger_manager.execute_manual(workflow_id, input_data)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GraphInvalidError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return result.to_dict()


# =============================================================================
# RUNS
# =============================================================================

@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    coordinator: ExecutionCoordinator = Depends(lambda: container.coordinator())
):
    run = await coordinator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return {"success": True, "run": run.to_dict()}


@router.post("/runs/{run_id}/cancel")
async def cancel_run(
    run_id: str,
    coordinator: ExecutionCoordinator = Depends(lambda: container.coordinator())
):
    if not coordinator.cancel(run_id):
        raise HTTPException(status_code=400, detail=f"Run is not active: {run_id}")
    return {"success": True, "run_id": run_id, "status": "cancelling"}


# =============================================================================
# TRIGGERS AND NODE CATALOG
# =============================================================================

@router.get("/triggers")
async def list_triggers(
    trigger_manager: TriggerManager = Depends(lambda: container.trigger_manager())
) -> Dict[str, Any]:
    return {
        "webhooks": trigger_manager.get_active_webhooks(),
        "schedules": trigger_manager.get_scheduled_jobs(),
    }


@router.get("/node-types")
async def list_node_types(
    registry: NodeHandlerRegistry = Depends(lambda: container.handler_registry())
):
    return {"node_types": registry.list_specs()}
