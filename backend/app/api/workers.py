"""Worker API routes: CRUD, graph state, deployment and execution history."""

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from app.api.deps import get_current_user, get_owned_worker, ok
from app.db import execution_log_store
from app.db.graph_store import graph_store, graph_to_json_blob
from app.errors import NotFoundError, StorageError, ValidationError
from app.models import DeploymentInfo, WorkerCreate, WorkerGraph, WorkerUpdate
from app.services.deployment_detector import get_deployment_info
from app.services.execution_logger import execution_logger
from app.services.scheduler import sync_worker_schedule

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Request Models
# =============================================================================


class ExecuteWorkerRequest(BaseModel):
    """Body of a manual worker run."""

    input: Any = None


# =============================================================================
# Workers
# =============================================================================


@router.get("/workers")
async def list_workers(
    workspace_id: str | None = Query(None, alias="workspaceId"),
    user_id: str = Depends(get_current_user),
) -> dict[str, Any]:
    """List the caller's workers."""
    workers = await graph_store.list_workers(user_id, workspace_id)
    return ok(workers)


@router.post("/workers")
async def create_worker(
    request: WorkerCreate, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    """Create an empty worker."""
    worker = await graph_store.create_worker(user_id, request)
    return ok(worker)


@router.get("/workers/{worker_id}")
async def get_worker(worker_id: str, user_id: str = Depends(get_current_user)) -> dict[str, Any]:
    """Get a worker with its current graph state.

    A worker that has never been saved gets the empty default graph.
    """
    worker = await get_owned_worker(worker_id, user_id)
    graph = await graph_store.load_graph(worker_id)
    if graph is None:
        state = graph_to_json_blob(WorkerGraph())
    else:
        state = graph_to_json_blob(graph, worker.last_synced)
    return ok({"worker": worker.model_dump(by_alias=True, mode="json"), "state": state})


@router.post("/workers/{worker_id}")
async def save_worker_state(
    worker_id: str,
    graph: WorkerGraph,
    request: Request,
    user_id: str = Depends(get_current_user),
) -> dict[str, Any]:
    """Replace the worker's graph and resync its schedule."""
    await get_owned_worker(worker_id, user_id)

    result = await graph_store.save_graph(worker_id, graph)
    if not result.success:
        raise StorageError(result.error or "Failed to save worker state", code="GRAPH_SAVE_FAILED")

    # Deployment status is stale after any edit
    request.app.state.deployment_registry.invalidate(worker_id)

    schedule = None
    if graph.find_block_by_type("starter") is not None:
        try:
            schedule = (await sync_worker_schedule(worker_id, graph)).model_dump(
                by_alias=True, mode="json"
            )
        except ValidationError as e:
            # The graph is saved; report the schedule problem alongside it
            logger.warning(f"Schedule sync failed for worker {worker_id}: {e.message}")
            schedule = {"action": "error", "error": e.message}

    return ok({"state": result.json_blob, "schedule": schedule})


@router.put("/workers/{worker_id}")
async def update_worker(
    worker_id: str, request: WorkerUpdate, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    """Update worker metadata."""
    await get_owned_worker(worker_id, user_id)
    worker = await graph_store.update_worker(worker_id, request)
    if worker is None:
        raise NotFoundError(f"Worker not found: {worker_id}")
    return ok(worker)


@router.delete("/workers/{worker_id}")
async def delete_worker(
    worker_id: str, request: Request, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    """Delete a worker together with its graph, schedule and logs."""
    await get_owned_worker(worker_id, user_id)
    await graph_store.delete_worker(worker_id)
    request.app.state.deployment_registry.invalidate(worker_id)
    return ok({"deleted": True})


# =============================================================================
# Deployment
# =============================================================================


@router.get("/workers/{worker_id}/deploy")
async def get_deployment(
    worker_id: str, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    """Deployment info including the deployed snapshot ID."""
    worker = await get_owned_worker(worker_id, user_id)
    info = await get_deployment_info(worker)
    data = info.model_dump(by_alias=True, mode="json")
    data["snapshotId"] = worker.deployed_snapshot_id
    return ok(data)


@router.post("/workers/{worker_id}/deploy")
async def deploy_worker(
    worker_id: str, request: Request, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    """Snapshot the live graph and mark it as the deployed version."""
    await get_owned_worker(worker_id, user_id)

    graph = await graph_store.load_graph(worker_id)
    if graph is None:
        raise ValidationError("Worker has no saved state to deploy")

    snapshot = await execution_logger.get_or_create_snapshot(worker_id, graph)
    worker = await graph_store.mark_deployed(worker_id, snapshot.id)
    if worker is None:
        raise NotFoundError(f"Worker not found: {worker_id}")

    info = DeploymentInfo(is_deployed=True, deployed_at=worker.deployed_at, needs_redeployment=False)
    request.app.state.deployment_registry.set(worker_id, info)
    logger.info(f"Deployed worker {worker_id} with snapshot {snapshot.id}")

    data = info.model_dump(by_alias=True, mode="json")
    data["snapshotId"] = snapshot.id
    return ok(data)


@router.delete("/workers/{worker_id}/deploy")
async def undeploy_worker(
    worker_id: str, request: Request, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    """Clear the deployment flag; snapshots are kept."""
    await get_owned_worker(worker_id, user_id)
    await graph_store.mark_undeployed(worker_id)

    info = DeploymentInfo(is_deployed=False)
    request.app.state.deployment_registry.set(worker_id, info)
    return ok(info)


@router.get("/workers/{worker_id}/status")
async def get_worker_status(
    worker_id: str, request: Request, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    """Recompute ``needsRedeployment`` and refresh the status registry."""
    worker = await get_owned_worker(worker_id, user_id)
    info = await get_deployment_info(worker)
    request.app.state.deployment_registry.set(worker_id, info)
    return ok(info)


# =============================================================================
# Execution
# =============================================================================


@router.post("/workers/{worker_id}/execute")
async def execute_worker(
    worker_id: str,
    body: ExecuteWorkerRequest,
    request: Request,
    user_id: str = Depends(get_current_user),
) -> dict[str, Any]:
    """Run a worker once outside the task queue."""
    worker = await get_owned_worker(worker_id, user_id)
    request_id = uuid.uuid4().hex[:8]

    result = await request.app.state.execution_service.execute_worker(
        worker, request_id, body.input, trigger="manual"
    )
    return ok(result)


@router.get("/workers/{worker_id}/executions")
async def list_executions(
    worker_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
) -> dict[str, Any]:
    """Execution logs of a worker, newest first."""
    await get_owned_worker(worker_id, user_id)
    logs = await execution_log_store.list_execution_logs(worker_id, limit, offset)
    return ok(logs)


@router.get("/workers/{worker_id}/executions/{execution_id}")
async def get_execution(
    worker_id: str, execution_id: str, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    """One execution with its block logs."""
    await get_owned_worker(worker_id, user_id)
    detail = await execution_logger.get_execution_detail(execution_id)
    if detail is None or detail.log.worker_id != worker_id:
        raise NotFoundError(f"Execution not found: {execution_id}")
    return ok(detail)
