"""Task API routes: creation, lookup and the queue drain endpoint."""

import logging
from typing import Any

import aiosqlite
from fastapi import APIRouter, Depends, Request

from app.api.deps import get_current_user, get_owned_worker, ok
from app.db import task_store
from app.db.task_queue import TASK_QUEUE, task_queue
from app.errors import AccessDeniedError, NotFoundError, StorageError
from app.models import TaskCreate

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/tasks/process")
async def process_tasks(request: Request) -> dict[str, Any]:
    """Drain one batch of ``task_queue``.

    Per-message failures are recorded on the tasks themselves; only a failure
    to read the queue turns into an error response.
    """
    consumer = request.app.state.queue_consumer
    try:
        summary = await consumer.process_batch()
    except aiosqlite.Error as e:
        logger.error(f"Error reading from queue: {e}")
        raise StorageError("Failed to read from task queue", code="QUEUE_READ_FAILED") from e
    return ok(summary)


@router.post("/tasks")
async def create_task(
    request: TaskCreate, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    """Create a task; tasks assigned to a worker are queued for execution."""
    if request.assignee_id:
        await get_owned_worker(request.assignee_id, user_id)

    task = await task_store.create_task(user_id, request)

    msg_id = None
    if task.assignee_id:
        msg_id = await task_queue.send(TASK_QUEUE, {"taskId": task.id, "userId": user_id})
        logger.info(f"Queued task {task.id} for worker {task.assignee_id} (msg_id: {msg_id})")

    return ok({"task": task.model_dump(by_alias=True, mode="json"), "msgId": msg_id})


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, user_id: str = Depends(get_current_user)) -> dict[str, Any]:
    """A task with its activity timeline."""
    task = await task_store.get_task(task_id)
    if task is None:
        raise NotFoundError(f"Task not found: {task_id}")
    if task.user_id != user_id:
        raise AccessDeniedError("Not authorized to access this task")

    activity = await task_store.list_task_activity(task_id)
    return ok(
        {
            "task": task.model_dump(by_alias=True, mode="json"),
            "activity": [a.model_dump(by_alias=True, mode="json") for a in activity],
        }
    )
