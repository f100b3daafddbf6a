"""Shared route helpers: response envelope, caller identity, ownership checks."""

from typing import Any

from fastapi import Header
from pydantic import BaseModel

from app.db import schedule_store
from app.db.graph_store import graph_store
from app.errors import AccessDeniedError, NotFoundError, UnauthorizedError
from app.models import Worker, WorkerSchedule


def ok(data: Any = None) -> dict[str, Any]:
    """Wrap a payload in the success envelope."""
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, mode="json")
    elif isinstance(data, list):
        data = [
            item.model_dump(by_alias=True, mode="json") if isinstance(item, BaseModel) else item
            for item in data
        ]
    return {"success": True, "data": data}


async def get_current_user(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity as forwarded by the gateway in ``X-User-Id``."""
    if not x_user_id:
        raise UnauthorizedError("Unauthorized")
    return x_user_id


async def get_owned_worker(worker_id: str, user_id: str) -> Worker:
    worker = await graph_store.get_worker(worker_id)
    if worker is None:
        raise NotFoundError(f"Worker not found: {worker_id}")
    if worker.user_id != user_id:
        raise AccessDeniedError("Not authorized to access this worker")
    return worker


async def get_owned_schedule(schedule_id: str, user_id: str) -> WorkerSchedule:
    schedule = await schedule_store.get_schedule(schedule_id)
    if schedule is None:
        raise NotFoundError(f"Schedule not found: {schedule_id}")
    # Ownership follows the worker
    await get_owned_worker(schedule.worker_id, user_id)
    return schedule

