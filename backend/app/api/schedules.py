"""Schedule API routes."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from app.api.deps import get_current_user, get_owned_schedule, get_owned_worker, ok
from app.db import schedule_store
from app.errors import ValidationError
from app.models import ScheduleRequest, ScheduleStatus, ScheduleUpdateRequest
from app.services.scheduler import sync_worker_schedule

logger = logging.getLogger(__name__)

router = APIRouter()

# Reactivated schedules run again shortly instead of waiting a full cycle
REACTIVATION_DELAY = timedelta(minutes=1)


@router.get("/schedules")
async def get_worker_schedule(
    worker_id: str = Query(..., alias="workerId"),
    mode: str | None = Query(None),
    user_id: str = Depends(get_current_user),
) -> dict[str, Any]:
    """The schedule of a worker, if it is started by one."""
    await get_owned_worker(worker_id, user_id)

    if mode is not None and mode != "schedule":
        return ok({"schedule": None})

    schedule = await schedule_store.get_schedule_for_worker(worker_id)
    if schedule is None:
        return ok({"schedule": None})

    is_disabled = schedule.status == ScheduleStatus.DISABLED
    return ok(
        {
            "schedule": schedule.model_dump(by_alias=True, mode="json"),
            "isDisabled": is_disabled,
            "hasFailures": schedule.failed_count > 0,
            "canBeReactivated": is_disabled,
        }
    )


@router.post("/schedules")
async def save_worker_schedule(
    request: ScheduleRequest, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    """Create, update or remove a worker's schedule from its starter block."""
    await get_owned_worker(request.worker_id, user_id)

    result = await sync_worker_schedule(request.worker_id, request.state)
    if result.action == "removed":
        return ok({"message": "Schedule removed"})

    return ok(
        {
            "message": "Schedule updated",
            "cronExpression": result.cron_expression,
            "nextRunAt": result.next_run_at,
        }
    )


# Declared before the /schedules/{schedule_id} routes
@router.get("/schedules/execute")
async def execute_due_schedules(request: Request) -> dict[str, Any]:
    """Cron entry point: queue a task for every due schedule."""
    result = await request.app.state.schedule_dispatcher.dispatch_due()
    return ok(
        {
            "message": "Scheduled worker executions processed",
            "executedCount": len(result.dispatched),
            **result.model_dump(by_alias=True, mode="json"),
        }
    )


@router.get("/schedules/{schedule_id}/status")
async def get_schedule_status(
    schedule_id: str, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    schedule = await get_owned_schedule(schedule_id, user_id)
    return ok(
        {
            "status": schedule.status.value,
            "failedCount": schedule.failed_count,
            "lastRanAt": schedule.last_ran_at,
            "lastFailedAt": schedule.last_failed_at,
            "nextRunAt": schedule.next_run_at,
            "isDisabled": schedule.status == ScheduleStatus.DISABLED,
        }
    )


@router.put("/schedules/{schedule_id}")
async def update_schedule(
    schedule_id: str,
    request: ScheduleUpdateRequest,
    user_id: str = Depends(get_current_user),
) -> dict[str, Any]:
    """Reactivate or disable a schedule."""
    request_id = uuid.uuid4().hex[:8]
    schedule = await get_owned_schedule(schedule_id, user_id)

    if request.action == "reactivate" or request.status == ScheduleStatus.ACTIVE:
        if schedule.status == ScheduleStatus.ACTIVE:
            return ok({"message": "Schedule is already active"})

        next_run_at = (datetime.now(timezone.utc) + REACTIVATION_DELAY).isoformat()
        await schedule_store.set_schedule_status(schedule_id, ScheduleStatus.ACTIVE, next_run_at)
        logger.info(f"[{request_id}] Reactivated schedule: {schedule_id}")
        return ok({"message": "Schedule activated successfully", "nextRunAt": next_run_at})

    if request.action == "disable" or request.status == ScheduleStatus.DISABLED:
        await schedule_store.set_schedule_status(schedule_id, ScheduleStatus.DISABLED)
        logger.info(f"[{request_id}] Disabled schedule: {schedule_id}")
        return ok({"message": "Schedule disabled successfully"})

    logger.warning(f"[{request_id}] Unsupported update action for schedule: {schedule_id}")
    raise ValidationError("Unsupported update action")


@router.delete("/schedules/{schedule_id}")
async def delete_schedule(
    schedule_id: str, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    await get_owned_schedule(schedule_id, user_id)
    await schedule_store.delete_schedule(schedule_id)
    return ok({"deleted": True})
