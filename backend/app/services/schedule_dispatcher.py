"""Cron runner: turns due schedules into queued tasks."""

import logging
import uuid
from datetime import datetime, timezone

import aiosqlite

from app.db import schedule_store, task_store
from app.db.graph_store import GraphStore, graph_store
from app.db.task_queue import TASK_QUEUE, TaskQueue
from app.errors import ExecutionFailure, OrchestrationError
from app.models import (
    ScheduleDispatchResult,
    ScheduleStatus,
    TaskCreate,
    TaskStatus,
    WorkerSchedule,
)
from app.services.scheduler import fallback_next_run, next_run_for_cron

logger = logging.getLogger(__name__)

# Maximum number of consecutive failures before disabling a schedule
MAX_CONSECUTIVE_FAILURES = 3
DUE_SCHEDULE_LIMIT = 10


class ScheduleDispatcher:
    """Enqueues one auto-generated task per due schedule."""

    def __init__(
        self,
        queue: TaskQueue,
        store: GraphStore = graph_store,
        queue_name: str = TASK_QUEUE,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
    ):
        self.queue = queue
        self.store = store
        self.queue_name = queue_name
        self.max_failures = max_failures

    def _next_run(self, schedule: WorkerSchedule, now: datetime) -> datetime:
        if schedule.cron_expression:
            try:
                return next_run_for_cron(schedule.cron_expression, schedule.timezone, now)
            except ValueError as e:
                logger.warning(
                    f"Cannot evaluate cron '{schedule.cron_expression}' for schedule "
                    f"{schedule.id}: {e}"
                )
        return fallback_next_run(now)

    async def dispatch_due(self, now: datetime | None = None) -> ScheduleDispatchResult:
        """Dispatch every active schedule whose next run is due."""
        now = now or datetime.now(timezone.utc)
        request_id = uuid.uuid4().hex[:8]
        result = ScheduleDispatchResult()

        due = await schedule_store.list_due_schedules(now.isoformat(), DUE_SCHEDULE_LIMIT)
        logger.info(f"[{request_id}] Processing {len(due)} due scheduled workers")

        for schedule in due:
            worker = await self.store.get_worker(schedule.worker_id)
            if worker is None:
                logger.warning(f"[{request_id}] Worker {schedule.worker_id} not found")
                result.skipped.append(schedule.worker_id)
                continue

            try:
                if not await self.store.graph_exists(worker.id):
                    raise ExecutionFailure(f"Worker data not found for {worker.id}")

                task = await task_store.create_task(
                    worker.user_id,
                    TaskCreate(
                        title=f"Scheduled run of {worker.name}",
                        description="This task was automatically created by a worker schedule.",
                        workspace_id=worker.workspace_id,
                        assignee_id=worker.id,
                        status=TaskStatus.TODO,
                    ),
                )
                msg_id = await self.queue.send(
                    self.queue_name, {"taskId": task.id, "userId": worker.user_id}
                )
            except (OrchestrationError, aiosqlite.Error) as e:
                message = e.message if isinstance(e, OrchestrationError) else str(e)
                updated = await schedule_store.record_schedule_failure(
                    schedule.id,
                    failed_at=now.isoformat(),
                    next_run_at=self._next_run(schedule, now).isoformat(),
                    max_failures=self.max_failures,
                )
                disabled = updated is not None and updated.status == ScheduleStatus.DISABLED
                if disabled:
                    logger.warning(
                        f"[{request_id}] Disabling schedule for worker {worker.id} after "
                        f"{self.max_failures} consecutive failures"
                    )
                else:
                    logger.warning(f"[{request_id}] Dispatch failed for worker {worker.id}: {message}")
                result.failed.append(
                    {
                        "workerId": worker.id,
                        "scheduleId": schedule.id,
                        "error": message,
                        "disabled": disabled,
                    }
                )
                continue

            next_run = self._next_run(schedule, now)
            await schedule_store.record_schedule_success(
                schedule.id, ran_at=now.isoformat(), next_run_at=next_run.isoformat()
            )
            logger.info(
                f"[{request_id}] Queued task {task.id} for worker {worker.id}, "
                f"next run at {next_run.isoformat()}"
            )
            result.dispatched.append(
                {
                    "workerId": worker.id,
                    "scheduleId": schedule.id,
                    "taskId": task.id,
                    "msgId": msg_id,
                    "nextRunAt": next_run.isoformat(),
                }
            )

        return result
