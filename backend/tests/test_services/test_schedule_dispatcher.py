"""Tests for turning due schedules into queued tasks."""

from datetime import datetime, timedelta, timezone

import pytest

from app.db import TASK_QUEUE, graph_store, schedule_store, task_queue, task_store
from app.models import ScheduleStatus, TaskStatus, WorkerCreate, WorkerGraph
from app.services.schedule_dispatcher import ScheduleDispatcher
from app.services.scheduler import sync_worker_schedule
from tests.conftest import USER_ID, starter_block

NOW = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


async def schedule_worker(worker_id: str, daily_time: str = "09:30"):
    graph = WorkerGraph(
        blocks={"starter": starter_block(startWorker="schedule", dailyTime=daily_time)}
    )
    await sync_worker_schedule(worker_id, graph, now=NOW - timedelta(days=1))
    return await schedule_store.get_schedule_for_worker(worker_id)


class TestScheduleDispatcher:
    """Tests for the cron runner."""

    @pytest.mark.asyncio
    async def test_due_schedule_queues_task(self, worker):
        schedule = await schedule_worker(worker.id)
        dispatcher = ScheduleDispatcher(task_queue)

        result = await dispatcher.dispatch_due(now=NOW)

        assert len(result.dispatched) == 1
        entry = result.dispatched[0]
        assert entry["workerId"] == worker.id
        assert entry["nextRunAt"] == "2024-01-02T09:30:00+00:00"

        task = await task_store.get_task(entry["taskId"])
        assert task.assignee_id == worker.id
        assert task.status == TaskStatus.TODO
        assert task.title == "Scheduled run of Research Worker"

        messages = await task_queue.read(TASK_QUEUE, vt_seconds=60, batch_size=10)
        assert messages[0].message == {"taskId": task.id, "userId": USER_ID}

        updated = await schedule_store.get_schedule(schedule.id)
        assert updated.last_ran_at == NOW.isoformat()
        assert updated.next_run_at == "2024-01-02T09:30:00+00:00"

    @pytest.mark.asyncio
    async def test_dispatched_once_per_due_time(self, worker):
        await schedule_worker(worker.id, daily_time="11:00")
        dispatcher = ScheduleDispatcher(task_queue)

        # The schedule was synced a day earlier, so its first run is at 11:00 on Dec 31
        first = await dispatcher.dispatch_due(now=NOW)
        second = await dispatcher.dispatch_due(now=NOW)

        assert len(first.dispatched) == 1
        assert second.dispatched == []

    @pytest.mark.asyncio
    async def test_disabled_after_three_failures(self):
        # A worker without a saved graph cannot be dispatched
        bare = await graph_store.create_worker(USER_ID, WorkerCreate(name="Empty"))
        schedule = await schedule_worker(bare.id)
        dispatcher = ScheduleDispatcher(task_queue)

        now = NOW
        for _ in range(3):
            result = await dispatcher.dispatch_due(now=now)
            assert len(result.failed) == 1
            now = datetime.fromisoformat(
                (await schedule_store.get_schedule(schedule.id)).next_run_at
            )

        updated = await schedule_store.get_schedule(schedule.id)
        assert updated.failed_count == 3
        assert updated.status == ScheduleStatus.DISABLED
        assert result.failed[0]["disabled"] is True
        assert await task_queue.count(TASK_QUEUE) == 0

        # Disabled schedules are no longer picked up
        later = await dispatcher.dispatch_due(now=now + timedelta(days=7))
        assert later.failed == [] and later.dispatched == []

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, worker):
        schedule = await schedule_worker(worker.id)
        await schedule_store.record_schedule_failure(
            schedule.id, NOW.isoformat(), (NOW - timedelta(minutes=1)).isoformat(), max_failures=3
        )

        await ScheduleDispatcher(task_queue).dispatch_due(now=NOW)

        updated = await schedule_store.get_schedule(schedule.id)
        assert updated.failed_count == 0
        assert updated.status == ScheduleStatus.ACTIVE
