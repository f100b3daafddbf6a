"""Tests for the schedule API routes."""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from app.db import TASK_QUEUE, schedule_store, task_queue
from app.models import WorkerGraph
from tests.conftest import OTHER_USER_ID, starter_block


def scheduled_state(daily_time: str = "09:30") -> dict:
    graph = WorkerGraph(
        blocks={"starter": starter_block(startWorker="schedule", dailyTime=daily_time)}
    )
    return graph.model_dump(by_alias=True, mode="json")


async def create_schedule(client: AsyncClient, worker_id: str) -> dict:
    await client.post("/api/schedules", json={"workerId": worker_id, "state": scheduled_state()})
    response = await client.get("/api/schedules", params={"workerId": worker_id})
    return response.json()["data"]["schedule"]


class TestSchedulesApi:
    """Tests for reading and writing worker schedules."""

    @pytest.mark.asyncio
    async def test_save_schedule(self, client: AsyncClient, worker):
        response = await client.post(
            "/api/schedules", json={"workerId": worker.id, "state": scheduled_state()}
        )

        data = response.json()["data"]
        assert data["message"] == "Schedule updated"
        assert data["cronExpression"] == "30 9 * * *"
        assert data["nextRunAt"]

    @pytest.mark.asyncio
    async def test_remove_schedule(self, client: AsyncClient, worker):
        await create_schedule(client, worker.id)
        manual = WorkerGraph(blocks={"starter": starter_block(startWorker="manual")})

        response = await client.post(
            "/api/schedules",
            json={"workerId": worker.id, "state": manual.model_dump(by_alias=True)},
        )

        assert response.json()["data"] == {"message": "Schedule removed"}
        assert await schedule_store.get_schedule_for_worker(worker.id) is None

    @pytest.mark.asyncio
    async def test_missing_starter(self, client: AsyncClient, worker):
        response = await client.post(
            "/api/schedules", json={"workerId": worker.id, "state": {"blocks": {}}}
        )

        assert response.status_code == 400
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_get_schedule(self, client: AsyncClient, worker):
        await create_schedule(client, worker.id)

        data = (await client.get("/api/schedules", params={"workerId": worker.id})).json()["data"]

        assert data["schedule"]["cronExpression"] == "30 9 * * *"
        assert data["isDisabled"] is False
        assert data["hasFailures"] is False
        assert data["canBeReactivated"] is False

    @pytest.mark.asyncio
    async def test_get_schedule_other_mode(self, client: AsyncClient, worker):
        await create_schedule(client, worker.id)

        response = await client.get(
            "/api/schedules", params={"workerId": worker.id, "mode": "manual"}
        )

        assert response.json()["data"] == {"schedule": None}

    @pytest.mark.asyncio
    async def test_get_requires_worker_id(self, client: AsyncClient):
        response = await client.get("/api/schedules")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_disable_and_reactivate(self, client: AsyncClient, worker):
        schedule = await create_schedule(client, worker.id)

        disabled = await client.put(f"/api/schedules/{schedule['id']}", json={"action": "disable"})
        assert disabled.json()["data"]["message"] == "Schedule disabled successfully"
        status = (await client.get(f"/api/schedules/{schedule['id']}/status")).json()["data"]
        assert status["isDisabled"] is True

        before = datetime.now(timezone.utc)
        reactivated = (
            await client.put(f"/api/schedules/{schedule['id']}", json={"action": "reactivate"})
        ).json()["data"]
        assert reactivated["message"] == "Schedule activated successfully"
        next_run = datetime.fromisoformat(reactivated["nextRunAt"])
        assert before < next_run <= datetime.now(timezone.utc) + timedelta(minutes=1)

        status = (await client.get(f"/api/schedules/{schedule['id']}/status")).json()["data"]
        assert status["status"] == "active"
        assert status["failedCount"] == 0

    @pytest.mark.asyncio
    async def test_reactivate_active_schedule(self, client: AsyncClient, worker):
        schedule = await create_schedule(client, worker.id)

        response = await client.put(
            f"/api/schedules/{schedule['id']}", json={"action": "reactivate"}
        )

        assert response.json()["data"] == {"message": "Schedule is already active"}

    @pytest.mark.asyncio
    async def test_unsupported_update(self, client: AsyncClient, worker):
        schedule = await create_schedule(client, worker.id)

        response = await client.put(f"/api/schedules/{schedule['id']}", json={})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_ownership(self, client: AsyncClient, worker):
        schedule = await create_schedule(client, worker.id)

        response = await client.delete(
            f"/api/schedules/{schedule['id']}", headers={"X-User-Id": OTHER_USER_ID}
        )

        assert response.status_code == 403
        assert await schedule_store.get_schedule(schedule["id"]) is not None

    @pytest.mark.asyncio
    async def test_delete(self, client: AsyncClient, worker):
        schedule = await create_schedule(client, worker.id)

        response = await client.delete(f"/api/schedules/{schedule['id']}")

        assert response.json()["data"] == {"deleted": True}
        assert await schedule_store.get_schedule(schedule["id"]) is None

    @pytest.mark.asyncio
    async def test_execute_due_schedules(self, client: AsyncClient, worker):
        schedule = await create_schedule(client, worker.id)
        # Make it due now
        await schedule_store.record_schedule_success(
            schedule["id"],
            ran_at=schedule["createdAt"],
            next_run_at=(datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat(),
        )

        data = (await client.get("/api/schedules/execute")).json()["data"]

        assert data["executedCount"] == 1
        assert data["dispatched"][0]["workerId"] == worker.id
        assert await task_queue.count(TASK_QUEUE) == 1
