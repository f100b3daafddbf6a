"""Tests for the task and environment API routes."""

import aiosqlite
import pytest
from httpx import AsyncClient

from app.db import TASK_QUEUE, environment_store, get_db, task_queue
from app.errors import ExecutionFailure
from tests.conftest import OTHER_USER_ID, USER_ID


class TestTasksApi:
    """Tests for task creation and queue draining."""

    @pytest.mark.asyncio
    async def test_create_assigned_task_is_queued(self, client: AsyncClient, worker):
        response = await client.post(
            "/api/tasks", json={"title": "Weekly digest", "assigneeId": worker.id}
        )

        data = response.json()["data"]
        assert data["task"]["status"] == "TODO"
        assert data["msgId"]
        assert await task_queue.count(TASK_QUEUE) == 1

    @pytest.mark.asyncio
    async def test_create_unassigned_task_not_queued(self, client: AsyncClient):
        response = await client.post("/api/tasks", json={"title": "Someday"})

        assert response.json()["data"]["msgId"] is None
        assert await task_queue.count(TASK_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_cannot_assign_to_foreign_worker(self, client: AsyncClient, worker):
        response = await client.post(
            "/api/tasks",
            json={"title": "Sneaky", "assigneeId": worker.id},
            headers={"X-User-Id": OTHER_USER_ID},
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_process_empty_queue(self, client: AsyncClient):
        response = await client.get("/api/tasks/process")

        assert response.json() == {
            "success": True,
            "data": {"message": "No tasks to process.", "processed": 0},
        }

    @pytest.mark.asyncio
    async def test_process_runs_task(self, client: AsyncClient, worker):
        created = (
            await client.post("/api/tasks", json={"title": "Digest", "assigneeId": worker.id})
        ).json()["data"]

        processed = (await client.get("/api/tasks/process")).json()["data"]
        assert processed == {"message": "Processed 1 tasks.", "processed": 1}

        detail = (await client.get(f"/api/tasks/{created['task']['id']}")).json()["data"]
        assert detail["task"]["status"] == "WORK_COMPLETE"
        assert detail["task"]["resultReport"]
        assert [a["actionType"] for a in detail["activity"]] == [
            "TASK_CREATED",
            "TASK_EXECUTED",
            "TASK_COMPLETED",
        ]

    @pytest.mark.asyncio
    async def test_failed_execution_still_succeeds_http(self, client: AsyncClient, worker, executor):
        executor.error = ExecutionFailure("executor unreachable")
        created = (
            await client.post("/api/tasks", json={"title": "Digest", "assigneeId": worker.id})
        ).json()["data"]

        response = await client.get("/api/tasks/process")

        assert response.status_code == 200
        detail = (await client.get(f"/api/tasks/{created['task']['id']}")).json()["data"]
        assert detail["task"]["status"] == "ERROR"

    @pytest.mark.asyncio
    async def test_queue_read_failure(self, client: AsyncClient, monkeypatch):
        async def broken_read(queue_name, vt_seconds, batch_size):
            raise aiosqlite.OperationalError("database is locked")

        monkeypatch.setattr(task_queue, "read", broken_read)

        response = await client.get("/api/tasks/process")

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": "Failed to read from task queue",
            "code": "QUEUE_READ_FAILED",
        }

    @pytest.mark.asyncio
    async def test_task_of_other_user(self, client: AsyncClient):
        created = (await client.post("/api/tasks", json={"title": "Mine"})).json()["data"]

        response = await client.get(
            f"/api/tasks/{created['task']['id']}", headers={"X-User-Id": OTHER_USER_ID}
        )

        assert response.status_code == 403


class TestEnvironmentApi:
    """Tests for storing environment variables."""

    @pytest.mark.asyncio
    async def test_put_stores_encrypted(self, client: AsyncClient):
        response = await client.put(
            "/api/environment", json={"variables": {"B_KEY": "b", "A_KEY": "secret-a"}}
        )

        assert response.json()["data"] == {"names": ["A_KEY", "B_KEY"]}
        assert await environment_store.get_environment(USER_ID) == {
            "A_KEY": "secret-a",
            "B_KEY": "b",
        }

        listed = (await client.get("/api/environment")).json()["data"]
        assert listed == {"names": ["A_KEY", "B_KEY"]}

    @pytest.mark.asyncio
    async def test_values_not_stored_in_plaintext(self, client: AsyncClient):
        await client.put("/api/environment", json={"variables": {"TOKEN": "plain-value"}})

        db = await get_db()
        cursor = await db.execute("SELECT variables_json FROM user_environment")
        row = await cursor.fetchone()
        assert "plain-value" not in row["variables_json"]


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.json() == {"status": "healthy"}
