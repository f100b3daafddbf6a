"""Database operations for tasks and their activity timeline."""

import json
import uuid
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from app.db.database import get_db, transaction
from app.models import (
    ActionType,
    ActorType,
    Task,
    TaskActivity,
    TaskCreate,
    TaskStatus,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_task(row: aiosqlite.Row) -> Task:
    """Convert a database row to a Task model."""
    return Task(
        id=row["id"],
        user_id=row["user_id"],
        workspace_id=row["workspace_id"],
        title=row["title"],
        description=row["description"],
        status=TaskStatus(row["status"]),
        assignee_id=row["assignee_id"],
        raw_result=json.loads(row["raw_result_json"] or "{}"),
        result_report=row["result_report"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_activity(row: aiosqlite.Row) -> TaskActivity:
    return TaskActivity(
        id=row["id"],
        task_id=row["task_id"],
        action_type=ActionType(row["action_type"]),
        actor_id=row["actor_id"],
        actor_type=ActorType(row["actor_type"]),
        occurred_at=row["occurred_at"],
    )


async def create_task(user_id: str, task: TaskCreate) -> Task:
    """Create a task and its TASK_CREATED activity entry."""
    task_id = str(uuid.uuid4())
    now = _now()

    async with transaction() as db:
        await db.execute(
            """
            INSERT INTO tasks (id, user_id, workspace_id, title, description, status,
                               assignee_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task_id,
                user_id,
                task.workspace_id,
                task.title,
                task.description,
                task.status.value,
                task.assignee_id,
                now,
                now,
            ),
        )
        await db.execute(
            """
            INSERT INTO task_activity (id, task_id, action_type, actor_id, actor_type, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                task_id,
                ActionType.TASK_CREATED.value,
                user_id,
                ActorType.USER.value,
                now,
            ),
        )

    return Task(
        id=task_id,
        user_id=user_id,
        workspace_id=task.workspace_id,
        title=task.title,
        description=task.description,
        status=task.status,
        assignee_id=task.assignee_id,
        created_at=now,
        updated_at=now,
    )


async def get_task(task_id: str) -> Task | None:
    """Get a task by ID."""
    db = await get_db()
    cursor = await db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
    row = await cursor.fetchone()
    return _row_to_task(row) if row else None


async def set_task_status(task_id: str, status: TaskStatus) -> None:
    """Update only the status of a task."""
    async with transaction() as db:
        await db.execute(
            "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, _now(), task_id),
        )


async def save_task_result(
    task_id: str,
    status: TaskStatus,
    raw_result: dict[str, Any],
    result_report: str,
) -> None:
    """Persist the final status, raw execution result and report of a task."""
    async with transaction() as db:
        await db.execute(
            """
            UPDATE tasks
            SET status = ?, raw_result_json = ?, result_report = ?, updated_at = ?
            WHERE id = ?
            """,
            (status.value, json.dumps(raw_result, default=str), result_report, _now(), task_id),
        )


async def add_task_activity(
    task_id: str,
    action_type: ActionType,
    actor_id: str,
    actor_type: ActorType = ActorType.USER,
) -> TaskActivity:
    """Append an entry to a task's activity timeline."""
    activity = TaskActivity(
        id=str(uuid.uuid4()),
        task_id=task_id,
        action_type=action_type,
        actor_id=actor_id,
        actor_type=actor_type,
        occurred_at=_now(),
    )
    async with transaction() as db:
        await db.execute(
            """
            INSERT INTO task_activity (id, task_id, action_type, actor_id, actor_type, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                activity.id,
                activity.task_id,
                activity.action_type.value,
                activity.actor_id,
                activity.actor_type.value,
                activity.occurred_at,
            ),
        )
    return activity


async def list_task_activity(task_id: str) -> list[TaskActivity]:
    """Activity entries of a task, oldest first."""
    db = await get_db()
    cursor = await db.execute(
        "SELECT * FROM task_activity WHERE task_id = ? ORDER BY occurred_at, rowid",
        (task_id,),
    )
    rows = await cursor.fetchall()
    return [_row_to_activity(row) for row in rows]
