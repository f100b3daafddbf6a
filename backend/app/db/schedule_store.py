"""Database operations for worker schedules."""

import uuid
from datetime import datetime, timezone

import aiosqlite

from app.db.database import get_db, transaction
from app.errors import StorageError
from app.models import ScheduleStatus, WorkerSchedule


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_schedule(row: aiosqlite.Row) -> WorkerSchedule:
    """Convert a database row to a WorkerSchedule model."""
    return WorkerSchedule(
        id=row["id"],
        worker_id=row["worker_id"],
        cron_expression=row["cron_expression"],
        trigger_type=row["trigger_type"],
        next_run_at=row["next_run_at"],
        last_ran_at=row["last_ran_at"],
        last_failed_at=row["last_failed_at"],
        timezone=row["timezone"],
        status=ScheduleStatus(row["status"]),
        failed_count=row["failed_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def get_schedule(schedule_id: str) -> WorkerSchedule | None:
    """Get a schedule by ID."""
    db = await get_db()
    cursor = await db.execute("SELECT * FROM worker_schedule WHERE id = ?", (schedule_id,))
    row = await cursor.fetchone()
    return _row_to_schedule(row) if row else None


async def get_schedule_for_worker(worker_id: str) -> WorkerSchedule | None:
    """Get the (single) schedule of a worker."""
    db = await get_db()
    cursor = await db.execute(
        "SELECT * FROM worker_schedule WHERE worker_id = ?", (worker_id,)
    )
    row = await cursor.fetchone()
    return _row_to_schedule(row) if row else None


async def upsert_schedule(
    worker_id: str,
    cron_expression: str,
    next_run_at: str,
    timezone_name: str,
) -> WorkerSchedule:
    """Insert or update the schedule keyed by ``worker_id``.

    Every upsert re-activates the schedule and clears its failure count.
    """
    now = _now()
    async with transaction() as db:
        await db.execute(
            """
            INSERT INTO worker_schedule (
                id, worker_id, cron_expression, trigger_type, next_run_at, timezone,
                status, failed_count, created_at, updated_at
            ) VALUES (?, ?, ?, 'schedule', ?, ?, ?, 0, ?, ?)
            ON CONFLICT(worker_id) DO UPDATE SET
                cron_expression = excluded.cron_expression,
                next_run_at = excluded.next_run_at,
                timezone = excluded.timezone,
                status = excluded.status,
                failed_count = 0,
                updated_at = excluded.updated_at
            """,
            (
                str(uuid.uuid4()),
                worker_id,
                cron_expression,
                next_run_at,
                timezone_name,
                ScheduleStatus.ACTIVE.value,
                now,
                now,
            ),
        )

    schedule = await get_schedule_for_worker(worker_id)
    if schedule is None:
        raise StorageError(
            f"Schedule for worker {worker_id} missing after upsert", code="SCHEDULE_SAVE_FAILED"
        )
    return schedule


async def delete_schedule_for_worker(worker_id: str) -> bool:
    """Delete a worker's schedule. Deleting a missing schedule is a no-op."""
    async with transaction() as db:
        cursor = await db.execute(
            "DELETE FROM worker_schedule WHERE worker_id = ?", (worker_id,)
        )
    return cursor.rowcount > 0


async def delete_schedule(schedule_id: str) -> bool:
    """Delete a schedule by ID."""
    async with transaction() as db:
        cursor = await db.execute("DELETE FROM worker_schedule WHERE id = ?", (schedule_id,))
    return cursor.rowcount > 0


async def set_schedule_status(
    schedule_id: str,
    status: ScheduleStatus,
    next_run_at: str | None = None,
) -> WorkerSchedule | None:
    """Activate or disable a schedule.

    Activating clears the failure count and, when given, moves ``next_run_at``.
    """
    async with transaction() as db:
        if status == ScheduleStatus.ACTIVE:
            await db.execute(
                """
                UPDATE worker_schedule
                SET status = ?, failed_count = 0,
                    next_run_at = COALESCE(?, next_run_at), updated_at = ?
                WHERE id = ?
                """,
                (status.value, next_run_at, _now(), schedule_id),
            )
        else:
            await db.execute(
                "UPDATE worker_schedule SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, _now(), schedule_id),
            )
    return await get_schedule(schedule_id)


async def list_due_schedules(now: str, limit: int = 10) -> list[WorkerSchedule]:
    """Active schedules whose ``next_run_at`` is at or before ``now``."""
    db = await get_db()
    cursor = await db.execute(
        """
        SELECT * FROM worker_schedule
        WHERE status = ? AND next_run_at IS NOT NULL AND next_run_at <= ?
        ORDER BY next_run_at
        LIMIT ?
        """,
        (ScheduleStatus.ACTIVE.value, now, limit),
    )
    rows = await cursor.fetchall()
    return [_row_to_schedule(row) for row in rows]


async def record_schedule_success(
    schedule_id: str, ran_at: str, next_run_at: str
) -> None:
    """Record a successful dispatch: reset failures and advance the schedule."""
    async with transaction() as db:
        await db.execute(
            """
            UPDATE worker_schedule
            SET last_ran_at = ?, next_run_at = ?, failed_count = 0, updated_at = ?
            WHERE id = ?
            """,
            (ran_at, next_run_at, _now(), schedule_id),
        )


async def record_schedule_failure(
    schedule_id: str,
    failed_at: str,
    next_run_at: str,
    max_failures: int,
) -> WorkerSchedule | None:
    """Count a consecutive failure, disabling the schedule at ``max_failures``."""
    async with transaction() as db:
        await db.execute(
            """
            UPDATE worker_schedule
            SET failed_count = failed_count + 1,
                last_failed_at = ?,
                next_run_at = ?,
                status = CASE WHEN failed_count + 1 >= ? THEN ? ELSE status END,
                updated_at = ?
            WHERE id = ?
            """,
            (
                failed_at,
                next_run_at,
                max_failures,
                ScheduleStatus.DISABLED.value,
                _now(),
                schedule_id,
            ),
        )
    return await get_schedule(schedule_id)
