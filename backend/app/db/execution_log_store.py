"""Database operations for snapshots, execution logs and block logs."""

import json
from typing import Any

import aiosqlite

from app.db.database import get_db, transaction
from app.models import (
    BlockExecutionLog,
    CostBreakdown,
    WorkerExecutionLog,
    WorkerExecutionSnapshot,
)


def _row_to_snapshot(row: aiosqlite.Row) -> WorkerExecutionSnapshot:
    return WorkerExecutionSnapshot(
        id=row["id"],
        worker_id=row["worker_id"],
        state_hash=row["state_hash"],
        state_data=json.loads(row["state_data_json"]),
        created_at=row["created_at"],
    )


def _row_to_execution_log(row: aiosqlite.Row) -> WorkerExecutionLog:
    return WorkerExecutionLog(
        id=row["id"],
        worker_id=row["worker_id"],
        execution_id=row["execution_id"],
        state_snapshot_id=row["state_snapshot_id"],
        level=row["level"],
        message=row["message"],
        trigger=row["trigger"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        total_duration_ms=row["total_duration_ms"],
        block_count=row["block_count"],
        success_count=row["success_count"],
        error_count=row["error_count"],
        skipped_count=row["skipped_count"],
        total_cost=row["total_cost"],
        total_input_cost=row["total_input_cost"],
        total_output_cost=row["total_output_cost"],
        total_tokens=row["total_tokens"],
        primary_model=row["primary_model"],
        metadata=json.loads(row["metadata_json"] or "{}"),
        created_at=row["created_at"],
    )


def _row_to_block_log(row: aiosqlite.Row) -> BlockExecutionLog:
    cost = json.loads(row["cost_json"]) if row["cost_json"] else None
    return BlockExecutionLog(
        id=row["id"],
        execution_id=row["execution_id"],
        worker_id=row["worker_id"],
        block_id=row["block_id"],
        block_name=row["block_name"],
        block_type=row["block_type"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        duration_ms=row["duration_ms"],
        status=row["status"],
        error_message=row["error_message"],
        error_stack_trace=row["error_stack_trace"],
        input_data=json.loads(row["input_json"]) if row["input_json"] else None,
        output_data=json.loads(row["output_json"]) if row["output_json"] else None,
        cost=CostBreakdown.model_validate(cost) if cost else None,
        metadata=json.loads(row["metadata_json"] or "{}"),
        created_at=row["created_at"],
    )


# ==================== Snapshots ====================


async def insert_snapshot_if_absent(
    snapshot_id: str,
    worker_id: str,
    state_hash: str,
    state_data: dict[str, Any],
    created_at: str,
) -> WorkerExecutionSnapshot:
    """Insert a snapshot unless one with the same hash exists; return the stored row."""
    async with transaction() as db:
        await db.execute(
            """
            INSERT INTO worker_execution_snapshots (id, worker_id, state_hash, state_data_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(worker_id, state_hash) DO NOTHING
            """,
            (snapshot_id, worker_id, state_hash, json.dumps(state_data), created_at),
        )
        cursor = await db.execute(
            "SELECT * FROM worker_execution_snapshots WHERE worker_id = ? AND state_hash = ?",
            (worker_id, state_hash),
        )
        row = await cursor.fetchone()
    return _row_to_snapshot(row)


async def get_snapshot(snapshot_id: str) -> WorkerExecutionSnapshot | None:
    db = await get_db()
    cursor = await db.execute(
        "SELECT * FROM worker_execution_snapshots WHERE id = ?", (snapshot_id,)
    )
    row = await cursor.fetchone()
    return _row_to_snapshot(row) if row else None


# ==================== Execution logs ====================


async def insert_execution_log(log: WorkerExecutionLog) -> None:
    async with transaction() as db:
        await db.execute(
            """
            INSERT INTO worker_execution_logs (
                id, worker_id, execution_id, state_snapshot_id, level, message, trigger,
                started_at, ended_at, total_duration_ms, block_count, success_count,
                error_count, skipped_count, total_cost, total_input_cost,
                total_output_cost, total_tokens, primary_model, metadata_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log.id,
                log.worker_id,
                log.execution_id,
                log.state_snapshot_id,
                log.level,
                log.message,
                log.trigger,
                log.started_at,
                log.ended_at,
                log.total_duration_ms,
                log.block_count,
                log.success_count,
                log.error_count,
                log.skipped_count,
                log.total_cost,
                log.total_input_cost,
                log.total_output_cost,
                log.total_tokens,
                log.primary_model,
                json.dumps(log.metadata, default=str),
                log.created_at,
            ),
        )


async def update_execution_log(log: WorkerExecutionLog) -> None:
    """Write the completion fields and aggregates of an execution log."""
    async with transaction() as db:
        await db.execute(
            """
            UPDATE worker_execution_logs
            SET level = ?, message = ?, ended_at = ?, total_duration_ms = ?,
                block_count = ?, success_count = ?, error_count = ?, skipped_count = ?,
                total_cost = ?, total_input_cost = ?, total_output_cost = ?,
                total_tokens = ?, primary_model = ?, metadata_json = ?
            WHERE execution_id = ?
            """,
            (
                log.level,
                log.message,
                log.ended_at,
                log.total_duration_ms,
                log.block_count,
                log.success_count,
                log.error_count,
                log.skipped_count,
                log.total_cost,
                log.total_input_cost,
                log.total_output_cost,
                log.total_tokens,
                log.primary_model,
                json.dumps(log.metadata, default=str),
                log.execution_id,
            ),
        )


async def get_execution_log(execution_id: str) -> WorkerExecutionLog | None:
    db = await get_db()
    cursor = await db.execute(
        "SELECT * FROM worker_execution_logs WHERE execution_id = ?", (execution_id,)
    )
    row = await cursor.fetchone()
    return _row_to_execution_log(row) if row else None


async def list_execution_logs(
    worker_id: str, limit: int = 50, offset: int = 0
) -> list[WorkerExecutionLog]:
    """Execution logs of a worker, newest first."""
    db = await get_db()
    cursor = await db.execute(
        """
        SELECT * FROM worker_execution_logs
        WHERE worker_id = ?
        ORDER BY started_at DESC
        LIMIT ? OFFSET ?
        """,
        (worker_id, limit, offset),
    )
    rows = await cursor.fetchall()
    return [_row_to_execution_log(row) for row in rows]


# ==================== Block logs ====================


async def insert_block_log(log: BlockExecutionLog) -> None:
    async with transaction() as db:
        await db.execute(
            """
            INSERT INTO block_execution_logs (
                id, execution_id, worker_id, block_id, block_name, block_type,
                started_at, ended_at, duration_ms, status, error_message,
                error_stack_trace, input_json, output_json, cost_json,
                metadata_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log.id,
                log.execution_id,
                log.worker_id,
                log.block_id,
                log.block_name,
                log.block_type,
                log.started_at,
                log.ended_at,
                log.duration_ms,
                log.status,
                log.error_message,
                log.error_stack_trace,
                json.dumps(log.input_data, default=str) if log.input_data is not None else None,
                json.dumps(log.output_data, default=str) if log.output_data is not None else None,
                log.cost.model_dump_json(by_alias=True) if log.cost else None,
                json.dumps(log.metadata, default=str),
                log.created_at,
            ),
        )


async def list_block_logs(execution_id: str) -> list[BlockExecutionLog]:
    db = await get_db()
    cursor = await db.execute(
        "SELECT * FROM block_execution_logs WHERE execution_id = ? ORDER BY started_at, rowid",
        (execution_id,),
    )
    rows = await cursor.fetchall()
    return [_row_to_block_log(row) for row in rows]
