"""SQLite database connection and schema initialization."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

# Global connection holder
_db_connection: aiosqlite.Connection | None = None

# Serializes explicit transactions on the shared connection
_write_lock: asyncio.Lock | None = None


async def init_database(db_path: str) -> None:
    """Initialize the database connection and create schema."""
    global _db_connection, _write_lock

    # Ensure the data directory exists
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    # Autocommit mode; multi-statement writes open their own transaction
    _db_connection = await aiosqlite.connect(db_path, isolation_level=None)
    _db_connection.row_factory = aiosqlite.Row
    _write_lock = asyncio.Lock()

    # Enable foreign keys
    await _db_connection.execute("PRAGMA foreign_keys = ON")

    # Create schema
    await _create_schema(_db_connection)


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection
    if _db_connection:
        await _db_connection.close()
        _db_connection = None


async def get_db() -> aiosqlite.Connection:
    """Get the database connection."""
    if _db_connection is None:
        raise RuntimeError("Database not initialized. Call init_database first.")
    return _db_connection


def _get_lock() -> asyncio.Lock:
    if _write_lock is None:
        raise RuntimeError("Database not initialized. Call init_database first.")
    return _write_lock


@asynccontextmanager
async def consistent_read() -> AsyncIterator[aiosqlite.Connection]:
    """Run several reads with no transaction interleaving between them.

    The connection is shared, so a plain read can see the uncommitted
    statements of a transaction in flight. Holding the transaction lock keeps
    multi-statement reads on committed state only.
    """
    db = await get_db()
    async with _get_lock():
        yield db


@asynccontextmanager
async def transaction() -> AsyncIterator[aiosqlite.Connection]:
    """Run the enclosed statements in one IMMEDIATE transaction.

    Commits on normal exit and rolls back if the block raises. Transactions
    are serialized, so statements of two concurrent callers never interleave.
    Must not be nested.
    """
    db = await get_db()
    async with _get_lock():
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        else:
            await db.execute("COMMIT")


async def _create_schema(db: aiosqlite.Connection) -> None:
    """Create database tables and indexes."""
    # =========================================================================
    # Workers
    # =========================================================================
    await db.execute("""
        CREATE TABLE IF NOT EXISTS workers (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            workspace_id TEXT,
            name TEXT NOT NULL,
            description TEXT,
            color TEXT NOT NULL DEFAULT '#3972F6',
            variables_json TEXT NOT NULL DEFAULT '{}',
            is_deployed INTEGER NOT NULL DEFAULT 0,
            deployed_at TEXT,
            deployed_snapshot_id TEXT,
            run_count INTEGER NOT NULL DEFAULT 0,
            last_run_at TEXT,
            last_synced TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_workers_user
        ON workers(user_id, updated_at)
    """)

    # =========================================================================
    # Normalized graph tables
    # =========================================================================
    await db.execute("""
        CREATE TABLE IF NOT EXISTS worker_blocks (
            id TEXT NOT NULL,
            worker_id TEXT NOT NULL,
            type TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            position_x TEXT NOT NULL DEFAULT '0',
            position_y TEXT NOT NULL DEFAULT '0',
            enabled INTEGER NOT NULL DEFAULT 1,
            horizontal_handles INTEGER NOT NULL DEFAULT 0,
            is_wide INTEGER NOT NULL DEFAULT 0,
            height TEXT NOT NULL DEFAULT '0',
            sub_blocks_json TEXT NOT NULL DEFAULT '{}',
            outputs_json TEXT NOT NULL DEFAULT '{}',
            data_json TEXT NOT NULL DEFAULT '{}',
            parent_id TEXT,
            extent TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (worker_id, id),
            FOREIGN KEY (worker_id) REFERENCES workers(id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS worker_edges (
            id TEXT NOT NULL,
            worker_id TEXT NOT NULL,
            source_block_id TEXT NOT NULL,
            target_block_id TEXT NOT NULL,
            source_handle TEXT,
            target_handle TEXT,
            created_at TEXT NOT NULL,
            PRIMARY KEY (worker_id, id),
            FOREIGN KEY (worker_id) REFERENCES workers(id) ON DELETE CASCADE,
            FOREIGN KEY (worker_id, source_block_id)
                REFERENCES worker_blocks(worker_id, id) ON DELETE CASCADE,
            FOREIGN KEY (worker_id, target_block_id)
                REFERENCES worker_blocks(worker_id, id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS worker_subflows (
            id TEXT NOT NULL,
            worker_id TEXT NOT NULL,
            type TEXT NOT NULL,
            config_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (worker_id, id),
            FOREIGN KEY (worker_id) REFERENCES workers(id) ON DELETE CASCADE
        )
    """)

    # =========================================================================
    # Schedules
    # =========================================================================
    await db.execute("""
        CREATE TABLE IF NOT EXISTS worker_schedule (
            id TEXT PRIMARY KEY,
            worker_id TEXT NOT NULL UNIQUE,
            cron_expression TEXT,
            trigger_type TEXT NOT NULL DEFAULT 'schedule',
            next_run_at TEXT,
            last_ran_at TEXT,
            last_failed_at TEXT,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            status TEXT NOT NULL DEFAULT 'active',
            failed_count INTEGER NOT NULL DEFAULT 0 CHECK (failed_count >= 0),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (worker_id) REFERENCES workers(id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_schedule_due
        ON worker_schedule(status, next_run_at)
    """)

    # =========================================================================
    # Execution logging
    # =========================================================================
    await db.execute("""
        CREATE TABLE IF NOT EXISTS worker_execution_snapshots (
            id TEXT PRIMARY KEY,
            worker_id TEXT NOT NULL,
            state_hash TEXT NOT NULL,
            state_data_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (worker_id, state_hash),
            FOREIGN KEY (worker_id) REFERENCES workers(id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS worker_execution_logs (
            id TEXT PRIMARY KEY,
            worker_id TEXT NOT NULL,
            execution_id TEXT NOT NULL UNIQUE,
            state_snapshot_id TEXT NOT NULL,
            level TEXT NOT NULL DEFAULT 'info',
            message TEXT NOT NULL DEFAULT '',
            trigger TEXT NOT NULL,
            started_at TEXT NOT NULL,
            ended_at TEXT,
            total_duration_ms REAL NOT NULL DEFAULT 0,
            block_count INTEGER NOT NULL DEFAULT 0,
            success_count INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            skipped_count INTEGER NOT NULL DEFAULT 0,
            total_cost REAL NOT NULL DEFAULT 0,
            total_input_cost REAL NOT NULL DEFAULT 0,
            total_output_cost REAL NOT NULL DEFAULT 0,
            total_tokens INTEGER NOT NULL DEFAULT 0,
            primary_model TEXT,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            FOREIGN KEY (worker_id) REFERENCES workers(id) ON DELETE CASCADE,
            FOREIGN KEY (state_snapshot_id)
                REFERENCES worker_execution_snapshots(id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_execution_logs_worker
        ON worker_execution_logs(worker_id, started_at)
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS block_execution_logs (
            id TEXT PRIMARY KEY,
            execution_id TEXT NOT NULL,
            worker_id TEXT NOT NULL,
            block_id TEXT NOT NULL,
            block_name TEXT,
            block_type TEXT,
            started_at TEXT NOT NULL,
            ended_at TEXT NOT NULL,
            duration_ms REAL NOT NULL DEFAULT 0 CHECK (duration_ms >= 0),
            status TEXT NOT NULL,
            error_message TEXT,
            error_stack_trace TEXT,
            input_json TEXT,
            output_json TEXT,
            cost_json TEXT,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            FOREIGN KEY (worker_id) REFERENCES workers(id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_block_logs_execution
        ON block_execution_logs(execution_id, started_at)
    """)

    # =========================================================================
    # Tasks
    # =========================================================================
    await db.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            workspace_id TEXT,
            title TEXT NOT NULL,
            description TEXT,
            status TEXT NOT NULL DEFAULT 'TODO',
            assignee_id TEXT,
            raw_result_json TEXT NOT NULL DEFAULT '{}',
            result_report TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS task_activity (
            id TEXT PRIMARY KEY,
            task_id TEXT NOT NULL,
            action_type TEXT NOT NULL,
            actor_id TEXT NOT NULL,
            actor_type TEXT NOT NULL,
            occurred_at TEXT NOT NULL,
            FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_task_activity_task
        ON task_activity(task_id, occurred_at)
    """)

    # =========================================================================
    # Durable queue (visibility-timeout semantics)
    # =========================================================================
    await db.execute("""
        CREATE TABLE IF NOT EXISTS queue_messages (
            msg_id INTEGER PRIMARY KEY AUTOINCREMENT,
            queue_name TEXT NOT NULL,
            message_json TEXT NOT NULL,
            read_ct INTEGER NOT NULL DEFAULT 0,
            vt TEXT NOT NULL,
            enqueued_at TEXT NOT NULL
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_queue_visible
        ON queue_messages(queue_name, vt)
    """)

    # =========================================================================
    # User environment variables (encrypted values)
    # =========================================================================
    await db.execute("""
        CREATE TABLE IF NOT EXISTS user_environment (
            user_id TEXT PRIMARY KEY,
            variables_json TEXT NOT NULL DEFAULT '{}',
            updated_at TEXT NOT NULL
        )
    """)
