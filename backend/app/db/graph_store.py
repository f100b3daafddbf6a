"""GraphStore - Storage abstraction layer for worker graphs.

Workers are persisted in normalized form: one row per block, edge and
subflow. A save replaces the whole graph inside a single transaction, so
readers never observe a mix of the old and the new graph.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from app.db.database import consistent_read, get_db, transaction
from app.errors import ValidationError
from app.models import (
    BlockState,
    LoopConfig,
    ParallelConfig,
    Position,
    SaveGraphResult,
    SubBlockState,
    SubflowType,
    Worker,
    WorkerCreate,
    WorkerEdge,
    WorkerGraph,
    WorkerUpdate,
)

logger = logging.getLogger(__name__)


def _generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def _now() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def _to_decimal_string(value: float) -> str:
    """Positions and heights are stored as decimal strings."""
    return repr(float(value))


def _row_to_worker(row: aiosqlite.Row) -> Worker:
    """Convert a database row to a Worker model."""
    return Worker(
        id=row["id"],
        user_id=row["user_id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        description=row["description"],
        color=row["color"],
        variables=json.loads(row["variables_json"] or "{}"),
        is_deployed=bool(row["is_deployed"]),
        deployed_at=row["deployed_at"],
        deployed_snapshot_id=row["deployed_snapshot_id"],
        run_count=row["run_count"],
        last_run_at=row["last_run_at"],
        last_synced=row["last_synced"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_block(row: aiosqlite.Row) -> BlockState:
    """Convert a worker_blocks row to a BlockState."""
    sub_blocks = {
        key: SubBlockState.model_validate(value)
        for key, value in json.loads(row["sub_blocks_json"] or "{}").items()
    }

    return BlockState(
        id=row["id"],
        type=row["type"],
        name=row["name"],
        position=Position(x=float(row["position_x"]), y=float(row["position_y"])),
        enabled=bool(row["enabled"]),
        horizontal_handles=bool(row["horizontal_handles"]),
        is_wide=bool(row["is_wide"]),
        height=float(row["height"]),
        sub_blocks=sub_blocks,
        outputs=json.loads(row["outputs_json"] or "{}"),
        data=json.loads(row["data_json"] or "{}"),
        parent_id=row["parent_id"],
        extent=row["extent"],
    )


def graph_to_json_blob(graph: WorkerGraph, last_saved: str | None = None) -> dict[str, Any]:
    """Derive the denormalized JSON view of a graph.

    The blob is returned to clients that still expect a single state
    document. It is never written back to storage.
    """
    blob = graph.model_dump(by_alias=True, mode="json")
    blob["lastSaved"] = last_saved or _now()
    return blob


def _check_edges(graph: WorkerGraph) -> None:
    """Reject edges that reference blocks outside the graph."""
    for edge in graph.edges:
        missing = [ref for ref in (edge.source, edge.target) if ref not in graph.blocks]
        if missing:
            raise ValidationError(
                f"Edge {edge.id} references unknown block(s): {', '.join(missing)}"
            )


class GraphStore:
    """Storage abstraction for workers and their block graphs."""

    # ==================== Workers ====================

    async def create_worker(self, user_id: str, worker: WorkerCreate) -> Worker:
        """Create a new, empty worker owned by ``user_id``."""
        worker_id = _generate_id()
        now = _now()

        async with transaction() as db:
            await db.execute(
                """
                INSERT INTO workers (id, user_id, workspace_id, name, description, color,
                                     variables_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    worker_id,
                    user_id,
                    worker.workspace_id,
                    worker.name,
                    worker.description,
                    worker.color,
                    json.dumps(worker.variables),
                    now,
                    now,
                ),
            )

        logger.info(f"Created worker {worker_id} for user {user_id}")
        return Worker(
            id=worker_id,
            user_id=user_id,
            workspace_id=worker.workspace_id,
            name=worker.name,
            description=worker.description,
            color=worker.color,
            variables=worker.variables,
            created_at=now,
            updated_at=now,
        )

    async def get_worker(self, worker_id: str) -> Worker | None:
        """Get a worker by ID."""
        db = await get_db()
        cursor = await db.execute("SELECT * FROM workers WHERE id = ?", (worker_id,))
        row = await cursor.fetchone()
        return _row_to_worker(row) if row else None

    async def list_workers(
        self, user_id: str, workspace_id: str | None = None
    ) -> list[Worker]:
        """List a user's workers, most recently updated first."""
        db = await get_db()
        query = "SELECT * FROM workers WHERE user_id = ?"
        params: list[Any] = [user_id]
        if workspace_id:
            query += " AND workspace_id = ?"
            params.append(workspace_id)
        query += " ORDER BY updated_at DESC"

        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
        return [_row_to_worker(row) for row in rows]

    async def update_worker(self, worker_id: str, update: WorkerUpdate) -> Worker | None:
        """Update worker metadata. Returns None if the worker does not exist."""
        updates: list[str] = []
        params: list[Any] = []

        if update.name is not None:
            updates.append("name = ?")
            params.append(update.name)
        if update.description is not None:
            updates.append("description = ?")
            params.append(update.description)
        if update.color is not None:
            updates.append("color = ?")
            params.append(update.color)
        if update.variables is not None:
            updates.append("variables_json = ?")
            params.append(json.dumps(update.variables))

        if updates:
            updates.append("updated_at = ?")
            params.append(_now())
            params.append(worker_id)
            async with transaction() as db:
                await db.execute(
                    f"UPDATE workers SET {', '.join(updates)} WHERE id = ?", params
                )

        return await self.get_worker(worker_id)

    async def delete_worker(self, worker_id: str) -> bool:
        """Delete a worker; blocks, edges, schedule and logs cascade."""
        async with transaction() as db:
            cursor = await db.execute("DELETE FROM workers WHERE id = ?", (worker_id,))
        return cursor.rowcount > 0

    async def mark_deployed(self, worker_id: str, snapshot_id: str) -> Worker | None:
        """Point the worker at the snapshot it is now deployed with."""
        now = _now()
        async with transaction() as db:
            await db.execute(
                """
                UPDATE workers
                SET is_deployed = 1, deployed_at = ?, deployed_snapshot_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (now, snapshot_id, now, worker_id),
            )
        return await self.get_worker(worker_id)

    async def mark_undeployed(self, worker_id: str) -> Worker | None:
        """Clear the deployment markers of a worker."""
        async with transaction() as db:
            await db.execute(
                """
                UPDATE workers
                SET is_deployed = 0, deployed_at = NULL, deployed_snapshot_id = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (_now(), worker_id),
            )
        return await self.get_worker(worker_id)

    async def increment_run_count(self, worker_id: str) -> None:
        """Record one more completed run of a worker."""
        now = _now()
        async with transaction() as db:
            await db.execute(
                "UPDATE workers SET run_count = run_count + 1, last_run_at = ? WHERE id = ?",
                (now, worker_id),
            )

    # ==================== Graph ====================

    async def graph_exists(self, worker_id: str) -> bool:
        """Whether the worker has any normalized blocks."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT 1 FROM worker_blocks WHERE worker_id = ? LIMIT 1", (worker_id,)
        )
        return await cursor.fetchone() is not None

    async def load_graph(self, worker_id: str) -> WorkerGraph | None:
        """Load a worker's graph from the normalized tables.

        Args:
            worker_id: The worker to load

        Returns:
            The graph, or None if the worker has no blocks stored yet
            (callers derive an empty default view).
        """
        async with consistent_read() as db:
            cursor = await db.execute(
                "SELECT * FROM worker_blocks WHERE worker_id = ? ORDER BY rowid",
                (worker_id,),
            )
            block_rows = await cursor.fetchall()
            if not block_rows:
                return None

            cursor = await db.execute(
                "SELECT * FROM worker_edges WHERE worker_id = ? ORDER BY rowid",
                (worker_id,),
            )
            edge_rows = await cursor.fetchall()

            cursor = await db.execute(
                "SELECT * FROM worker_subflows WHERE worker_id = ? ORDER BY rowid",
                (worker_id,),
            )
            subflow_rows = await cursor.fetchall()

        graph = WorkerGraph()
        for row in block_rows:
            graph.blocks[row["id"]] = _row_to_block(row)

        for row in edge_rows:
            graph.edges.append(
                WorkerEdge(
                    id=row["id"],
                    source=row["source_block_id"],
                    target=row["target_block_id"],
                    source_handle=row["source_handle"],
                    target_handle=row["target_handle"],
                )
            )

        for row in subflow_rows:
            config = json.loads(row["config_json"] or "{}")
            config["id"] = row["id"]
            if row["type"] == SubflowType.LOOP.value:
                graph.loops[row["id"]] = LoopConfig.model_validate({**config, "type": "loop"})
            elif row["type"] == SubflowType.PARALLEL.value:
                graph.parallels[row["id"]] = ParallelConfig.model_validate(
                    {**config, "type": "parallel"}
                )
            else:
                logger.warning(
                    f"Unknown subflow type '{row['type']}' for {row['id']} in worker {worker_id}"
                )

        return graph

    async def save_graph(self, worker_id: str, graph: WorkerGraph) -> SaveGraphResult:
        """Replace a worker's graph in one transaction.

        All existing blocks, edges and subflows are deleted and the new set is
        inserted. If any statement fails the transaction is rolled back and the
        previously stored graph stays intact.

        Args:
            worker_id: The worker whose graph is replaced
            graph: The complete new graph (may be empty)

        Returns:
            SaveGraphResult carrying the derived JSON blob on success

        Raises:
            ValidationError: If an edge references a block not in the graph
        """
        _check_edges(graph)
        now = _now()

        try:
            async with transaction() as db:
                await db.execute("DELETE FROM worker_edges WHERE worker_id = ?", (worker_id,))
                await db.execute("DELETE FROM worker_subflows WHERE worker_id = ?", (worker_id,))
                await db.execute("DELETE FROM worker_blocks WHERE worker_id = ?", (worker_id,))

                if graph.blocks:
                    await db.executemany(
                        """
                        INSERT INTO worker_blocks (
                            id, worker_id, type, name, position_x, position_y, enabled,
                            horizontal_handles, is_wide, height, sub_blocks_json,
                            outputs_json, data_json, parent_id, extent, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [self._block_params(worker_id, block, now) for block in graph.blocks.values()],
                    )

                if graph.edges:
                    await db.executemany(
                        """
                        INSERT INTO worker_edges (
                            id, worker_id, source_block_id, target_block_id,
                            source_handle, target_handle, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                edge.id,
                                worker_id,
                                edge.source,
                                edge.target,
                                edge.source_handle,
                                edge.target_handle,
                                now,
                            )
                            for edge in graph.edges
                        ],
                    )

                subflows = graph.subflows()
                if subflows:
                    await db.executemany(
                        """
                        INSERT INTO worker_subflows (id, worker_id, type, config_json,
                                                     created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                subflow.id,
                                worker_id,
                                subflow.type,
                                subflow.model_dump_json(by_alias=True, exclude={"id", "type"}),
                                now,
                                now,
                            )
                            for subflow in subflows
                        ],
                    )

                await db.execute(
                    "UPDATE workers SET last_synced = ?, updated_at = ? WHERE id = ?",
                    (now, now, worker_id),
                )
        except (aiosqlite.Error, TypeError) as e:
            logger.error(f"Failed to save graph for worker {worker_id}: {e}")
            return SaveGraphResult(success=False, error=str(e))

        logger.info(
            f"Saved graph for worker {worker_id}: {len(graph.blocks)} blocks, "
            f"{len(graph.edges)} edges, {len(graph.loops) + len(graph.parallels)} subflows"
        )
        return SaveGraphResult(success=True, json_blob=graph_to_json_blob(graph, now))

    @staticmethod
    def _block_params(worker_id: str, block: BlockState, now: str) -> tuple:
        return (
            block.id,
            worker_id,
            block.type,
            block.name,
            _to_decimal_string(block.position.x),
            _to_decimal_string(block.position.y),
            int(block.enabled),
            int(block.horizontal_handles),
            int(block.is_wide),
            _to_decimal_string(block.height),
            json.dumps(
                {key: sub.model_dump(mode="json") for key, sub in block.sub_blocks.items()}
            ),
            json.dumps(block.outputs),
            json.dumps(block.data),
            block.parent_id,
            block.extent,
            now,
            now,
        )


# Global instance
graph_store = GraphStore()
