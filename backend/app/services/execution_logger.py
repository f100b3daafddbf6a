"""Execution logging and cost accounting.

Every execution references an immutable, content-addressed snapshot of the
graph it ran. Block logs are plain inserts; execution-level aggregates are
computed once, at completion, from the full set of block logs so that
concurrent block writes inside a parallel subflow never race on counters.
"""

import hashlib
import json
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from app.db import consistent_read, execution_log_store
from app.errors import StorageError
from app.models import (
    BlockExecutionLog,
    BlockLog,
    CostBreakdown,
    ExecutionDetail,
    ExecutionEnvironment,
    ExecutionResult,
    ExecutionTrigger,
    TokenUsage,
    TraceSpan,
    WorkerExecutionLog,
    WorkerExecutionSnapshot,
    WorkerGraph,
)
from app.models.execution_log import TriggerType
from app.services.trace_spans import build_trace_spans

logger = logging.getLogger(__name__)

MAX_PAYLOAD_CHARS = 10_000

# Fields that only affect how a block is drawn
COSMETIC_BLOCK_FIELDS = {"position", "height", "isWide", "horizontalHandles"}
COSMETIC_DATA_FIELDS = {"width", "height"}

SNAPSHOT_WRITE_FAILED = "SNAPSHOT_WRITE_FAILED"
EXECUTION_LOG_WRITE_FAILED = "EXECUTION_LOG_WRITE_FAILED"
BLOCK_LOG_WRITE_FAILED = "BLOCK_LOG_WRITE_FAILED"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# State hashing
# =============================================================================


def normalize_graph_state(graph: WorkerGraph) -> dict[str, Any]:
    """Canonical form of a graph with cosmetic fields removed."""
    blocks = {}
    for block_id, block in graph.blocks.items():
        dumped = block.model_dump(by_alias=True, mode="json")
        for field in COSMETIC_BLOCK_FIELDS:
            dumped.pop(field, None)
        dumped["data"] = {
            k: v for k, v in dumped.get("data", {}).items() if k not in COSMETIC_DATA_FIELDS
        }
        blocks[block_id] = dumped

    return {
        "blocks": blocks,
        "edges": sorted(
            (edge.model_dump(by_alias=True, mode="json") for edge in graph.edges),
            key=lambda edge: edge["id"],
        ),
        "loops": {k: v.model_dump(by_alias=True, mode="json") for k, v in graph.loops.items()},
        "parallels": {
            k: v.model_dump(by_alias=True, mode="json") for k, v in graph.parallels.items()
        },
    }


def compute_state_hash(graph: WorkerGraph) -> str:
    """Deterministic SHA-256 of the normalized graph."""
    canonical = json.dumps(
        normalize_graph_state(graph), sort_keys=True, separators=(",", ":"), default=str
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# Payload and cost helpers
# =============================================================================


def truncate_payload(value: Any) -> Any:
    """Replace a payload whose JSON form exceeds MAX_PAYLOAD_CHARS with a preview."""
    if value is None:
        return None
    serialized = json.dumps(value, default=str)
    if len(serialized) <= MAX_PAYLOAD_CHARS:
        return value
    return {
        "truncated": True,
        "originalSize": len(serialized),
        "preview": serialized[:MAX_PAYLOAD_CHARS],
    }


def _number(value: Any, cast: type = float) -> Any:
    """Coerce a reported cost figure; anything unparseable counts as zero."""
    try:
        return cast(value or 0)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric cost value: {value!r}")
        return cast(0)


def extract_block_cost(block: BlockLog) -> CostBreakdown | None:
    """Cost reported in a block's output, if the block called a priced model."""
    if not isinstance(block.output, dict):
        return None
    cost = block.output.get("cost")
    if not isinstance(cost, dict):
        return None

    tokens = cost.get("tokens") or block.output.get("tokens")
    if not isinstance(tokens, dict):
        tokens = {}
    model = cost.get("model") or block.output.get("model")
    pricing = cost.get("pricing")
    return CostBreakdown(
        input=_number(cost.get("input")),
        output=_number(cost.get("output")),
        total=_number(cost.get("total")),
        tokens=TokenUsage(
            prompt=_number(tokens.get("prompt"), int),
            completion=_number(tokens.get("completion"), int),
            total=_number(tokens.get("total"), int),
        ),
        model=model if isinstance(model, str) else None,
        pricing=pricing if isinstance(pricing, dict) else None,
    )


def aggregate_block_logs(block_logs: list[BlockExecutionLog]) -> dict[str, Any]:
    """Counts and cost totals over the full set of an execution's block logs."""
    cost_by_model: dict[str, float] = defaultdict(float)
    totals = {
        "block_count": len(block_logs),
        "success_count": 0,
        "error_count": 0,
        "skipped_count": 0,
        "total_cost": 0.0,
        "total_input_cost": 0.0,
        "total_output_cost": 0.0,
        "total_tokens": 0,
    }

    for log in block_logs:
        totals[f"{log.status}_count"] += 1
        if log.cost is None:
            continue
        totals["total_cost"] += log.cost.total
        totals["total_input_cost"] += log.cost.input
        totals["total_output_cost"] += log.cost.output
        totals["total_tokens"] += log.cost.tokens.total
        if log.cost.model:
            cost_by_model[log.cost.model] += log.cost.total

    totals["primary_model"] = (
        max(cost_by_model, key=cost_by_model.__getitem__) if cost_by_model else None
    )
    return totals


# =============================================================================
# Logger
# =============================================================================


class ExecutionLogger:
    """Writes snapshots, execution logs and block logs for worker runs."""

    async def get_or_create_snapshot(
        self, worker_id: str, graph: WorkerGraph
    ) -> WorkerExecutionSnapshot:
        """Return the snapshot for this graph content, creating it if new."""
        state_hash = compute_state_hash(graph)
        try:
            return await execution_log_store.insert_snapshot_if_absent(
                snapshot_id=str(uuid.uuid4()),
                worker_id=worker_id,
                state_hash=state_hash,
                state_data=graph.model_dump(by_alias=True, mode="json"),
                created_at=_now(),
            )
        except aiosqlite.Error as e:
            logger.error(f"Failed to write snapshot for worker {worker_id}: {e}")
            raise StorageError(
                f"Failed to write snapshot for worker {worker_id}", code=SNAPSHOT_WRITE_FAILED
            ) from e

    async def start_execution(
        self,
        worker_id: str,
        execution_id: str,
        trigger: ExecutionTrigger,
        graph: WorkerGraph,
        environment: ExecutionEnvironment | None = None,
    ) -> tuple[WorkerExecutionLog, WorkerExecutionSnapshot]:
        """Resolve the snapshot and create the execution log row."""
        snapshot = await self.get_or_create_snapshot(worker_id, graph)
        now = _now()

        metadata: dict[str, Any] = {"trigger": trigger.model_dump(by_alias=True)}
        if environment is not None:
            # Variable values are secrets; only their names are kept
            env = environment.model_dump(by_alias=True, exclude={"variables"})
            env["variableNames"] = sorted(environment.variables)
            metadata["environment"] = env

        log = WorkerExecutionLog(
            id=str(uuid.uuid4()),
            worker_id=worker_id,
            execution_id=execution_id,
            state_snapshot_id=snapshot.id,
            trigger=trigger.type,
            started_at=trigger.timestamp or now,
            message=f"{trigger.type.capitalize()} execution started",
            metadata=metadata,
            created_at=now,
        )
        try:
            await execution_log_store.insert_execution_log(log)
        except aiosqlite.Error as e:
            logger.error(f"[{execution_id[:8]}] Failed to write execution log: {e}")
            raise StorageError(
                f"Failed to write execution log {execution_id}", code=EXECUTION_LOG_WRITE_FAILED
            ) from e

        logger.info(
            f"[{execution_id[:8]}] Started execution of worker {worker_id} "
            f"(snapshot {snapshot.id})"
        )
        return log, snapshot

    async def log_block_execution(
        self, worker_id: str, execution_id: str, block: BlockLog
    ) -> BlockExecutionLog:
        """Append one block log with truncated payloads and its cost."""
        status = block.effective_status
        metadata: dict[str, Any] = {}
        if block.tool_calls:
            metadata["toolCalls"] = [call.model_dump(by_alias=True) for call in block.tool_calls]
        if block.iteration_index is not None:
            metadata["iterationIndex"] = block.iteration_index
        if block.parent_block_id:
            metadata["parentBlockId"] = block.parent_block_id

        record = BlockExecutionLog(
            id=str(uuid.uuid4()),
            execution_id=execution_id,
            worker_id=worker_id,
            block_id=block.block_id,
            block_name=block.block_name,
            block_type=block.block_type,
            started_at=block.started_at,
            ended_at=block.ended_at,
            duration_ms=max(block.duration_ms, 0),
            status=status,
            error_message=block.error if status == "error" else None,
            input_data=truncate_payload(block.input),
            output_data=truncate_payload(block.output),
            cost=extract_block_cost(block),
            metadata=metadata,
            created_at=_now(),
        )
        try:
            await execution_log_store.insert_block_log(record)
        except aiosqlite.Error as e:
            logger.error(
                f"[{execution_id[:8]}] Failed to write block log for {block.block_id}: {e}"
            )
            raise StorageError(
                f"Failed to write block log for {block.block_id}", code=BLOCK_LOG_WRITE_FAILED
            ) from e
        return record

    async def complete_execution(
        self,
        execution_id: str,
        ended_at: str,
        total_duration_ms: float,
        final_output: Any = None,
        trace_spans: list[TraceSpan] | None = None,
        error: str | None = None,
    ) -> WorkerExecutionLog:
        """Compute aggregates from all block logs and close the execution log."""
        log = await execution_log_store.get_execution_log(execution_id)
        if log is None:
            raise StorageError(
                f"Execution log {execution_id} not found", code=EXECUTION_LOG_WRITE_FAILED
            )

        block_logs = await execution_log_store.list_block_logs(execution_id)
        totals = aggregate_block_logs(block_logs)

        metadata = dict(log.metadata)
        metadata["traceSpans"] = [
            span.model_dump(by_alias=True, exclude_none=True) for span in trace_spans or []
        ]
        metadata["finalOutput"] = truncate_payload(final_output)
        if error:
            metadata["error"] = {"message": error}

        failed = bool(error) or totals["error_count"] > 0
        if error:
            message = f"Execution failed: {error}"
        elif failed:
            message = f"Execution completed with {totals['error_count']} block error(s)"
        else:
            message = "Execution completed successfully"

        completed = log.model_copy(
            update={
                **totals,
                "level": "error" if failed else "info",
                "message": message,
                "ended_at": ended_at,
                "total_duration_ms": max(total_duration_ms, 0),
                "metadata": metadata,
            }
        )
        try:
            await execution_log_store.update_execution_log(completed)
        except aiosqlite.Error as e:
            logger.error(f"[{execution_id[:8]}] Failed to complete execution log: {e}")
            raise StorageError(
                f"Failed to complete execution log {execution_id}",
                code=EXECUTION_LOG_WRITE_FAILED,
            ) from e

        logger.info(
            f"[{execution_id[:8]}] Completed execution: {totals['block_count']} blocks, "
            f"cost ${totals['total_cost']:.6f}, {totals['total_tokens']} tokens"
        )
        return completed

    # ==================== Convenience entry points ====================

    async def persist_execution_logs(
        self,
        worker_id: str,
        execution_id: str,
        result: ExecutionResult,
        trigger_type: TriggerType,
        graph: WorkerGraph,
        environment: ExecutionEnvironment | None = None,
    ) -> WorkerExecutionLog:
        """Record a finished execution: snapshot, block logs, aggregates, spans."""
        trace_spans, total_duration = build_trace_spans(result)
        started_at = trace_spans[0].start_time if trace_spans else _now()
        ended_at = trace_spans[0].end_time if trace_spans else started_at

        trigger = ExecutionTrigger(
            type=trigger_type,
            source=trigger_type,
            data=result.metadata or None,
            timestamp=started_at,
        )
        await self.start_execution(worker_id, execution_id, trigger, graph, environment)

        for block in result.logs:
            await self.log_block_execution(worker_id, execution_id, block)

        return await self.complete_execution(
            execution_id=execution_id,
            ended_at=ended_at,
            total_duration_ms=total_duration,
            final_output=result.output,
            trace_spans=trace_spans,
            error=None if result.success else result.error or "Execution failed",
        )

    async def persist_execution_error(
        self,
        worker_id: str,
        execution_id: str,
        error_message: str,
        trigger_type: TriggerType,
        graph: WorkerGraph,
    ) -> WorkerExecutionLog:
        """Record an execution that failed before producing block logs."""
        now = _now()
        trigger = ExecutionTrigger(type=trigger_type, source=trigger_type, timestamp=now)
        await self.start_execution(worker_id, execution_id, trigger, graph)
        return await self.complete_execution(
            execution_id=execution_id,
            ended_at=now,
            total_duration_ms=0,
            error=error_message,
        )

    # ==================== Reads ====================

    async def get_execution_detail(self, execution_id: str) -> ExecutionDetail | None:
        """The execution log with its block logs, or None."""
        # Both reads see the same committed state
        async with consistent_read():
            log = await execution_log_store.get_execution_log(execution_id)
            if log is None:
                return None
            block_logs = await execution_log_store.list_block_logs(execution_id)
        return ExecutionDetail(log=log, block_executions=block_logs)


# Global instance
execution_logger = ExecutionLogger()
