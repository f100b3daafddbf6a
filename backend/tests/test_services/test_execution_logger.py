"""Tests for snapshots, execution logs, cost aggregation and trace spans."""

import pytest

from app.db import execution_log_store
from app.models import ExecutionEnvironment, ExecutionResult, Position, ToolCall
from app.services.execution_logger import (
    MAX_PAYLOAD_CHARS,
    compute_state_hash,
    execution_logger,
    extract_block_cost,
    truncate_payload,
)
from app.services.trace_spans import build_trace_spans
from tests.conftest import block_log, simple_graph, successful_result


class TestStateHash:
    """Tests for content hashing of graphs."""

    def test_stable(self):
        assert compute_state_hash(simple_graph()) == compute_state_hash(simple_graph())

    def test_ignores_position(self):
        moved = simple_graph()
        moved.blocks["agent-1"].position = Position(x=999, y=-5)
        moved.blocks["agent-1"].is_wide = True

        assert compute_state_hash(moved) == compute_state_hash(simple_graph())

    def test_ignores_container_dimensions(self):
        resized = simple_graph()
        resized.blocks["agent-1"].data = {"width": 800, "height": 400}

        assert compute_state_hash(resized) == compute_state_hash(simple_graph())

    def test_changes_with_content(self):
        assert compute_state_hash(simple_graph("Other prompt")) != compute_state_hash(
            simple_graph()
        )


class TestPayloadHelpers:
    """Tests for truncation and cost extraction."""

    def test_small_payload_kept(self):
        assert truncate_payload({"a": 1}) == {"a": 1}

    def test_large_payload_truncated(self):
        payload = {"text": "x" * (MAX_PAYLOAD_CHARS + 100)}

        truncated = truncate_payload(payload)

        assert truncated["truncated"] is True
        assert truncated["originalSize"] > MAX_PAYLOAD_CHARS
        assert len(truncated["preview"]) == MAX_PAYLOAD_CHARS

    def test_extract_cost(self):
        cost = extract_block_cost(block_log("a", cost=0.04, tokens=80))

        assert cost.total == pytest.approx(0.04)
        assert cost.input == pytest.approx(0.02)
        assert cost.tokens.total == 80
        assert cost.model == "gemini-2.5-flash"

    def test_extract_cost_absent(self):
        assert extract_block_cost(block_log("a")) is None

    def test_extract_cost_non_numeric_counts_as_zero(self):
        log = block_log("a")
        log.output["cost"] = {"input": "n/a", "total": None, "tokens": {"total": "many"}}

        cost = extract_block_cost(log)

        assert cost.total == 0
        assert cost.input == 0
        assert cost.tokens.total == 0


class TestSnapshots:
    """Tests for content-addressed snapshot storage."""

    @pytest.mark.asyncio
    async def test_same_content_reuses_snapshot(self, worker):
        first = await execution_logger.get_or_create_snapshot(worker.id, simple_graph())
        moved = simple_graph()
        moved.blocks["agent-1"].position = Position(x=1, y=1)
        second = await execution_logger.get_or_create_snapshot(worker.id, moved)

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_changed_content_gets_new_snapshot(self, worker):
        first = await execution_logger.get_or_create_snapshot(worker.id, simple_graph())
        second = await execution_logger.get_or_create_snapshot(worker.id, simple_graph("New"))

        assert first.id != second.id
        assert second.state_hash == compute_state_hash(simple_graph("New"))

    @pytest.mark.asyncio
    async def test_changed_block_data_gets_new_snapshot(self, worker):
        first = await execution_logger.get_or_create_snapshot(worker.id, simple_graph())
        edited = simple_graph()
        edited.blocks["agent-1"].data = {"foo": 1}
        second = await execution_logger.get_or_create_snapshot(worker.id, edited)

        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_snapshot_keeps_full_graph(self, worker):
        snapshot = await execution_logger.get_or_create_snapshot(worker.id, simple_graph())

        stored = await execution_log_store.get_snapshot(snapshot.id)

        assert stored.state_data["blocks"]["agent-1"]["position"] == {"x": 300.5, "y": 120.25}


class TestPersistExecutionLogs:
    """Tests for recording a finished execution."""

    @pytest.mark.asyncio
    async def test_aggregates_block_costs(self, worker):
        log = await execution_logger.persist_execution_logs(
            worker.id, "exec-1", successful_result(), "api", simple_graph()
        )

        assert log.block_count == 2
        assert log.success_count == 2
        assert log.error_count == 0
        block_logs = await execution_log_store.list_block_logs("exec-1")
        assert log.total_cost == pytest.approx(
            sum(b.cost.total for b in block_logs if b.cost)
        )
        assert log.total_cost == pytest.approx(0.03)
        assert log.total_input_cost + log.total_output_cost == pytest.approx(log.total_cost)
        assert log.total_tokens == 300
        assert log.primary_model == "gemini-2.5-flash"
        assert log.level == "info"

    @pytest.mark.asyncio
    async def test_block_logs_stored(self, worker):
        await execution_logger.persist_execution_logs(
            worker.id, "exec-1", successful_result(), "api", simple_graph()
        )

        detail = await execution_logger.get_execution_detail("exec-1")

        assert [b.block_id for b in detail.block_executions] == ["agent-1", "agent-2"]
        assert detail.block_executions[1].cost.total == pytest.approx(0.02)
        assert detail.log.metadata["traceSpans"][0]["id"] == "worker-execution"

    @pytest.mark.asyncio
    async def test_primary_model_is_most_expensive(self, worker):
        result = ExecutionResult(
            success=True,
            logs=[
                block_log("a", cost=0.01, model="gemini-2.5-flash"),
                block_log("b", cost=0.01, model="gemini-2.5-flash"),
                block_log("c", cost=0.05, model="gemini-2.5-pro"),
            ],
        )

        log = await execution_logger.persist_execution_logs(
            worker.id, "exec-1", result, "api", simple_graph()
        )

        assert log.primary_model == "gemini-2.5-pro"

    @pytest.mark.asyncio
    async def test_block_error_marks_execution_error(self, worker):
        result = ExecutionResult(
            success=True,
            logs=[block_log("a", cost=0.01), block_log("b", status="error", error="boom")],
        )

        log = await execution_logger.persist_execution_logs(
            worker.id, "exec-1", result, "api", simple_graph()
        )

        assert log.level == "error"
        assert log.error_count == 1
        detail = await execution_logger.get_execution_detail("exec-1")
        assert detail.block_executions[1].error_message == "boom"

    @pytest.mark.asyncio
    async def test_secrets_not_stored(self, worker):
        environment = ExecutionEnvironment(
            worker_id=worker.id,
            execution_id="exec-1",
            variables={"API_KEY": "sk-secret"},
        )

        log = await execution_logger.persist_execution_logs(
            worker.id, "exec-1", successful_result(), "api", simple_graph(), environment
        )

        assert log.metadata["environment"]["variableNames"] == ["API_KEY"]
        assert "sk-secret" not in str(log.metadata)

    @pytest.mark.asyncio
    async def test_execution_error(self, worker):
        log = await execution_logger.persist_execution_error(
            worker.id, "exec-1", "executor unreachable", "schedule", simple_graph()
        )

        assert log.level == "error"
        assert log.block_count == 0
        assert log.metadata["error"] == {"message": "executor unreachable"}

    @pytest.mark.asyncio
    async def test_list_newest_first(self, worker):
        await execution_logger.persist_execution_error(
            worker.id, "exec-1", "first", "api", simple_graph()
        )
        await execution_logger.persist_execution_error(
            worker.id, "exec-2", "second", "api", simple_graph()
        )

        logs = await execution_log_store.list_execution_logs(worker.id)

        assert [log.execution_id for log in logs] == ["exec-2", "exec-1"]


class TestTraceSpans:
    """Tests for building span trees from block logs."""

    def test_root_span(self):
        spans, total = build_trace_spans(successful_result())

        assert total == 3000
        root = spans[0]
        assert root.name == "Worker Execution"
        assert root.tokens == 300
        assert [child.block_id for child in root.children] == ["agent-1", "agent-2"]
        assert root.children[1].relative_start_ms == 1000

    def test_empty(self):
        assert build_trace_spans(ExecutionResult(success=True)) == ([], 0.0)

    def test_iterations_nest_under_parent(self):
        result = ExecutionResult(
            success=True,
            logs=[
                block_log("loop-1"),
                block_log(
                    "inner",
                    parent_block_id="loop-1",
                    iteration_index=0,
                    started_at="2024-01-01T00:00:00.500000+00:00",
                ),
            ],
        )

        spans, _ = build_trace_spans(result)

        loop_span = spans[0].children[0]
        assert loop_span.block_id == "loop-1"
        assert [c.block_id for c in loop_span.children] == ["inner"]

    def test_skipped_block_has_no_status(self):
        result = ExecutionResult(success=True, logs=[block_log("a", status="skipped")])

        spans, _ = build_trace_spans(result)

        assert spans[0].children[0].status is None

    def test_tool_calls_carried(self):
        call = ToolCall(name="search", duration=12)
        result = ExecutionResult(success=True, logs=[block_log("a", tool_calls=[call])])

        spans, _ = build_trace_spans(result)

        assert spans[0].children[0].tool_calls[0].name == "search"
