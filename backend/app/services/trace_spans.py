"""Build trace span trees from executor block logs."""

from datetime import datetime

from app.models import BlockLog, ExecutionResult, TraceSpan


def _parse(ts: str) -> datetime:
    return datetime.fromisoformat(ts)


def _block_tokens(block: BlockLog) -> int | None:
    output = block.output if isinstance(block.output, dict) else {}
    tokens = output.get("tokens") or (output.get("cost") or {}).get("tokens")
    if isinstance(tokens, dict):
        total = tokens.get("total")
        return int(total) if total is not None else None
    return None


def build_trace_spans(result: ExecutionResult) -> tuple[list[TraceSpan], float]:
    """Turn an execution's block logs into a span tree.

    Returns a single root "Worker Execution" span whose children are the
    block spans in start order. A block that names a ``parent_block_id``
    (an iteration inside a loop or parallel) nests under the latest span of
    that parent block.

    Returns:
        The list of root spans (empty if there are no logs) and the total
        duration in milliseconds.
    """
    if not result.logs:
        return [], 0.0

    logs = sorted(result.logs, key=lambda log: _parse(log.started_at))
    root_start = _parse(logs[0].started_at)
    root_end = max(_parse(log.ended_at) for log in logs)
    total_duration = max((root_end - root_start).total_seconds() * 1000, 0.0)

    root = TraceSpan(
        id="worker-execution",
        name="Worker Execution",
        type="worker",
        duration=total_duration,
        start_time=logs[0].started_at,
        end_time=root_end.isoformat(),
        status="success" if result.success else "error",
        relative_start_ms=0,
    )

    spans_by_block: dict[str, TraceSpan] = {}
    for index, log in enumerate(logs):
        status = log.effective_status
        span = TraceSpan(
            id=f"{log.block_id}-{index}",
            name=log.block_name or log.block_id,
            type=log.block_type or "block",
            duration=log.duration_ms,
            start_time=log.started_at,
            end_time=log.ended_at,
            tool_calls=log.tool_calls,
            status=None if status == "skipped" else status,
            tokens=_block_tokens(log),
            relative_start_ms=(_parse(log.started_at) - root_start).total_seconds() * 1000,
            block_id=log.block_id,
            input=log.input,
        )

        parent = spans_by_block.get(log.parent_block_id) if log.parent_block_id else None
        (parent or root).children.append(span)
        spans_by_block[log.block_id] = span

    root.tokens = sum(span.tokens or 0 for span in _walk(root.children)) or None
    return [root], total_duration


def _walk(spans: list[TraceSpan]):
    for span in spans:
        yield span
        yield from _walk(span.children)
