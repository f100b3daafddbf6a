"""Pydantic models for executor results and the execution logging pipeline."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField

TriggerType = Literal["api", "webhook", "schedule", "manual", "chat"]
BlockStatus = Literal["success", "error", "skipped"]

# =============================================================================
# Cost accounting
# =============================================================================


class TokenUsage(BaseModel):
    """Token counts for one model call."""

    prompt: int = 0
    completion: int = 0
    total: int = 0


class PricingInfo(BaseModel):
    """Per-million-token prices used to derive a cost."""

    input: float = 0
    output: float = 0
    cached_input: float | None = PydanticField(default=None, alias="cachedInput")
    updated_at: str | None = PydanticField(default=None, alias="updatedAt")

    model_config = {"populate_by_name": True}


class CostBreakdown(BaseModel):
    """Cost of a single block execution."""

    input: float = 0
    output: float = 0
    total: float = 0
    tokens: TokenUsage = PydanticField(default_factory=TokenUsage)
    model: str | None = None
    pricing: PricingInfo | None = None


class ToolCall(BaseModel):
    """A tool invocation made from inside a block."""

    name: str
    duration: float = 0
    start_time: str | None = PydanticField(default=None, alias="startTime")
    end_time: str | None = PydanticField(default=None, alias="endTime")
    status: Literal["success", "error"] = "success"
    input: dict[str, Any] = PydanticField(default_factory=dict)
    output: dict[str, Any] = PydanticField(default_factory=dict)
    error: str | None = None

    model_config = {"populate_by_name": True}


# =============================================================================
# Executor contract
# =============================================================================


class BlockLog(BaseModel):
    """Per-block record reported by the executor."""

    block_id: str = PydanticField(alias="blockId")
    block_name: str | None = PydanticField(default=None, alias="blockName")
    block_type: str | None = PydanticField(default=None, alias="blockType")
    started_at: str = PydanticField(alias="startedAt")
    ended_at: str = PydanticField(alias="endedAt")
    duration_ms: float = PydanticField(default=0, alias="durationMs")
    success: bool = True
    status: BlockStatus | None = None
    input: dict[str, Any] | None = None
    output: Any = None
    error: str | None = None
    tool_calls: list[ToolCall] = PydanticField(default_factory=list, alias="toolCalls")
    iteration_index: int | None = PydanticField(default=None, alias="iterationIndex")
    parent_block_id: str | None = PydanticField(default=None, alias="parentBlockId")

    model_config = {"populate_by_name": True}

    @property
    def effective_status(self) -> BlockStatus:
        if self.status is not None:
            return self.status
        return "success" if self.success else "error"


class ExecutionResult(BaseModel):
    """What the executor returns for one worker run."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool
    output: Any = None
    error: str | None = None
    logs: list[BlockLog] = PydanticField(default_factory=list)
    metadata: dict[str, Any] = PydanticField(default_factory=dict)


class ExecutionTrigger(BaseModel):
    """What started an execution."""

    type: TriggerType
    source: str
    data: dict[str, Any] | None = None
    timestamp: str


class ExecutionEnvironment(BaseModel):
    """Context captured alongside an execution log."""

    worker_id: str = PydanticField(alias="workerId")
    execution_id: str = PydanticField(alias="executionId")
    user_id: str | None = PydanticField(default=None, alias="userId")
    workspace_id: str | None = PydanticField(default=None, alias="workspaceId")
    variables: dict[str, str] = PydanticField(default_factory=dict)

    model_config = {"populate_by_name": True}


# =============================================================================
# Persisted records
# =============================================================================


class TraceSpan(BaseModel):
    """A named, timed, nestable segment of an execution."""

    id: str
    name: str
    type: str
    duration: float
    start_time: str = PydanticField(alias="startTime")
    end_time: str = PydanticField(alias="endTime")
    children: list["TraceSpan"] = PydanticField(default_factory=list)
    tool_calls: list[ToolCall] = PydanticField(default_factory=list, alias="toolCalls")
    status: Literal["success", "error"] | None = None
    tokens: int | None = None
    relative_start_ms: float | None = PydanticField(default=None, alias="relativeStartMs")
    block_id: str | None = PydanticField(default=None, alias="blockId")
    input: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


TraceSpan.model_rebuild()


class WorkerExecutionSnapshot(BaseModel):
    """Immutable, content-addressed copy of a worker graph."""

    id: str
    worker_id: str = PydanticField(alias="workerId")
    state_hash: str = PydanticField(alias="stateHash")
    state_data: dict[str, Any] = PydanticField(alias="stateData")
    created_at: str = PydanticField(alias="createdAt")

    model_config = {"populate_by_name": True}


class WorkerExecutionLog(BaseModel):
    """One row per execution, referencing the graph snapshot it ran."""

    id: str
    worker_id: str = PydanticField(alias="workerId")
    execution_id: str = PydanticField(alias="executionId")
    state_snapshot_id: str = PydanticField(alias="stateSnapshotId")
    level: Literal["info", "error"] = "info"
    message: str = ""
    trigger: TriggerType
    started_at: str = PydanticField(alias="startedAt")
    ended_at: str | None = PydanticField(default=None, alias="endedAt")
    total_duration_ms: float = PydanticField(default=0, alias="totalDurationMs")
    block_count: int = PydanticField(default=0, alias="blockCount")
    success_count: int = PydanticField(default=0, alias="successCount")
    error_count: int = PydanticField(default=0, alias="errorCount")
    skipped_count: int = PydanticField(default=0, alias="skippedCount")
    total_cost: float = PydanticField(default=0, alias="totalCost")
    total_input_cost: float = PydanticField(default=0, alias="totalInputCost")
    total_output_cost: float = PydanticField(default=0, alias="totalOutputCost")
    total_tokens: int = PydanticField(default=0, alias="totalTokens")
    primary_model: str | None = PydanticField(default=None, alias="primaryModel")
    metadata: dict[str, Any] = PydanticField(default_factory=dict)
    created_at: str = PydanticField(alias="createdAt")

    model_config = {"populate_by_name": True}


class BlockExecutionLog(BaseModel):
    """Persisted record of one block run."""

    id: str
    execution_id: str = PydanticField(alias="executionId")
    worker_id: str = PydanticField(alias="workerId")
    block_id: str = PydanticField(alias="blockId")
    block_name: str | None = PydanticField(default=None, alias="blockName")
    block_type: str | None = PydanticField(default=None, alias="blockType")
    started_at: str = PydanticField(alias="startedAt")
    ended_at: str = PydanticField(alias="endedAt")
    duration_ms: float = PydanticField(default=0, ge=0, alias="durationMs")
    status: BlockStatus
    error_message: str | None = PydanticField(default=None, alias="errorMessage")
    error_stack_trace: str | None = PydanticField(default=None, alias="errorStackTrace")
    input_data: Any = PydanticField(default=None, alias="inputData")
    output_data: Any = PydanticField(default=None, alias="outputData")
    cost: CostBreakdown | None = None
    metadata: dict[str, Any] = PydanticField(default_factory=dict)
    created_at: str = PydanticField(alias="createdAt")

    model_config = {"populate_by_name": True}


class ExecutionDetail(BaseModel):
    """An execution log together with its block logs."""

    log: WorkerExecutionLog
    block_executions: list[BlockExecutionLog] = PydanticField(
        default_factory=list, alias="blockExecutions"
    )

    model_config = {"populate_by_name": True}
