"""Pydantic models for the worker orchestration core."""

from app.models.execution_log import (
    BlockExecutionLog,
    BlockLog,
    CostBreakdown,
    ExecutionDetail,
    ExecutionEnvironment,
    ExecutionResult,
    ExecutionTrigger,
    PricingInfo,
    TokenUsage,
    ToolCall,
    TraceSpan,
    WorkerExecutionLog,
    WorkerExecutionSnapshot,
)
from app.models.schedule import (
    ScheduleDispatchResult,
    ScheduleRequest,
    ScheduleStatus,
    ScheduleSyncResult,
    ScheduleTimeValues,
    ScheduleType,
    ScheduleUpdateRequest,
    WorkerSchedule,
)
from app.models.task import (
    ActionType,
    ActorType,
    QueueMessage,
    Task,
    TaskActivity,
    TaskCreate,
    TaskProcessingSummary,
    TaskQueueMessage,
    TaskQueuePayload,
    TaskStatus,
)
from app.models.worker import (
    BlockState,
    DeploymentInfo,
    LoopConfig,
    ParallelConfig,
    Position,
    SaveGraphResult,
    SubBlockState,
    SubflowConfig,
    SubflowType,
    Worker,
    WorkerCreate,
    WorkerEdge,
    WorkerGraph,
    WorkerUpdate,
)

__all__ = [
    # Workers and graphs
    "Worker",
    "WorkerCreate",
    "WorkerUpdate",
    "WorkerGraph",
    "BlockState",
    "SubBlockState",
    "Position",
    "WorkerEdge",
    "LoopConfig",
    "ParallelConfig",
    "SubflowConfig",
    "SubflowType",
    "SaveGraphResult",
    "DeploymentInfo",
    # Schedules
    "ScheduleType",
    "ScheduleStatus",
    "ScheduleTimeValues",
    "WorkerSchedule",
    "ScheduleRequest",
    "ScheduleUpdateRequest",
    "ScheduleSyncResult",
    "ScheduleDispatchResult",
    # Tasks and queue
    "Task",
    "TaskCreate",
    "TaskStatus",
    "TaskActivity",
    "ActionType",
    "ActorType",
    "QueueMessage",
    "TaskQueueMessage",
    "TaskQueuePayload",
    "TaskProcessingSummary",
    # Execution logging
    "BlockLog",
    "ExecutionResult",
    "ExecutionTrigger",
    "ExecutionEnvironment",
    "CostBreakdown",
    "TokenUsage",
    "PricingInfo",
    "ToolCall",
    "TraceSpan",
    "WorkerExecutionSnapshot",
    "WorkerExecutionLog",
    "BlockExecutionLog",
    "ExecutionDetail",
]
