"""Services for the worker orchestration core."""

from app.services.deployment_detector import (
    DeploymentChangeDetector,
    DeploymentStatusRegistry,
    HttpDeploymentChecker,
    LocalDeploymentChecker,
)
from app.services.execution_logger import ExecutionLogger, compute_state_hash, execution_logger
from app.services.queue_consumer import TaskQueueConsumer
from app.services.report_generator import ReportGenerator
from app.services.schedule_dispatcher import ScheduleDispatcher
from app.services.trace_spans import build_trace_spans
from app.services.worker_executor import (
    HttpWorkerExecutor,
    WorkerExecutionService,
    WorkerExecutor,
)

__all__ = [
    "DeploymentChangeDetector",
    "DeploymentStatusRegistry",
    "LocalDeploymentChecker",
    "HttpDeploymentChecker",
    "ExecutionLogger",
    "execution_logger",
    "compute_state_hash",
    "build_trace_spans",
    "TaskQueueConsumer",
    "ReportGenerator",
    "ScheduleDispatcher",
    "WorkerExecutor",
    "HttpWorkerExecutor",
    "WorkerExecutionService",
]
