"""Task queue consumer.

Drains ``task_queue`` in batches. Every message is handled independently:
validate the payload, resolve task and worker, execute, record the outcome
on the task, and delete the message. Once a task is IN_PROGRESS every
execution error, expected or not, is recorded on the task and the message is
deleted. Only errors before that point (reading the task or worker) leave the
message in place so it is redelivered once its lease expires.
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone

from pydantic import ValidationError as PydanticValidationError

from app.db import task_store
from app.db.graph_store import GraphStore, graph_store
from app.db.task_queue import TASK_QUEUE, TaskQueue
from app.errors import ExecutionFailure
from app.models import (
    ActionType,
    ActorType,
    ExecutionResult,
    QueueMessage,
    Task,
    TaskProcessingSummary,
    TaskQueueMessage,
    TaskStatus,
    Worker,
)
from app.services.execution_logger import extract_block_cost
from app.services.report_generator import ReportGenerator, failure_report
from app.services.worker_executor import WorkerExecutionService

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
VISIBILITY_TIMEOUT = 60  # seconds


class TaskQueueConsumer:
    """Competing consumer for ``task_queue`` with at-least-once delivery."""

    def __init__(
        self,
        queue: TaskQueue,
        execution_service: WorkerExecutionService,
        report_generator: ReportGenerator,
        store: GraphStore = graph_store,
        batch_size: int | None = None,
        visibility_timeout: int | None = None,
        queue_name: str = TASK_QUEUE,
    ):
        self.queue = queue
        self.execution_service = execution_service
        self.report_generator = report_generator
        self.store = store
        self.batch_size = batch_size or int(os.getenv("TASK_QUEUE_BATCH_SIZE", BATCH_SIZE))
        self.visibility_timeout = (
            visibility_timeout
            if visibility_timeout is not None
            else int(os.getenv("TASK_QUEUE_VISIBILITY_TIMEOUT", VISIBILITY_TIMEOUT))
        )
        self.queue_name = queue_name

    async def process_batch(self) -> TaskProcessingSummary:
        """Lease one batch and handle its messages concurrently.

        Errors reading the queue propagate to the caller.
        """
        logger.info("Checking for tasks in queue...")
        messages = await self.queue.read(self.queue_name, self.visibility_timeout, self.batch_size)

        if not messages:
            logger.info("No tasks to process.")
            return TaskProcessingSummary(message="No tasks to process.", processed=0)

        logger.info(f"Processing {len(messages)} tasks.")
        await asyncio.gather(*(self.handle_message(message) for message in messages))
        return TaskProcessingSummary(
            message=f"Processed {len(messages)} tasks.", processed=len(messages)
        )

    async def handle_message(self, raw: QueueMessage) -> None:
        """Handle one leased message end to end."""
        request_id = uuid.uuid4().hex[:8]

        try:
            parsed = TaskQueueMessage.model_validate({"msg_id": raw.msg_id, "message": raw.message})
        except PydanticValidationError as e:
            logger.error(
                f"[{request_id}] Invalid message format for msg_id: {raw.msg_id}: "
                f"{e.error_count()} validation error(s)"
            )
            # Poison message: never retried
            await self.queue.delete(self.queue_name, raw.msg_id)
            return

        try:
            await self._process(parsed, request_id)
        except Exception:
            # Left on the queue; redelivered when the lease expires
            logger.exception(f"[{request_id}] Error processing message {raw.msg_id}")

    async def _process(self, msg: TaskQueueMessage, request_id: str) -> None:
        task_id = msg.message.taskId

        task = await task_store.get_task(task_id)
        if task is None:
            logger.error(f"[{request_id}] Task not found: {task_id}, for msg_id: {msg.msg_id}")
            await self.queue.delete(self.queue_name, msg.msg_id)
            return

        if not task.assignee_id:
            logger.error(
                f"[{request_id}] Task {task_id} has no assignee (worker), for msg_id: {msg.msg_id}"
            )
            await self.queue.delete(self.queue_name, msg.msg_id)
            return

        worker = await self.store.get_worker(task.assignee_id)
        if worker is None:
            logger.error(
                f"[{request_id}] Worker not found: {task.assignee_id}, for msg_id: {msg.msg_id}"
            )
            await self.queue.delete(self.queue_name, msg.msg_id)
            return

        logger.info(f"[{request_id}] Executing worker {worker.id} for task {task_id}")
        await task_store.set_task_status(task_id, TaskStatus.IN_PROGRESS)
        await task_store.add_task_activity(
            task_id, ActionType.TASK_EXECUTED, worker.id, ActorType.SYSTEM
        )

        worker_input = {
            "task": {"id": task.id, "title": task.title, "description": task.description or ""}
        }
        try:
            result = await self.execution_service.execute_worker(
                worker, request_id, worker_input, task.id
            )
            if not result.success:
                raise ExecutionFailure(result.error or "Worker execution failed")
        except ExecutionFailure as e:
            logger.error(f"[{request_id}] Worker execution failed: {e.message}")
            await self._fail_task(task, worker, e.message)
        except Exception as e:
            # The task is IN_PROGRESS now; redelivery would run the worker again
            logger.exception(f"[{request_id}] Unexpected error executing worker {worker.id}")
            await self._fail_task(task, worker, f"Unexpected execution error: {e}")
        else:
            logger.info(f"[{request_id}] Worker execution successful.")
            try:
                await self._complete_task(task, worker, result, request_id)
            except Exception as e:
                logger.exception(f"[{request_id}] Failed to record result of task {task.id}")
                await self._fail_task(task, worker, f"Failed to record execution result: {e}")

        logger.info(f"[{request_id}] Task processing finished. Deleting message from queue.")
        await self.queue.delete(self.queue_name, msg.msg_id)

    async def _complete_task(
        self, task: Task, worker: Worker, result: ExecutionResult, request_id: str
    ) -> None:
        block_outputs = [log.output for log in result.logs if log.output]
        logger.info(
            f"[{request_id}] Generating task report from {len(block_outputs)} block outputs"
        )
        report = await self.report_generator.generate(task, block_outputs, request_id)

        execution_cost = sum(
            cost.total for cost in (extract_block_cost(log) for log in result.logs) if cost
        )
        total_cost = {
            "workerExecution": execution_cost,
            "reportGeneration": report.cost,
            "total": execution_cost + report.cost,
        }

        raw_result = result.model_dump(by_alias=True, mode="json")
        raw_result["reportGeneration"] = {
            "cost": report.cost,
            "tokens": report.tokens.model_dump(),
            "model": report.model,
        }
        raw_result["totalCost"] = total_cost

        await task_store.save_task_result(
            task.id, TaskStatus.WORK_COMPLETE, raw_result, report.report
        )
        await task_store.add_task_activity(
            task.id, ActionType.TASK_COMPLETED, worker.id, ActorType.SYSTEM
        )
        logger.info(
            f"[{request_id}] Task {task.id} completed, total cost ${total_cost['total']:.6f}"
        )

    async def _fail_task(self, task: Task, worker: Worker, error_message: str) -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        raw_result = {
            "error": error_message,
            "timestamp": timestamp,
            "totalCost": {"workerExecution": 0, "reportGeneration": 0, "total": 0},
        }
        await task_store.save_task_result(
            task.id,
            TaskStatus.ERROR,
            raw_result,
            failure_report(task, error_message, timestamp),
        )
        await task_store.add_task_activity(
            task.id, ActionType.TASK_FAILED, worker.id, ActorType.SYSTEM
        )
