"""Worker execution: graph resolution, secret substitution and the executor call.

The block-execution algorithm itself lives in an external executor service.
This module decides *which* graph to run, fills in the owner's environment
variables, guards against overlapping runs of the same worker, and records
the outcome through the execution logger.
"""

import json
import logging
import os
import re
import uuid
from typing import Any, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from app.db import environment_store, execution_log_store
from app.db.graph_store import GraphStore, graph_store
from app.db.secrets import SecretsError
from app.errors import ExecutionFailure
from app.models import ExecutionEnvironment, ExecutionResult, Worker, WorkerGraph
from app.models.execution_log import TriggerType
from app.services.execution_logger import ExecutionLogger, execution_logger

logger = logging.getLogger(__name__)

ENV_VAR_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

TASK_PROMPT_TEMPLATE = """
You are a helpful assistant.
You are given a task with a user input.
You need to complete the task based on the user input. The user input is:
{input}
"""


class WorkerExecutor(Protocol):
    """Narrow contract of the external executor."""

    async def execute(
        self,
        worker_definition: dict[str, Any],
        request_id: str,
        input: Any = None,
        task_id: str | None = None,
    ) -> ExecutionResult: ...


class HttpWorkerExecutor:
    """Executor reached over HTTP at ``EXECUTOR_URL``."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or os.getenv("EXECUTOR_URL", "http://localhost:3001")).rstrip("/")
        self.timeout = timeout or float(os.getenv("EXECUTOR_TIMEOUT", "300"))
        self._transport = transport

    async def execute(
        self,
        worker_definition: dict[str, Any],
        request_id: str,
        input: Any = None,
        task_id: str | None = None,
    ) -> ExecutionResult:
        payload = {
            "worker": worker_definition,
            "requestId": request_id,
            "input": input,
            "taskId": task_id,
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post("/execute", json=payload)
                response.raise_for_status()
                return ExecutionResult.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            raise ExecutionFailure(
                f"Executor returned {e.response.status_code}: {e.response.text[:500]}"
            ) from e
        except httpx.HTTPError as e:
            raise ExecutionFailure(f"Executor request failed: {e}") from e
        except (PydanticValidationError, json.JSONDecodeError) as e:
            raise ExecutionFailure(f"Executor returned an invalid result: {e}") from e


def substitute_env_vars(graph: WorkerGraph, variables: dict[str, str]) -> WorkerGraph:
    """Replace ``{{NAME}}`` references in string sub-block values.

    Raises:
        ExecutionFailure: If a referenced variable is not defined
    """
    resolved = graph.model_copy(deep=True)

    def _replace(match: re.Match) -> str:
        name = match.group(1).strip()
        if name not in variables:
            raise ExecutionFailure(f'Environment variable "{name}" was not found')
        return variables[name]

    for block in resolved.blocks.values():
        for sub_block in block.sub_blocks.values():
            if isinstance(sub_block.value, str) and "{{" in sub_block.value:
                sub_block.value = ENV_VAR_PATTERN.sub(_replace, sub_block.value)
    return resolved


def build_worker_input(input: Any) -> Any:
    """Wrap structured input in the prompt template the starter block expects."""
    if isinstance(input, dict) and input:
        return TASK_PROMPT_TEMPLATE.format(input=json.dumps(input))
    return input


class WorkerExecutionService:
    """Runs workers through an executor and records the results."""

    def __init__(
        self,
        executor: WorkerExecutor,
        store: GraphStore = graph_store,
        exec_logger: ExecutionLogger = execution_logger,
    ):
        self.executor = executor
        self.store = store
        self.exec_logger = exec_logger
        self._running: set[str] = set()

    def is_running(self, worker_id: str) -> bool:
        return worker_id in self._running

    async def resolve_graph(self, worker: Worker, request_id: str = "") -> WorkerGraph:
        """The deployed snapshot if there is one, else the live graph."""
        if worker.deployed_snapshot_id:
            snapshot = await execution_log_store.get_snapshot(worker.deployed_snapshot_id)
            if snapshot is not None:
                logger.info(f"[{request_id}] Using deployed state for worker {worker.id}")
                return WorkerGraph.model_validate(snapshot.state_data)
            logger.warning(
                f"[{request_id}] Deployed snapshot {worker.deployed_snapshot_id} missing "
                f"for worker {worker.id}, using current state"
            )

        graph = await self.store.load_graph(worker.id)
        if graph is None:
            raise ExecutionFailure(f"No worker data found for worker: {worker.id}")
        return graph

    async def execute_worker(
        self,
        worker: Worker,
        request_id: str,
        input: Any = None,
        task_id: str | None = None,
        trigger: TriggerType = "api",
    ) -> ExecutionResult:
        """Execute a worker once.

        Args:
            worker: The worker to run
            request_id: Short ID used to correlate log lines
            input: Input handed to the starter block
            task_id: Task this execution works on, if any
            trigger: What started the execution

        Returns:
            The executor's result; ``metadata["executionId"]`` identifies the logs

        Raises:
            ExecutionFailure: If the worker is already running, its graph or
                environment cannot be resolved, or the executor fails
        """
        if worker.id in self._running:
            logger.warning(f"[{request_id}] Worker is already running: {worker.id}")
            raise ExecutionFailure("Worker is already running")

        self._running.add(worker.id)
        execution_id = str(uuid.uuid4())
        try:
            graph = await self.resolve_graph(worker, request_id)

            try:
                variables = await environment_store.get_environment(worker.user_id)
            except SecretsError as e:
                raise ExecutionFailure(str(e)) from e
            resolved = substitute_env_vars(graph, variables)

            definition = {
                "id": worker.id,
                "name": worker.name,
                "state": resolved.model_dump(by_alias=True, mode="json"),
                "variables": worker.variables,
            }

            logger.info(f"[{request_id}] Starting worker execution: {worker.id}")
            try:
                result = await self.executor.execute(
                    definition, request_id, build_worker_input(input), task_id
                )
            except ExecutionFailure as e:
                await self.exec_logger.persist_execution_error(
                    worker.id, execution_id, e.message, trigger, graph
                )
                raise

            logger.info(
                f"[{request_id}] Worker execution finished: {worker.id} "
                f"(success={result.success}, {len(result.logs)} block logs)"
            )

            if result.success:
                await self.store.increment_run_count(worker.id)

            environment = ExecutionEnvironment(
                worker_id=worker.id,
                execution_id=execution_id,
                user_id=worker.user_id,
                workspace_id=worker.workspace_id,
                variables=variables,
            )
            await self.exec_logger.persist_execution_logs(
                worker.id, execution_id, result, trigger, graph, environment
            )

            result.metadata["executionId"] = execution_id
            return result
        finally:
            self._running.discard(worker.id)
