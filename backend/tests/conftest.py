"""Pytest configuration and fixtures."""

import asyncio
import os
import tempfile
from typing import Any, AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from app.db.database import close_database, init_database
from app.db.graph_store import graph_store
from app.db.task_queue import task_queue
from app.llm import TextGeneration, TextUsage
from app.main import app
from app.models import (
    BlockLog,
    BlockState,
    ExecutionResult,
    Position,
    SubBlockState,
    Worker,
    WorkerCreate,
    WorkerEdge,
    WorkerGraph,
)
from app.services.deployment_detector import DeploymentStatusRegistry
from app.services.queue_consumer import TaskQueueConsumer
from app.services.report_generator import ReportGenerator
from app.services.schedule_dispatcher import ScheduleDispatcher
from app.services.worker_executor import WorkerExecutionService

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


# =============================================================================
# Fakes
# =============================================================================


def block_log(
    block_id: str,
    cost: float | None = None,
    model: str = "gemini-2.5-flash",
    tokens: int = 0,
    status: str | None = None,
    started_at: str = "2024-01-01T00:00:00+00:00",
    ended_at: str = "2024-01-01T00:00:01+00:00",
    duration_ms: float = 1000,
    **extra: Any,
) -> BlockLog:
    """A block log as the executor would report it."""
    output: dict[str, Any] = {"content": f"output of {block_id}"}
    if cost is not None:
        output["cost"] = {
            "input": cost / 2,
            "output": cost / 2,
            "total": cost,
            "model": model,
            "tokens": {"prompt": tokens // 2, "completion": tokens - tokens // 2, "total": tokens},
        }
        output["tokens"] = {"total": tokens}
    return BlockLog(
        block_id=block_id,
        block_name=block_id.title(),
        block_type="agent",
        started_at=started_at,
        ended_at=ended_at,
        duration_ms=duration_ms,
        success=status != "error",
        status=status,
        output=output,
        **extra,
    )


def successful_result() -> ExecutionResult:
    return ExecutionResult(
        success=True,
        output={"content": "done"},
        logs=[
            block_log("agent-1", cost=0.01, tokens=100),
            block_log(
                "agent-2",
                cost=0.02,
                tokens=200,
                started_at="2024-01-01T00:00:01+00:00",
                ended_at="2024-01-01T00:00:03+00:00",
                duration_ms=2000,
            ),
        ],
    )


class FakeExecutor:
    """Records calls and returns a canned result, an error, or both after a delay."""

    def __init__(
        self,
        result: ExecutionResult | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ):
        self.result = result or successful_result()
        self.error = error
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        worker_definition: dict[str, Any],
        request_id: str,
        input: Any = None,
        task_id: str | None = None,
    ) -> ExecutionResult:
        self.calls.append(
            {"worker": worker_definition, "request_id": request_id, "input": input, "task_id": task_id}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result.model_copy(deep=True)


class FakeTextGenerator:
    """Stands in for the Gemini client."""

    def __init__(self, text: str = "# Report\n\n## TLDR\nAll good.", error: Exception | None = None):
        self.text = text
        self.error = error
        self.prompts: list[str] = []

    async def generate_text(
        self,
        prompt: str,
        model: str = "gemini-2.5-pro",
        system: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> TextGeneration:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return TextGeneration(
            text=self.text,
            model=model,
            usage=TextUsage(prompt_tokens=1000, completion_tokens=500, total_tokens=1500),
            cost=0.005,
        )


# =============================================================================
# Graph helpers
# =============================================================================


def starter_block(**values: Any) -> BlockState:
    """A starter block whose sub-blocks hold ``values``."""
    return BlockState(
        id="starter",
        type="starter",
        name="Start",
        position=Position(x=0, y=0),
        sub_blocks={
            key: SubBlockState(id=key, type="short-input", value=value)
            for key, value in values.items()
        },
    )


def simple_graph(prompt: str = "Summarize the task") -> WorkerGraph:
    """starter -> agent, the smallest graph that does something."""
    agent = BlockState(
        id="agent-1",
        type="agent",
        name="Agent",
        position=Position(x=300.5, y=120.25),
        sub_blocks={"prompt": SubBlockState(id="prompt", type="long-input", value=prompt)},
        outputs={"content": "string"},
    )
    return WorkerGraph(
        blocks={"starter": starter_block(startWorker="manual"), "agent-1": agent},
        edges=[WorkerEdge(id="e1", source="starter", target="agent-1")],
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
async def setup_test_db():
    """Set up a test database for each test."""
    # Create a temporary database file
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    # Initialize the database
    await init_database(db_path)

    yield

    # Clean up
    await close_database()
    os.unlink(db_path)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def text_generator() -> FakeTextGenerator:
    return FakeTextGenerator()


@pytest.fixture
def execution_service(executor: FakeExecutor) -> WorkerExecutionService:
    return WorkerExecutionService(executor)


@pytest.fixture
def consumer(
    execution_service: WorkerExecutionService, text_generator: FakeTextGenerator
) -> TaskQueueConsumer:
    return TaskQueueConsumer(
        task_queue,
        execution_service,
        ReportGenerator(text_generator),
        batch_size=10,
        visibility_timeout=60,
    )


@pytest.fixture
async def worker() -> Worker:
    """A worker owned by USER_ID with a saved simple graph."""
    created = await graph_store.create_worker(USER_ID, WorkerCreate(name="Research Worker"))
    result = await graph_store.save_graph(created.id, simple_graph())
    assert result.success
    return created


@pytest.fixture
async def client(
    execution_service: WorkerExecutionService, consumer: TaskQueueConsumer
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with fakes wired into the app state."""
    app.state.deployment_registry = DeploymentStatusRegistry()
    app.state.execution_service = execution_service
    app.state.report_generator = consumer.report_generator
    app.state.queue_consumer = consumer
    app.state.schedule_dispatcher = ScheduleDispatcher(task_queue)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-User-Id": USER_ID},
    ) as client:
        yield client
