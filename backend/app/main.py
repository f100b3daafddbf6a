"""FastAPI application entry point."""

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.db.database import close_database, init_database
from app.db.task_queue import task_queue
from app.errors import OrchestrationError
from app.llm import get_gemini_client
from app.services.deployment_detector import DeploymentStatusRegistry
from app.services.queue_consumer import TaskQueueConsumer
from app.services.report_generator import ReportGenerator
from app.services.schedule_dispatcher import ScheduleDispatcher
from app.services.worker_executor import HttpWorkerExecutor, WorkerExecutionService

# Configure logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


def configure_services(app: FastAPI) -> None:
    """Build the long-lived service objects routes reach through ``app.state``.

    Anything already set (e.g. fakes installed by tests) is kept.
    """
    state = app.state
    if not hasattr(state, "deployment_registry"):
        state.deployment_registry = DeploymentStatusRegistry()
    if not hasattr(state, "execution_service"):
        state.execution_service = WorkerExecutionService(HttpWorkerExecutor())
    if not hasattr(state, "report_generator"):
        state.report_generator = ReportGenerator(get_gemini_client())
    if not hasattr(state, "queue_consumer"):
        state.queue_consumer = TaskQueueConsumer(
            task_queue, state.execution_service, state.report_generator
        )
    if not hasattr(state, "schedule_dispatcher"):
        state.schedule_dispatcher = ScheduleDispatcher(task_queue)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    db_path = os.getenv("DATABASE_PATH", "./data/worker.db")
    await init_database(db_path)
    configure_services(app)
    logger.info(f"Worker orchestration core started with database {db_path}")

    yield

    # Shutdown
    await close_database()


app = FastAPI(
    title="Worker Orchestration Core",
    description="Persist worker graphs, schedule and queue their runs, and log every execution",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware - allow any localhost port for local frontends
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://localhost(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Error envelopes
# =============================================================================


@app.exception_handler(OrchestrationError)
async def orchestration_error_handler(request: Request, exc: OrchestrationError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: [{exc.code}] {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = f"Invalid request: {location}: {first.get('msg', 'invalid value')}"
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": message,
            "code": "VALIDATION_ERROR",
            "details": jsonable_errors(errors),
        },
    )


def jsonable_errors(errors: list) -> list[dict]:
    """Pydantic error dicts may carry exception objects in ``ctx``."""
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in errors
    ]


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


# Import and include routers after app is created to avoid circular imports
from app.api import environment, schedules, tasks, workers  # noqa: E402

app.include_router(workers.router, prefix="/api", tags=["workers"])
app.include_router(schedules.router, prefix="/api", tags=["schedules"])
app.include_router(tasks.router, prefix="/api", tags=["tasks"])
app.include_router(environment.router, prefix="/api", tags=["environment"])
