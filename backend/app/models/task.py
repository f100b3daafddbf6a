"""Pydantic models for tasks, task activity and the task queue.

Tasks are units of work assigned to a worker. They reach the orchestration
core as messages on ``task_queue``; the queue consumer executes the assigned
worker and records the outcome back on the task.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField

# =============================================================================
# Enums
# =============================================================================


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    BACKLOG = "BACKLOG"
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    WORK_COMPLETE = "WORK_COMPLETE"
    ERROR = "ERROR"


class ActionType(str, Enum):
    """Kinds of entries in a task's activity timeline."""

    TASK_CREATED = "TASK_CREATED"
    TASK_EXECUTED = "TASK_EXECUTED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_FAILED = "TASK_FAILED"


class ActorType(str, Enum):
    """Who performed an activity."""

    USER = "USER"
    SYSTEM = "SYSTEM"


# =============================================================================
# Tasks
# =============================================================================


class TaskCreate(BaseModel):
    """Request model for creating a task."""

    title: str
    description: str | None = None
    workspace_id: str | None = PydanticField(default=None, alias="workspaceId")
    assignee_id: str | None = PydanticField(default=None, alias="assigneeId")
    status: TaskStatus = TaskStatus.TODO

    model_config = {"populate_by_name": True}


class Task(BaseModel):
    """A task and, once processed, its execution result and report."""

    id: str
    user_id: str = PydanticField(alias="userId")
    workspace_id: str | None = PydanticField(default=None, alias="workspaceId")
    title: str
    description: str | None = None
    status: TaskStatus = TaskStatus.TODO
    assignee_id: str | None = PydanticField(default=None, alias="assigneeId")
    raw_result: dict[str, Any] = PydanticField(default_factory=dict, alias="rawResult")
    result_report: str = PydanticField(default="", alias="resultReport")
    created_at: str = PydanticField(alias="createdAt")
    updated_at: str = PydanticField(alias="updatedAt")

    model_config = {"populate_by_name": True}


class TaskActivity(BaseModel):
    """One entry in a task's activity timeline."""

    id: str
    task_id: str = PydanticField(alias="taskId")
    action_type: ActionType = PydanticField(alias="actionType")
    actor_id: str = PydanticField(alias="actorId")
    actor_type: ActorType = PydanticField(alias="actorType")
    occurred_at: str = PydanticField(alias="occurredAt")

    model_config = {"populate_by_name": True}


# =============================================================================
# Queue
# =============================================================================


class TaskQueuePayload(BaseModel):
    """Body of a ``task_queue`` message."""

    model_config = ConfigDict(strict=True)

    taskId: str
    userId: str


class TaskQueueMessage(BaseModel):
    """A message as leased from ``task_queue``."""

    msg_id: str
    message: TaskQueuePayload


class QueueMessage(BaseModel):
    """Raw queue row returned by a read (payload not yet validated)."""

    msg_id: str
    queue_name: str
    message: Any = None
    read_ct: int = 0
    vt: str
    enqueued_at: str


class TaskProcessingSummary(BaseModel):
    """Result of one queue drain."""

    message: str
    processed: int = 0
