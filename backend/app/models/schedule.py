"""Pydantic models for worker schedules."""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel
from pydantic import Field as PydanticField

from app.models.worker import WorkerGraph


class ScheduleType(str, Enum):
    """Structured schedule kinds configurable on a starter block."""

    MINUTES = "minutes"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class ScheduleStatus(str, Enum):
    """Whether the cron runner should pick up a schedule."""

    ACTIVE = "active"
    DISABLED = "disabled"


class ScheduleTimeValues(BaseModel):
    """Time fields extracted from a starter block.

    ``None`` means the user left the field empty; generation falls back to
    defaults but validity checks treat it as absent.
    """

    minutes_interval: int | None = None
    hourly_minute: int | None = None
    daily_time: tuple[int | None, int | None] = (None, None)
    weekly_day: int | None = None
    weekly_time: tuple[int | None, int | None] = (None, None)
    monthly_day: int | None = None
    monthly_time: tuple[int | None, int | None] = (None, None)
    cron_expression: str | None = None
    timezone: str = "UTC"


class WorkerSchedule(BaseModel):
    """The persisted schedule row for a worker (at most one per worker)."""

    id: str
    worker_id: str = PydanticField(alias="workerId")
    cron_expression: str | None = PydanticField(default=None, alias="cronExpression")
    trigger_type: Literal["schedule"] = PydanticField(default="schedule", alias="triggerType")
    next_run_at: str | None = PydanticField(default=None, alias="nextRunAt")
    last_ran_at: str | None = PydanticField(default=None, alias="lastRanAt")
    last_failed_at: str | None = PydanticField(default=None, alias="lastFailedAt")
    timezone: str = "UTC"
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    failed_count: int = PydanticField(default=0, ge=0, alias="failedCount")
    created_at: str = PydanticField(alias="createdAt")
    updated_at: str = PydanticField(alias="updatedAt")

    model_config = {"populate_by_name": True}


class ScheduleRequest(BaseModel):
    """Body of POST /api/schedules."""

    worker_id: str = PydanticField(alias="workerId")
    state: WorkerGraph

    model_config = {"populate_by_name": True}


class ScheduleUpdateRequest(BaseModel):
    """Body of PUT /api/schedules/{id}."""

    action: Literal["reactivate", "disable"] | None = None
    status: ScheduleStatus | None = None


class ScheduleSyncResult(BaseModel):
    """Outcome of reconciling a worker's starter block with its schedule row."""

    action: Literal["removed", "updated"]
    cron_expression: str | None = PydanticField(default=None, alias="cronExpression")
    next_run_at: str | None = PydanticField(default=None, alias="nextRunAt")
    timezone: str | None = None

    model_config = {"populate_by_name": True}

    @property
    def message(self) -> str:
        return "Schedule removed" if self.action == "removed" else "Schedule updated"


class ScheduleDispatchResult(BaseModel):
    """Summary of one cron-runner pass over due schedules."""

    dispatched: list[dict[str, Any]] = PydanticField(default_factory=list)
    failed: list[dict[str, Any]] = PydanticField(default_factory=list)
    skipped: list[str] = PydanticField(default_factory=list)
