"""Schedule computation for workers.

Turns the schedule fields configured on a worker's starter block into a
canonical 5-field cron expression and the next UTC run time. Everything here
except ``sync_worker_schedule`` is pure and safe to call concurrently.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from app.db import schedule_store
from app.errors import ValidationError
from app.models import (
    BlockState,
    ScheduleSyncResult,
    ScheduleTimeValues,
    ScheduleType,
    WorkerGraph,
)

logger = logging.getLogger(__name__)

DEFAULT_HOUR = 9
DEFAULT_MINUTE = 0
DEFAULT_MINUTES_INTERVAL = 15

# Cron day-of-week numbering (Sunday is 0)
WEEKDAYS = {"SUN": 0, "MON": 1, "TUE": 2, "WED": 3, "THU": 4, "FRI": 5, "SAT": 6}

TimePair = tuple[int | None, int | None]


# =============================================================================
# Starter block parsing
# =============================================================================


def get_sub_block_value(block: BlockState | None, sub_block_id: str) -> Any:
    """Value of a starter sub-block, or None when the block or field is missing."""
    if block is None:
        return None
    sub_block = block.sub_blocks.get(sub_block_id)
    return sub_block.value if sub_block else None


def _parse_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        return None


def parse_time_value(value: Any) -> TimePair:
    """Parse ``"HH:MM"`` or ``[hour, minute]`` into an (hour, minute) pair.

    Missing or unparsable components come back as None.
    """
    if value is None:
        return (None, None)
    if isinstance(value, str):
        parts: Sequence[Any] = value.split(":") if value.strip() else []
    elif isinstance(value, Sequence):
        parts = value
    else:
        return (None, None)

    hour = _parse_int(parts[0]) if len(parts) > 0 else None
    minute = _parse_int(parts[1]) if len(parts) > 1 else None
    return (hour, minute)


def _parse_weekday(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().upper()[:3] in WEEKDAYS:
        return WEEKDAYS[value.strip().upper()[:3]]
    day = _parse_int(value)
    if day is None:
        return None
    # Accept 7 as an alias of Sunday
    return day % 7


def get_schedule_time_values(starter_block: BlockState | None) -> ScheduleTimeValues:
    """Extract the schedule fields of a starter block."""
    cron_expression = get_sub_block_value(starter_block, "cronExpression")
    tz = get_sub_block_value(starter_block, "timezone")
    return ScheduleTimeValues(
        minutes_interval=_parse_int(get_sub_block_value(starter_block, "minutesInterval")),
        hourly_minute=_parse_int(get_sub_block_value(starter_block, "hourlyMinute")),
        daily_time=parse_time_value(get_sub_block_value(starter_block, "dailyTime")),
        weekly_day=_parse_weekday(get_sub_block_value(starter_block, "weeklyDay")),
        weekly_time=parse_time_value(get_sub_block_value(starter_block, "weeklyDayTime")),
        monthly_day=_parse_int(get_sub_block_value(starter_block, "monthlyDay")),
        monthly_time=parse_time_value(get_sub_block_value(starter_block, "monthlyTime")),
        cron_expression=str(cron_expression) if cron_expression else None,
        timezone=str(tz) if tz else "UTC",
    )


def _has_time(pair: TimePair) -> bool:
    return pair[0] is not None or pair[1] is not None


def _custom_cron(values: ScheduleTimeValues, starter_block: BlockState | None) -> str:
    cron = values.cron_expression or get_sub_block_value(starter_block, "cronExpression")
    return str(cron).strip() if cron else ""


# =============================================================================
# Validation and cron generation
# =============================================================================


def has_valid_schedule_config(
    schedule_type: ScheduleType | str | None,
    values: ScheduleTimeValues,
    starter_block: BlockState | None = None,
) -> bool:
    """Whether the user configured at least one concrete time for the type."""
    try:
        kind = ScheduleType(schedule_type)
    except ValueError:
        return False

    match kind:
        case ScheduleType.MINUTES:
            return values.minutes_interval is not None
        case ScheduleType.HOURLY:
            return values.hourly_minute is not None
        case ScheduleType.DAILY:
            return _has_time(values.daily_time)
        case ScheduleType.WEEKLY:
            return values.weekly_day is not None and _has_time(values.weekly_time)
        case ScheduleType.MONTHLY:
            return values.monthly_day is not None and _has_time(values.monthly_time)
        case ScheduleType.CUSTOM:
            return bool(_custom_cron(values, starter_block))
    return False


def _hour_minute(pair: TimePair) -> tuple[int, int]:
    hour = pair[0] if pair[0] is not None else DEFAULT_HOUR
    minute = pair[1] if pair[1] is not None else DEFAULT_MINUTE
    return hour, minute


def generate_cron_expression(
    schedule_type: ScheduleType | str, values: ScheduleTimeValues
) -> str:
    """Map structured schedule fields to a canonical 5-field cron string.

    Raises:
        ValueError: For an unknown schedule type or an invalid custom cron
    """
    kind = ScheduleType(schedule_type)

    match kind:
        case ScheduleType.MINUTES:
            interval = values.minutes_interval or DEFAULT_MINUTES_INTERVAL
            return f"*/{interval} * * * *"
        case ScheduleType.HOURLY:
            minute = values.hourly_minute if values.hourly_minute is not None else DEFAULT_MINUTE
            return f"{minute} * * * *"
        case ScheduleType.DAILY:
            hour, minute = _hour_minute(values.daily_time)
            return f"{minute} {hour} * * *"
        case ScheduleType.WEEKLY:
            hour, minute = _hour_minute(values.weekly_time)
            day = values.weekly_day if values.weekly_day is not None else WEEKDAYS["MON"]
            return f"{minute} {hour} * * {day}"
        case ScheduleType.MONTHLY:
            hour, minute = _hour_minute(values.monthly_time)
            day = values.monthly_day if values.monthly_day is not None else 1
            return f"{minute} {hour} {day} * *"
        case ScheduleType.CUSTOM:
            cron = (values.cron_expression or "").strip()
            if not cron or not croniter.is_valid(cron) or len(cron.split()) != 5:
                raise ValueError(f"Invalid cron expression: {cron!r}")
            return cron
    raise ValueError(f"Unsupported schedule type: {schedule_type}")


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e


def next_run_for_cron(cron_expression: str, tz_name: str, now: datetime) -> datetime:
    """Next fire time of ``cron_expression`` evaluated in ``tz_name``, in UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(_zone(tz_name))
    itr = croniter(cron_expression, local_now)
    candidate = itr.get_next(datetime)
    while candidate <= local_now:
        candidate = itr.get_next(datetime)
    return candidate.astimezone(timezone.utc)


def calculate_next_run_time(
    schedule_type: ScheduleType | str,
    values: ScheduleTimeValues,
    now: datetime | None = None,
) -> datetime:
    """Next UTC run time strictly after ``now`` (defaults to the current time)."""
    now = now or datetime.now(timezone.utc)
    cron = generate_cron_expression(schedule_type, values)
    return next_run_for_cron(cron, values.timezone, now)


def fallback_next_run(now: datetime | None = None) -> datetime:
    """Retry time used when a schedule's cron can no longer be evaluated."""
    return (now or datetime.now(timezone.utc)) + timedelta(hours=24)


# =============================================================================
# Schedule row reconciliation
# =============================================================================


async def sync_worker_schedule(
    worker_id: str, graph: WorkerGraph, now: datetime | None = None
) -> ScheduleSyncResult:
    """Bring a worker's schedule row in line with its starter block.

    Removes the schedule when the worker is not started by a schedule and no
    valid schedule is configured. Otherwise inserts or updates the single row
    for the worker, which always re-activates it and clears its failures.

    Raises:
        ValidationError: If the graph has no starter block or the schedule
            fields cannot be turned into a cron expression
    """
    starter = graph.find_block_by_type("starter")
    if starter is None:
        raise ValidationError("No starter block found in worker state")

    start_worker = get_sub_block_value(starter, "startWorker")
    schedule_type = get_sub_block_value(starter, "scheduleType") or ScheduleType.DAILY.value
    values = get_schedule_time_values(starter)

    if start_worker != "schedule" and not has_valid_schedule_config(
        schedule_type, values, starter
    ):
        removed = await schedule_store.delete_schedule_for_worker(worker_id)
        if removed:
            logger.info(f"Removed schedule for worker {worker_id}")
        return ScheduleSyncResult(action="removed")

    try:
        cron = generate_cron_expression(schedule_type, values)
        next_run = next_run_for_cron(cron, values.timezone, now or datetime.now(timezone.utc))
    except ValueError as e:
        raise ValidationError(str(e)) from e

    schedule = await schedule_store.upsert_schedule(
        worker_id=worker_id,
        cron_expression=cron,
        next_run_at=next_run.isoformat(),
        timezone_name=values.timezone,
    )
    logger.info(
        f"Schedule for worker {worker_id} set to '{cron}' ({values.timezone}), "
        f"next run at {schedule.next_run_at}"
    )
    return ScheduleSyncResult(
        action="updated",
        cron_expression=cron,
        next_run_at=schedule.next_run_at,
        timezone=values.timezone,
    )
