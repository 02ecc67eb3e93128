"""
Recurring task materialization.

For one workspace: find active recurring definitions whose next_run_at is
due, create the task for that occurrence, then advance the schedule.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from taskdesk.db.adapter import DatabaseAdapter
from taskdesk.db.schema import utc_now_iso
from taskdesk.scheduler.ids import is_duplicate_insert_error, materialized_task_id

logger = logging.getLogger(__name__)

RECURRING_BATCH_SIZE = 100
RECURRING_MAX_BATCHES = 25

Frequency = Literal["daily", "weekly", "monthly"]

_RECURRING_COLUMNS = (
    "id, title, description, frequency, interval_value, next_run_at, project_id, workspace_id, active, created_by"
)


@dataclass
class RecurringSummary:
    workspace_id: str
    created_tasks: int = 0
    skipped_tasks: int = 0
    failed_tasks: int = 0


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_next_run(from_date: datetime, frequency: str, interval_value: int | None) -> datetime:
    interval = max(1, interval_value or 1)
    match frequency:
        case "daily":
            return from_date + timedelta(days=interval)
        case "weekly":
            return from_date + timedelta(weeks=interval)
        case _:
            return add_months(from_date, interval)


def parse_schedule_time(value: Any) -> datetime | None:
    """Datetime for a stored timestamp (naive values are UTC), None if unparseable."""
    if not isinstance(value, str) or not value:
        return None
    candidate = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _task_from_definition(definition: dict[str, Any], task_id: str) -> dict[str, Any]:
    return {
        "id": task_id,
        "title": definition.get("title"),
        "description": definition.get("description"),
        "status": "open",
        "priority": "medium",
        "difficulty": None,
        "estimated_hours": None,
        "deadline": None,
        "requirements": None,
        "deliverables": None,
        "skills": [],
        "assigned_to": None,
        "project_id": definition.get("project_id"),
        "workspace_id": definition.get("workspace_id"),
        "created_by": definition.get("created_by") or None,
    }


async def run_due_recurring_tasks(
    db: DatabaseAdapter,
    workspace_id: str,
    now: datetime | None = None,
) -> RecurringSummary:
    """Materialize every due recurring task in a workspace."""
    summary = RecurringSummary(workspace_id=workspace_id)
    if not workspace_id:
        return summary

    now_iso = utc_now_iso(now)

    for _ in range(RECURRING_MAX_BATCHES):
        due = await (
            db.table("recurring_tasks")
            .select(_RECURRING_COLUMNS)
            .eq("workspace_id", workspace_id)
            .eq("active", True)
            .lte("next_run_at", now_iso)
            .order("next_run_at")
            .limit(RECURRING_BATCH_SIZE)
            .execute()
        )
        if due.error is not None:
            logger.error("Failed to fetch due recurring tasks for workspace %s: %s", workspace_id, due.error.message)
            summary.failed_tasks += 1
            return summary

        definitions = due.data or []
        if not definitions:
            return summary

        for definition in definitions:
            await _materialize(db, definition, workspace_id, now_iso, summary)

        if len(definitions) < RECURRING_BATCH_SIZE:
            return summary

    logger.warning("Workspace %s still has due recurring tasks after %d batches", workspace_id, RECURRING_MAX_BATCHES)
    return summary


async def _materialize(
    db: DatabaseAdapter,
    definition: dict[str, Any],
    workspace_id: str,
    now_iso: str,
    summary: RecurringSummary,
) -> None:
    scheduled_at = parse_schedule_time(definition.get("next_run_at"))
    if scheduled_at is None:
        summary.failed_tasks += 1
        return

    task_id = materialized_task_id(str(definition.get("id")), scheduled_at)
    inserted = await db.table("tasks").insert(_task_from_definition(definition, task_id)).execute()

    if inserted.error is not None and not is_duplicate_insert_error(inserted.error):
        logger.error(
            "Failed to materialize recurring task %s for workspace %s: %s",
            definition.get("id"),
            workspace_id,
            inserted.error.message,
        )
        summary.failed_tasks += 1
        return

    if inserted.error is not None:
        summary.skipped_tasks += 1
    else:
        summary.created_tasks += 1

    next_run = compute_next_run(scheduled_at, definition.get("frequency"), definition.get("interval_value"))

    # Guarded on the old next_run_at so concurrent runs advance it only once
    advanced = await (
        db.table("recurring_tasks")
        .update({"last_run_at": utc_now_iso(scheduled_at), "next_run_at": utc_now_iso(next_run)})
        .eq("id", definition.get("id"))
        .eq("workspace_id", workspace_id)
        .eq("next_run_at", definition.get("next_run_at"))
        .lte("next_run_at", now_iso)
        .execute()
    )
    if advanced.error is not None:
        logger.error(
            "Failed to advance recurring schedule %s for workspace %s: %s",
            definition.get("id"),
            workspace_id,
            advanced.error.message,
        )
        summary.failed_tasks += 1
