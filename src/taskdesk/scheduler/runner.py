"""
Scheduler entry point.

Runs in server context (no request context, API key auth): for every
workspace, materialize recurring tasks and escalate overdue approvals;
then generate digests for every digest-enabled user.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from taskdesk.config import Settings
from taskdesk.db.adapter import DatabaseAdapter
from taskdesk.db.errors import BackendError, ConfigurationError
from taskdesk.scheduler.approvals import run_approval_escalations
from taskdesk.scheduler.digest import generate_notification_digest
from taskdesk.scheduler.recurring import run_due_recurring_tasks

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

# Settings field -> environment variable it is read from
_REQUIRED_SETTINGS = {
    "appwrite_endpoint": "APPWRITE_ENDPOINT",
    "appwrite_project_id": "APPWRITE_PROJECT_ID",
    "appwrite_database_id": "APPWRITE_DATABASE_ID",
    "appwrite_api_key": "APPWRITE_API_KEY",
}


@dataclass
class SchedulerSummary:
    workspaces: int = 0
    recurring_created: int = 0
    recurring_skipped: int = 0
    recurring_failed: int = 0
    approvals_escalated: int = 0
    digest_users: int = 0
    digest_processed: int = 0
    digest_failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def assert_scheduler_env(settings: Settings) -> None:
    missing = [env for name, env in _REQUIRED_SETTINGS.items() if not (getattr(settings, name) or "").strip()]
    if missing:
        raise ConfigurationError(f"Missing required scheduler environment variables: {', '.join(missing)}")


async def _page_column(db: DatabaseAdapter, table: str, column: str, order_column: str, **equals) -> list[str]:
    values: list[str] = []
    page = 0
    while True:
        start = page * PAGE_SIZE
        query = db.table(table).select(column)
        for name, value in equals.items():
            query = query.eq(name, value)
        result = await query.order(order_column).range(start, start + PAGE_SIZE - 1).execute()
        if result.error is not None:
            raise BackendError(f"Failed to fetch {table}: {result.error.message}", status=result.error.status)

        rows = result.data or []
        values.extend(row.get(column) for row in rows if row.get(column))
        if len(rows) < PAGE_SIZE:
            break
        page += 1
    return list(dict.fromkeys(values))


async def fetch_workspace_ids(db: DatabaseAdapter) -> list[str]:
    return await _page_column(db, "workspaces", "id", "created_at")


async def fetch_digest_enabled_users(db: DatabaseAdapter) -> list[str]:
    return await _page_column(db, "notification_preferences", "user_id", "updated_at", digest_enabled=True)


async def run_schedulers(db: DatabaseAdapter, settings: Settings, now: datetime | None = None) -> SchedulerSummary:
    """Run every scheduler job once and return the totals."""
    assert_scheduler_env(settings)
    summary = SchedulerSummary()

    workspaces = await fetch_workspace_ids(db)
    summary.workspaces = len(workspaces)
    for workspace_id in workspaces:
        recurring = await run_due_recurring_tasks(db, workspace_id, now=now)
        summary.recurring_created += recurring.created_tasks
        summary.recurring_skipped += recurring.skipped_tasks
        summary.recurring_failed += recurring.failed_tasks

        summary.approvals_escalated += await run_approval_escalations(db, workspace_id, now=now)

    digest_users = await fetch_digest_enabled_users(db)
    summary.digest_users = len(digest_users)
    for user_id in digest_users:
        try:
            await generate_notification_digest(db, user_id, now=now)
            summary.digest_processed += 1
        except BackendError as exc:
            summary.digest_failed += 1
            logger.error("Digest generation failed for user %s: %s", user_id, exc.message)

    logger.info(
        "Scheduler completed: %s",
        " ".join(f"{key}={value}" for key, value in summary.as_dict().items()),
    )
    return summary
