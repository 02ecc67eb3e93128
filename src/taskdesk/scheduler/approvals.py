"""
Task approval workflow.

A task awaiting sign-off gets a pending task_approvals row. Its required
approval count and SLA come from the project's approval rule, falling
back to the workspace default rule. Pending approvals past their SLA are
escalated to workspace owners/admins and to manager/admin role holders.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from taskdesk.db.adapter import DatabaseAdapter
from taskdesk.db.errors import BackendError, BackendResult
from taskdesk.db.schema import utc_now_iso
from taskdesk.scheduler.ids import escalation_notification_id, is_duplicate_insert_error

logger = logging.getLogger(__name__)

ESCALATION_BATCH_SIZE = 100
ESCALATION_MAX_BATCHES = 25
DEFAULT_SLA_HOURS = 24


@dataclass
class ApprovalOutcome:
    error: BackendError | None = None
    completed: bool = False


async def resolve_approval_rule(db: DatabaseAdapter, task: Mapping[str, Any]) -> dict[str, Any] | None:
    """Project-scoped rule first, then the workspace default."""
    workspace_id = task.get("workspace_id")
    if not workspace_id:
        return None

    scoped = await (
        db.table("approval_rules")
        .select("*")
        .eq("workspace_id", workspace_id)
        .eq("project_id", task.get("project_id"))
        .limit(1)
        .maybe_single()
        .execute()
    )
    if scoped.data:
        return scoped.data

    fallback = await (
        db.table("approval_rules")
        .select("*")
        .eq("workspace_id", workspace_id)
        .limit(1)
        .maybe_single()
        .execute()
    )
    return fallback.data or None


async def _pending_approval(db: DatabaseAdapter, task_id: Any) -> dict[str, Any] | None:
    result = await (
        db.table("task_approvals")
        .select("*")
        .eq("task_id", task_id)
        .eq("status", "pending")
        .limit(1)
        .maybe_single()
        .execute()
    )
    return result.data or None


async def create_approval_request(
    db: DatabaseAdapter,
    task: Mapping[str, Any],
    requested_by: str,
    now: datetime | None = None,
) -> BackendResult:
    """Open a pending approval for a task, reusing one that is already pending."""
    moment = now or datetime.now(timezone.utc)
    rule = await resolve_approval_rule(db, task) or {}
    required_approvals = max(1, rule.get("required_approvals") or 1)
    sla_hours = max(1, rule.get("sla_hours") or DEFAULT_SLA_HOURS)

    existing = await _pending_approval(db, task.get("id"))
    if existing is not None:
        return BackendResult(data=existing)

    return await (
        db.table("task_approvals")
        .insert({
            "task_id": task.get("id"),
            "workspace_id": task.get("workspace_id"),
            "status": "pending",
            "requested_by": requested_by,
            "requested_at": utc_now_iso(moment),
            "due_at": utc_now_iso(moment + timedelta(hours=sla_hours)),
            "approved_by": None,
            "approved_at": None,
            "rejected_by": None,
            "rejected_at": None,
            "required_approvals": required_approvals,
            "approval_count": 0,
            "comments": None,
        })
        .select()
        .single()
        .execute()
    )


async def approve_task(
    db: DatabaseAdapter,
    task: Mapping[str, Any],
    approved_by: str,
    comments: str | None = None,
) -> ApprovalOutcome:
    """Record one approval; completes the task once the threshold is reached."""
    approval = await _pending_approval(db, task.get("id"))
    if approval is None:
        return ApprovalOutcome(error=BackendError("No pending approval found for this task.", status=404))

    required = approval.get("required_approvals") or 1
    next_count = min(required, (approval.get("approval_count") or 0) + 1)
    completed = next_count >= required
    stamp = utc_now_iso()

    updated = await (
        db.table("task_approvals")
        .update({
            "approval_count": next_count,
            "approved_by": approved_by,
            "approved_at": stamp,
            "status": "approved" if completed else "pending",
            "comments": comments or approval.get("comments") or None,
            "updated_at": stamp,
        })
        .eq("id", approval.get("id"))
        .execute()
    )
    if updated.error is not None:
        return ApprovalOutcome(error=updated.error)

    if completed:
        task_update = await (
            db.table("tasks")
            .update({"status": "completed", "updated_at": stamp})
            .eq("id", task.get("id"))
            .execute()
        )
        if task_update.error is not None:
            return ApprovalOutcome(error=task_update.error)

    return ApprovalOutcome(completed=completed)


async def reject_task(
    db: DatabaseAdapter,
    task: Mapping[str, Any],
    rejected_by: str,
    comments: str | None = None,
) -> BackendResult:
    """Reject the pending approval and send the task back to in-progress."""
    approval = await _pending_approval(db, task.get("id"))
    if approval is None:
        return BackendResult(error=BackendError("No pending approval found for this task.", status=404))

    stamp = utc_now_iso()
    rejected = await (
        db.table("task_approvals")
        .update({
            "status": "rejected",
            "rejected_by": rejected_by,
            "rejected_at": stamp,
            "comments": comments or approval.get("comments") or None,
            "updated_at": stamp,
        })
        .eq("id", approval.get("id"))
        .execute()
    )
    if rejected.error is not None:
        return BackendResult(error=rejected.error)

    return await (
        db.table("tasks")
        .update({"status": "in-progress", "updated_at": stamp})
        .eq("id", task.get("id"))
        .execute()
    )


async def _escalation_recipients(db: DatabaseAdapter, workspace_id: str) -> list[str] | None:
    members = await (
        db.table("workspace_members")
        .select("user_id, role")
        .eq("workspace_id", workspace_id)
        .execute()
    )
    if members.error is not None:
        logger.error("Failed to resolve workspace members for escalation: %s", members.error.message)
        return None

    rows = members.data or []
    member_ids = list(dict.fromkeys(row.get("user_id") for row in rows if row.get("user_id")))
    workspace_admins = [row.get("user_id") for row in rows if row.get("role") in ("owner", "admin")]

    role_holders: list[str] = []
    if member_ids:
        roles = await (
            db.table("user_roles")
            .select("user_id")
            .in_("user_id", member_ids)
            .in_("role", ["admin", "manager"])
            .execute()
        )
        role_holders = [row.get("user_id") for row in roles.data or []]

    return [user_id for user_id in dict.fromkeys([*workspace_admins, *role_holders]) if user_id]


async def run_approval_escalations(
    db: DatabaseAdapter,
    workspace_id: str | None,
    now: datetime | None = None,
) -> int:
    """Escalate overdue pending approvals in a workspace. Returns how many were escalated."""
    if not workspace_id:
        return 0

    now_iso = utc_now_iso(now)
    recipients = await _escalation_recipients(db, workspace_id)
    if not recipients:
        return 0

    escalated_count = 0
    for _ in range(ESCALATION_MAX_BATCHES):
        overdue = await (
            db.table("task_approvals")
            .select("id, task_id, status, required_approvals, approval_count, due_at")
            .eq("workspace_id", workspace_id)
            .eq("status", "pending")
            .lt("due_at", now_iso)
            .order("due_at")
            .limit(ESCALATION_BATCH_SIZE)
            .execute()
        )
        if overdue.error is not None:
            logger.error("Failed to query overdue task approvals: %s", overdue.error.message)
            return escalated_count

        rows = overdue.data or []
        if not rows:
            return escalated_count

        batch_start = escalated_count
        for row in rows:
            escalated = await (
                db.table("task_approvals")
                .update({"status": "escalated", "updated_at": now_iso})
                .eq("id", row.get("id"))
                .eq("status", "pending")
                .lt("due_at", now_iso)
                .select("id, task_id")
                .maybe_single()
                .execute()
            )
            if escalated.error is not None:
                logger.error("Failed to escalate approval %s: %s", row.get("id"), escalated.error.message)
                continue
            if escalated.data is None:
                # Already escalated by a concurrent run
                continue

            escalated_count += 1
            await _notify_escalation(db, row, recipients)

        if len(rows) < ESCALATION_BATCH_SIZE:
            return escalated_count
        if escalated_count == batch_start:
            # Nothing changed, so the next fetch would return the same rows
            logger.warning("No approval in workspace %s could be escalated; stopping", workspace_id)
            return escalated_count

    logger.warning(
        "Workspace %s still has overdue approvals after %d batches", workspace_id, ESCALATION_MAX_BATCHES
    )
    return escalated_count


async def _notify_escalation(db: DatabaseAdapter, approval: Mapping[str, Any], recipients: list[str]) -> None:
    for user_id in recipients:
        notification_id = escalation_notification_id(str(approval.get("id")), user_id)
        inserted = await db.table("notifications").insert({
            "id": notification_id,
            "user_id": user_id,
            "type": "approval_escalation",
            "title": "Approval SLA Escalated",
            "message": "A task approval exceeded SLA and needs immediate attention.",
            "entity_type": "task",
            "entity_id": approval.get("task_id"),
        }).execute()

        if inserted.error is not None and not is_duplicate_insert_error(inserted.error):
            logger.error("Failed to insert escalation notification %s: %s", notification_id, inserted.error.message)
