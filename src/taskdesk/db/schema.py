"""
Taskdesk - Table field registry and write payload sanitization.

TABLE_FIELDS lists the writable fields per table. Writes are restricted
to that allow-list; reads are never trimmed. Tables without an entry are
passed through untouched (no field filtering, no timestamp stamping,
since which fields exist is unknown).
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping


class _Undefined:
    """Marker for 'key present but no value'. Dropped on write."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()

IMPLICIT_FIELDS = frozenset({"id", "created_at", "updated_at"})


TABLE_FIELDS: dict[str, frozenset[str]] = {
    "profiles": frozenset({
        "id", "email", "full_name", "avatar_url", "department", "designation", "skills",
        "created_at", "updated_at",
    }),
    "user_roles": frozenset({"id", "user_id", "role", "created_at"}),
    "workspaces": frozenset({"id", "name", "description", "owner_id", "created_at", "updated_at"}),
    "workspace_members": frozenset({"id", "workspace_id", "user_id", "role", "created_at"}),
    "projects": frozenset({
        "id", "name", "description", "status", "priority", "start_date", "end_date", "progress",
        "category", "workspace_id", "created_by", "created_at", "updated_at",
    }),
    "tasks": frozenset({
        "id", "title", "description", "status", "priority", "difficulty", "estimated_hours",
        "deadline", "requirements", "deliverables", "skills", "assigned_to", "project_id",
        "workspace_id", "created_by", "created_at", "updated_at",
    }),
    "task_progress": frozenset({
        "id", "task_id", "user_id", "content", "hours_worked", "progress_percentage",
        "attachments", "created_at",
    }),
    "task_dependencies": frozenset({
        "id", "task_id", "depends_on_task_id", "dependency_type", "created_by", "created_at",
    }),
    "task_templates": frozenset({
        "id", "name", "title", "description", "priority", "difficulty", "estimated_hours",
        "requirements", "deliverables", "skills", "project_id", "workspace_id", "created_by",
        "created_at", "updated_at",
    }),
    "recurring_tasks": frozenset({
        "id", "template_id", "title", "description", "frequency", "interval_value",
        "next_run_at", "last_run_at", "project_id", "workspace_id", "active", "created_by",
        "created_at", "updated_at",
    }),
    "approval_rules": frozenset({
        "id", "workspace_id", "project_id", "required_approvals", "sla_hours",
        "escalate_to_roles", "created_by", "created_at", "updated_at",
    }),
    "task_approvals": frozenset({
        "id", "task_id", "workspace_id", "status", "requested_by", "requested_at", "due_at",
        "approved_by", "approved_at", "rejected_by", "rejected_at", "required_approvals",
        "approval_count", "comments", "created_at", "updated_at",
    }),
    "activity_logs": frozenset({
        "id", "user_id", "action_type", "entity_type", "entity_id", "entity_title",
        "description", "metadata", "created_at",
    }),
    "notifications": frozenset({
        "id", "user_id", "title", "message", "type", "read", "entity_type", "entity_id",
        "created_at",
    }),
    "ideas": frozenset({
        "id", "title", "description", "category", "status", "votes", "created_by",
        "created_at", "updated_at",
    }),
    "idea_votes": frozenset({"id", "idea_id", "user_id", "vote_type", "created_at"}),
    "discussions": frozenset({
        "id", "entity_type", "entity_id", "user_id", "content", "parent_id", "created_at",
        "updated_at",
    }),
    "user_onboarding": frozenset({
        "id", "user_id", "completed", "steps_completed", "created_at", "updated_at",
    }),
    "notification_preferences": frozenset({
        "id", "user_id", "in_app_enabled", "email_enabled", "digest_enabled", "muted_until",
        "snoozed_until", "type_preferences", "updated_at", "created_at",
    }),
    "documents": frozenset({
        "id", "title", "description", "type", "file_url", "file_size", "status", "version",
        "parent_document_id", "workspace_id", "project_id", "task_id", "created_by", "owner_id",
        "created_at", "updated_at",
    }),
    "company_transactions": frozenset({
        "id", "workspace_id", "transaction_type", "category", "title", "description", "amount",
        "currency", "transaction_date", "reference", "paid_by", "credited_to", "proof_url",
        "proof_type", "proof_name", "created_by", "created_at", "updated_at",
    }),
    "role_history": frozenset({
        "id", "user_id", "changed_by", "role", "change_type", "reason", "created_at",
    }),
    "governance_actions": frozenset({
        "id", "action_type", "entity_type", "entity_id", "payload", "requested_by", "status",
        "approved_by", "approved_at", "created_at", "updated_at",
    }),
}


def utc_now_iso(now: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TableRegistry:
    """Per-table field allow-lists. Pass a custom mapping to model other schemas."""

    def __init__(self, fields: Mapping[str, Iterable[str]] | None = None):
        source = TABLE_FIELDS if fields is None else fields
        self._fields = {table: frozenset(names) for table, names in source.items()}

    def fields_for(self, table: str) -> frozenset[str] | None:
        return self._fields.get(table)

    def is_modeled(self, table: str) -> bool:
        return table in self._fields

    @property
    def tables(self) -> list[str]:
        return sorted(self._fields)

    def sanitize(
        self,
        table: str,
        payload: Mapping[str, Any] | None,
        is_insert: bool,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Restrict a write payload to the table's allow-list and stamp timestamps.

        - `id` is always dropped (the gateway targets documents by path)
        - UNDEFINED values are dropped; None is kept as an explicit null
        - unmodeled tables: only the two rules above apply
        - created_at stamped on insert, updated_at on every write, each only
          when the table declares the field and the caller did not supply it
        """
        source = payload if isinstance(payload, Mapping) else {}
        allowed = self._fields.get(table)

        clean: dict[str, Any] = {}
        for key, value in source.items():
            if value is UNDEFINED or key == "id":
                continue
            if allowed is not None and key not in allowed:
                continue
            clean[key] = value

        if allowed is None:
            return clean

        stamp = utc_now_iso(now)
        if is_insert and "created_at" in allowed and "created_at" not in clean:
            clean["created_at"] = stamp
        if "updated_at" in allowed and "updated_at" not in clean:
            clean["updated_at"] = stamp
        return clean


def normalize_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """Copy a store document, filling id/created_at/updated_at from $-fields."""
    normalized = dict(document)
    if normalized.get("id") is None:
        normalized["id"] = document.get("$id")
    if normalized.get("created_at") is None:
        normalized["created_at"] = document.get("$createdAt")
    if normalized.get("updated_at") is None:
        normalized["updated_at"] = document.get("$updatedAt")
    return normalized


def extract_document_id(payload: Any) -> str:
    """Caller-assigned id from an insert payload, or Appwrite's auto-id marker."""
    if isinstance(payload, Mapping):
        candidate = payload.get("id")
        if isinstance(candidate, str) and candidate:
            return candidate
    return "unique()"


def project_columns(rows: list[dict[str, Any]], columns: str) -> list[dict[str, Any]]:
    """Keep only the selected columns; '*' (or empty) keeps everything."""
    selected = [name.strip() for name in columns.split(",") if name.strip()]
    if not selected or "*" in selected:
        return rows
    return [{name: row.get(name) for name in selected} for row in rows]
