"""
Tests for the scheduler jobs against the fake store.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_settings
from taskdesk.db.client import BackendClient
from taskdesk.db.errors import BackendError, ConfigurationError, TransportError
from taskdesk.scheduler import run_schedulers
from taskdesk.scheduler.approvals import (
    ESCALATION_BATCH_SIZE,
    approve_task,
    create_approval_request,
    reject_task,
    run_approval_escalations,
)
from taskdesk.scheduler.digest import generate_notification_digest
from taskdesk.scheduler.ids import (
    digest_notification_id,
    escalation_notification_id,
    is_duplicate_insert_error,
    materialized_task_id,
    normalize_id_segment,
)
from taskdesk.scheduler.recurring import (
    add_months,
    compute_next_run,
    parse_schedule_time,
    run_due_recurring_tasks,
)
from taskdesk.scheduler.runner import assert_scheduler_env

NOW = datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)
DUE = "2025-06-02T09:00:00.000Z"


def run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio needed)."""
    return asyncio.run(coro)


def recurring_definition(**overrides) -> dict:
    definition = {
        "id": "rec1",
        "title": "Weekly sync",
        "description": "Team sync notes",
        "frequency": "weekly",
        "interval_value": 1,
        "next_run_at": DUE,
        "project_id": "P1",
        "workspace_id": "W1",
        "active": True,
        "created_by": "u1",
    }
    definition.update(overrides)
    return definition


class TestIds:
    def test_normalize_id_segment(self):
        assert normalize_id_segment("Ab-C", 6) == "abc000"
        assert normalize_id_segment("abcdefgh", 4) == "abcd"

    def test_materialized_task_id_uses_utc_minute(self):
        local = datetime(2025, 6, 2, 11, 0, tzinfo=timezone(timedelta(hours=2)))
        task_id = materialized_task_id("rec1", local)
        assert task_id == "rt_rec10000000000000000_202506020900"
        assert len(task_id) == 36

    def test_digest_and_escalation_ids(self):
        assert digest_notification_id("u-1", NOW.date()) == "digest_u1000000000000000000_20250602"
        assert escalation_notification_id("a1", "owner1") == "esc_a1000000000000_owner100000000"

    def test_duplicate_detection(self):
        assert is_duplicate_insert_error(TransportError("Conflict", status=409))
        assert is_duplicate_insert_error(TransportError("Document already exists", status=400))
        assert not is_duplicate_insert_error(TransportError("Server error", status=500))
        assert not is_duplicate_insert_error(None)


class TestSchedule:
    def test_add_months_clamps_day(self):
        assert add_months(datetime(2025, 1, 31), 1) == datetime(2025, 2, 28)
        assert add_months(datetime(2024, 12, 15), 1) == datetime(2025, 1, 15)

    @pytest.mark.parametrize("frequency,interval,expected", [
        ("daily", 2, datetime(2025, 6, 4, 9, 0, tzinfo=timezone.utc)),
        ("weekly", None, datetime(2025, 6, 9, 9, 0, tzinfo=timezone.utc)),
        ("monthly", 1, datetime(2025, 7, 2, 9, 0, tzinfo=timezone.utc)),
        ("daily", 0, datetime(2025, 6, 3, 9, 0, tzinfo=timezone.utc)),
    ])
    def test_compute_next_run(self, frequency, interval, expected):
        start = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
        assert compute_next_run(start, frequency, interval) == expected

    def test_parse_schedule_time(self):
        assert parse_schedule_time(DUE) == datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
        assert parse_schedule_time("2025-06-02T09:00:00") == datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
        assert parse_schedule_time("not a date") is None
        assert parse_schedule_time(None) is None


class TestRecurring:
    def test_materializes_due_task_and_advances_schedule(self, client, fake):
        fake.seed("recurring_tasks", [recurring_definition()])

        summary = run(run_due_recurring_tasks(client, "W1", now=NOW))

        assert (summary.created_tasks, summary.skipped_tasks, summary.failed_tasks) == (1, 0, 0)
        task = fake.document("tasks", "rt_rec10000000000000000_202506020900")
        assert task["title"] == "Weekly sync"
        assert task["status"] == "open"
        definition = fake.document("recurring_tasks", "rec1")
        assert definition["next_run_at"] == "2025-06-09T09:00:00.000Z"
        assert definition["last_run_at"] == DUE

    def test_rerun_of_same_occurrence_is_skipped(self, client, fake):
        fake.seed("recurring_tasks", [recurring_definition()])
        run(run_due_recurring_tasks(client, "W1", now=NOW))
        fake.collections["recurring_tasks"]["rec1"]["next_run_at"] = DUE

        summary = run(run_due_recurring_tasks(client, "W1", now=NOW))

        assert (summary.created_tasks, summary.skipped_tasks) == (0, 1)
        assert len(fake.collections["tasks"]) == 1
        assert fake.document("recurring_tasks", "rec1")["next_run_at"] == "2025-06-09T09:00:00.000Z"

    def test_ignores_inactive_future_and_foreign_definitions(self, client, fake):
        fake.seed("recurring_tasks", [
            recurring_definition(id="off", active=False),
            recurring_definition(id="later", next_run_at="2025-07-01T00:00:00.000Z"),
            recurring_definition(id="other", workspace_id="W2"),
        ])

        summary = run(run_due_recurring_tasks(client, "W1", now=NOW))

        assert summary.created_tasks == 0
        assert fake.requests_for("POST") == []

    def test_empty_workspace_id_is_a_no_op(self, client, fake):
        summary = run(run_due_recurring_tasks(client, "", now=NOW))
        assert summary.created_tasks == 0
        assert fake.requests == []

    def test_insert_failure_is_counted(self, client, fake):
        fake.seed("recurring_tasks", [recurring_definition()])
        fake.fail("POST", "/collections/tasks/", 500, "boom")

        summary = run(run_due_recurring_tasks(client, "W1", now=NOW))

        assert summary.failed_tasks == 1
        assert fake.document("recurring_tasks", "rec1")["next_run_at"] == DUE


class TestApprovals:
    TASK = {"id": "T1", "workspace_id": "W1", "project_id": "P1"}

    def test_request_uses_project_rule(self, client, fake):
        fake.seed("approval_rules", [
            {"id": "ws", "workspace_id": "W1", "project_id": None, "required_approvals": 1, "sla_hours": 24},
            {"id": "proj", "workspace_id": "W1", "project_id": "P1", "required_approvals": 2, "sla_hours": 48},
        ])

        result = run(create_approval_request(client, self.TASK, "u1", now=NOW))

        assert result.error is None
        assert result.data["status"] == "pending"
        assert result.data["required_approvals"] == 2
        assert result.data["due_at"] == "2025-06-04T10:00:00.000Z"

    def test_request_falls_back_to_defaults(self, client, fake):
        result = run(create_approval_request(client, self.TASK, "u1", now=NOW))
        assert result.data["required_approvals"] == 1
        assert result.data["due_at"] == "2025-06-03T10:00:00.000Z"

    def test_pending_request_is_reused(self, client, fake):
        fake.seed("task_approvals", [{"id": "a1", "task_id": "T1", "workspace_id": "W1", "status": "pending"}])

        result = run(create_approval_request(client, self.TASK, "u1", now=NOW))

        assert result.data["id"] == "a1"
        assert fake.requests_for("POST") == []

    def test_approval_completes_task_at_threshold(self, client, fake):
        fake.seed("tasks", [{"id": "T1", "title": "Ship", "status": "review"}])
        fake.seed("task_approvals", [{
            "id": "a1", "task_id": "T1", "workspace_id": "W1", "status": "pending",
            "required_approvals": 2, "approval_count": 0,
        }])

        first = run(approve_task(client, self.TASK, "lead1"))
        assert first.completed is False
        assert fake.document("task_approvals", "a1")["approval_count"] == 1
        assert fake.document("tasks", "T1")["status"] == "review"

        second = run(approve_task(client, self.TASK, "lead2", comments="LGTM"))
        assert second.completed is True
        approval = fake.document("task_approvals", "a1")
        assert approval["status"] == "approved"
        assert approval["comments"] == "LGTM"
        assert fake.document("tasks", "T1")["status"] == "completed"

    def test_approve_without_pending_approval(self, client, fake):
        outcome = run(approve_task(client, self.TASK, "lead1"))
        assert outcome.error.status == 404

    def test_reject_sends_task_back(self, client, fake):
        fake.seed("tasks", [{"id": "T1", "title": "Ship", "status": "review"}])
        fake.seed("task_approvals", [{"id": "a1", "task_id": "T1", "workspace_id": "W1", "status": "pending"}])

        result = run(reject_task(client, self.TASK, "lead1", comments="Needs tests"))

        assert result.error is None
        assert fake.document("task_approvals", "a1")["status"] == "rejected"
        assert fake.document("tasks", "T1")["status"] == "in-progress"


def seed_escalation(fake):
    fake.seed("workspace_members", [
        {"id": "m1", "workspace_id": "W1", "user_id": "owner1", "role": "owner"},
        {"id": "m2", "workspace_id": "W1", "user_id": "dev1", "role": "member"},
    ])
    fake.seed("user_roles", [{"id": "r1", "user_id": "dev1", "role": "manager"}])
    fake.seed("task_approvals", [
        {"id": "a1", "task_id": "T1", "workspace_id": "W1", "status": "pending",
         "due_at": "2025-06-01T00:00:00.000Z"},
        {"id": "a2", "task_id": "T2", "workspace_id": "W1", "status": "pending",
         "due_at": "2025-06-10T00:00:00.000Z"},
    ])


class TestEscalations:
    def test_overdue_approval_is_escalated_and_notified(self, client, fake):
        seed_escalation(fake)

        escalated = run(run_approval_escalations(client, "W1", now=NOW))

        assert escalated == 1
        assert fake.document("task_approvals", "a1")["status"] == "escalated"
        assert fake.document("task_approvals", "a2")["status"] == "pending"
        notified = {doc["user_id"] for doc in fake.collections["notifications"].values()}
        assert notified == {"owner1", "dev1"}
        assert escalation_notification_id("a1", "owner1") in fake.collections["notifications"]

    def test_second_run_escalates_nothing(self, client, fake):
        seed_escalation(fake)
        run(run_approval_escalations(client, "W1", now=NOW))

        assert run(run_approval_escalations(client, "W1", now=NOW)) == 0
        assert len(fake.collections["notifications"]) == 2

    def test_persistent_update_failures_stop_after_one_batch(self, client, fake):
        seed_escalation(fake)
        fake.seed("task_approvals", [
            {"id": f"late{i:03d}", "task_id": f"T{i}", "workspace_id": "W1", "status": "pending",
             "due_at": "2025-05-01T00:00:00.000Z"}
            for i in range(ESCALATION_BATCH_SIZE)
        ])
        fake.fail("PATCH", "/collections/task_approvals/", 500, "boom", times=10_000)

        escalated = run(asyncio.wait_for(run_approval_escalations(client, "W1", now=NOW), timeout=5))

        assert escalated == 0
        assert len(fake.requests_for("PATCH", "/task_approvals/")) == ESCALATION_BATCH_SIZE
        assert not fake.collections["notifications"]

    def test_no_recipients_means_no_escalation(self, client, fake):
        fake.seed("task_approvals", [{"id": "a1", "task_id": "T1", "workspace_id": "W1", "status": "pending",
                                      "due_at": "2025-06-01T00:00:00.000Z"}])

        assert run(run_approval_escalations(client, "W1", now=NOW)) == 0
        assert fake.document("task_approvals", "a1")["status"] == "pending"


def seed_digest(fake, digest_enabled=True):
    fake.seed("notification_preferences", [
        {"id": "np1", "user_id": "u1", "digest_enabled": digest_enabled, "email_enabled": True},
    ])
    fake.seed("notifications", [
        {"id": "n1", "user_id": "u1", "type": "task_assigned", "created_at": "2025-06-02T08:00:00.000Z"},
        {"id": "n2", "user_id": "u1", "type": "comment", "created_at": "2025-06-01T12:00:00.000Z"},
        {"id": "n3", "user_id": "u1", "type": "comment", "created_at": "2025-05-20T00:00:00.000Z"},
        {"id": "n4", "user_id": "u2", "type": "comment", "created_at": "2025-06-02T08:00:00.000Z"},
    ])


class TestDigest:
    def test_creates_one_digest_per_day(self, client, fake, caplog):
        seed_digest(fake)
        caplog.set_level(logging.INFO, logger="taskdesk.scheduler.digest")

        created = run(generate_notification_digest(client, "u1", now=NOW))

        assert created is True
        digest = fake.document("notifications", digest_notification_id("u1", NOW.date()))
        assert digest["title"] == "Daily Digest 2025-06-02"
        assert digest["message"] == "You have 2 update(s) in the last 24 hours."
        assert "Queued digest email" in caplog.text

        assert run(generate_notification_digest(client, "u1", now=NOW)) is False

    def test_disabled_preference_skips(self, client, fake):
        seed_digest(fake, digest_enabled=False)
        assert run(generate_notification_digest(client, "u1", now=NOW)) is False
        assert fake.requests_for("POST") == []

    def test_no_activity_skips(self, client, fake):
        seed_digest(fake)
        later = NOW + timedelta(days=30)
        assert run(generate_notification_digest(client, "u1", now=later)) is False

    def test_duplicate_insert_is_not_an_error(self, client, fake):
        seed_digest(fake)
        fake.fail("POST", "/collections/notifications/", 409, "Document already exists")
        assert run(generate_notification_digest(client, "u1", now=NOW)) is False

    def test_other_insert_failures_raise(self, client, fake):
        seed_digest(fake)
        fake.fail("POST", "/collections/notifications/", 500, "boom")
        with pytest.raises(BackendError):
            run(generate_notification_digest(client, "u1", now=NOW))


class TestRunner:
    def test_missing_env_is_reported(self):
        with pytest.raises(ConfigurationError) as excinfo:
            assert_scheduler_env(make_settings(appwrite_database_id=""))
        assert "APPWRITE_DATABASE_ID" in excinfo.value.message
        assert "APPWRITE_API_KEY" in excinfo.value.message

    def test_runs_every_job(self, fake):
        settings = make_settings(appwrite_api_key="server-key")
        client = BackendClient(settings, http_client=fake.client())
        fake.seed("workspaces", [{"id": "W1", "name": "Acme", "created_at": "2025-01-01T00:00:00.000Z"}])
        fake.seed("recurring_tasks", [recurring_definition()])
        seed_escalation(fake)
        seed_digest(fake)

        summary = run(run_schedulers(client, settings, now=NOW))

        assert summary.as_dict() == {
            "workspaces": 1,
            "recurring_created": 1,
            "recurring_skipped": 0,
            "recurring_failed": 0,
            "approvals_escalated": 1,
            "digest_users": 1,
            "digest_processed": 1,
            "digest_failed": 0,
        }
        assert all(r.headers["X-Appwrite-Key"] == "server-key" for r in fake.requests)

    def test_workspace_fetch_failure_raises(self, fake):
        settings = make_settings(appwrite_api_key="server-key")
        client = BackendClient(settings, http_client=fake.client())
        fake.fail("GET", "/collections/workspaces/", 403, "Forbidden")

        with pytest.raises(BackendError):
            run(run_schedulers(client, settings, now=NOW))
