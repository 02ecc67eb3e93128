"""
Tests for the query builder and executor.
"""

import asyncio
import json

import pytest

from taskdesk.db.errors import CardinalityError, QueryStateError, TransportError
from taskdesk.db.query import QueryBuilder
from taskdesk.db.schema import UNDEFINED


def run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio needed)."""
    return asyncio.run(coro)


class TestBuilding:
    """Building a query never touches the network."""

    def test_chaining_accumulates_state(self, client, fake):
        query = (
            client.table("tasks")
            .select("id, title", count="exact")
            .eq("project_id", "P1")
            .neq("status", "completed")
            .is_not_null("deadline")
            .order("deadline", desc=True)
            .range(10, 19)
        )

        state = query.state
        assert [(f.field, f.op) for f in state.filters] == [
            ("project_id", "eq"), ("status", "neq"), ("deadline", "not_null"),
        ]
        assert state.order_by.ascending is False
        assert (state.offset, state.limit) == (10, 10)
        assert state.count == "exact"
        assert fake.requests == []

    def test_not_is_null_becomes_not_null(self, client):
        query = client.table("tasks").select().not_("assigned_to", "is", None)
        assert query.state.filters[0].op == "not_null"

    def test_not_eq_becomes_neq(self, client):
        query = client.table("tasks").select().not_("status", "eq", "done")
        assert query.state.filters[0].op == "neq"

    def test_unsupported_negation_raises(self, client):
        with pytest.raises(ValueError):
            client.table("tasks").select().not_("title", "search", "x")

    def test_writes_do_not_return_rows_by_default(self, client):
        assert client.table("tasks").insert({"title": "x"}).state.return_rows is False
        assert client.table("tasks").insert({"title": "x"}).select().state.return_rows is True


class TestSelect:
    """Select execution against the fake store."""

    def test_filters_sorts_and_projects(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)

        result = run(client.table("tasks").select("id, title").eq("project_id", "P1").order("deadline").execute())

        assert result.error is None
        assert result.data == [{"id": "t2", "title": "Fix bug"}, {"id": "t1", "title": "Write plan"}]

    def test_range_windows_sorted_rows(self, client, fake):
        fake.seed("tasks", [{"id": f"t{i:02d}", "title": f"Task {i:02d}"} for i in range(20)])

        result = run(client.table("tasks").select("id").order("title").range(5, 7).execute())

        assert [row["id"] for row in result.data] == ["t05", "t06", "t07"]

    def test_offset_is_not_applied_twice_after_push_down(self, client, fake):
        fake.seed("tasks", [{"id": f"t{i:02d}", "title": f"Task {i:02d}"} for i in range(20)])

        result = run(client.table("tasks").select("id").order("title").offset(15).execute())

        assert [row["id"] for row in result.data] == ["t15", "t16", "t17", "t18", "t19"]

    def test_offset_applied_in_memory_after_fallback(self, client, fake):
        fake.seed("tasks", [{"id": f"t{i:02d}", "title": f"Task {i:02d}", "status": "todo"} for i in range(20)])
        fake.reject_queries = True

        result = run(client.table("tasks").select("id").eq("status", "todo").order("title").range(15, 16).execute())

        assert [row["id"] for row in result.data] == ["t15", "t16"]

    def test_exact_count_reports_total_before_window(self, client, fake):
        fake.seed("tasks", [{"id": f"t{i:02d}", "status": "todo"} for i in range(12)])

        result = run(client.table("tasks").select("id", count="exact").eq("status", "todo").limit(5).execute())

        assert len(result.data) == 5
        assert result.count == 12

    def test_count_without_mode_is_row_count(self, client, fake):
        fake.seed("tasks", [{"id": f"t{i:02d}"} for i in range(12)])
        result = run(client.table("tasks").select("id").limit(5).execute())
        assert result.count == 5

    def test_search_filter(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)
        result = run(client.table("tasks").select("id").search("title", "BUG").execute())
        assert result.data == [{"id": "t2"}]

    def test_blank_search_window_is_applied_in_memory(self, client, fake):
        fake.seed("tasks", [
            {"id": "t1", "title": "ab"},
            {"id": "t2", "title": "cd"},
            {"id": "t3", "title": "a b"},
            {"id": "t4", "title": "e f"},
        ])

        result = run(client.table("tasks").select("*").search("title", " ").order("id").limit(2).execute())

        assert [row["title"] for row in result.data] == ["a b", "e f"]

    def test_search_matches_substrings_inside_words(self, client, fake):
        fake.seed("tasks", [{"id": "t1", "title": "Bugfix release"}, {"id": "t2", "title": "Docs"}])
        result = run(client.table("tasks").select("id").search("title", "bug").execute())
        assert result.data == [{"id": "t1"}]

    def test_neq_keeps_null_rows_and_windows_in_memory(self, client, fake):
        fake.seed("tasks", [
            {"id": "a", "status": None},
            {"id": "b", "status": "done"},
            {"id": "c", "status": "todo"},
            {"id": "d", "status": "todo"},
        ])

        result = run(
            client.table("tasks").select("id", count="exact").neq("status", "done").order("id").range(0, 1).execute()
        )

        assert result.data == [{"id": "a"}, {"id": "c"}]
        assert result.count == 3


class TestSingle:
    """single() and maybe_single() cardinality rules."""

    def test_single_with_one_row(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)
        result = run(client.table("tasks").select("*").eq("id", "t1").single().execute())
        assert result.error is None
        assert result.data["title"] == "Write plan"

    def test_single_with_zero_rows_is_cardinality_error(self, client, fake):
        result = run(client.table("tasks").select("*").eq("id", "missing").single().execute())
        assert isinstance(result.error, CardinalityError)
        assert not isinstance(result.error, TransportError)
        assert result.error.status == 406
        assert result.data is None

    def test_single_with_many_rows_is_cardinality_error(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)
        result = run(client.table("tasks").select("*").eq("project_id", "P1").single().execute())
        assert isinstance(result.error, CardinalityError)

    def test_maybe_single_with_zero_rows_is_none(self, client, fake):
        result = run(client.table("tasks").select("*").eq("id", "missing").maybe_single().execute())
        assert result.data is None
        assert result.error is None

    def test_maybe_single_with_many_rows_is_cardinality_error(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)
        result = run(client.table("tasks").select("*").eq("project_id", "P2").maybe_single().execute())
        assert isinstance(result.error, CardinalityError)


class TestInsert:
    """Insert execution."""

    def test_scenario_insert_sanitizes_and_uses_store_id(self, client, fake):
        result = run(
            client.table("tasks").insert({"title": "Fix bug", "status": UNDEFINED}).select().single().execute()
        )

        creates = fake.requests_for("POST", "/documents")
        assert len(creates) == 1
        sent = json.loads(creates[0].content)["data"]
        assert "status" not in sent
        assert sent["title"] == "Fix bug"
        assert "created_at" in sent and "updated_at" in sent
        assert result.data["id"] == "doc0001"
        assert result.data["id"] in fake.collections["tasks"]

    def test_insert_without_select_returns_no_rows(self, client, fake):
        result = run(client.table("tasks").insert({"title": "x"}).execute())
        assert result.error is None
        assert result.data is None
        assert result.count == 1

    def test_multi_insert_in_order(self, client, fake):
        rows = [{"id": "a", "title": "first"}, {"id": "b", "title": "second"}]
        result = run(client.table("tasks").insert(rows).select("id").execute())
        assert result.data == [{"id": "a"}, {"id": "b"}]

    def test_multi_insert_stops_at_first_failure_without_rollback(self, client, fake):
        fake.seed("tasks", [{"id": "b", "title": "existing"}])
        rows = [{"id": "a", "title": "first"}, {"id": "b", "title": "dup"}, {"id": "c", "title": "never"}]

        result = run(client.table("tasks").insert(rows).execute())

        assert result.error.status == 409
        assert "a" in fake.collections["tasks"]
        assert "c" not in fake.collections["tasks"]
        assert fake.document("tasks", "b")["title"] == "existing"


class TestUpdateDelete:
    """Read-then-write execution for update and delete."""

    def test_update_touches_every_match_ignoring_limit(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)

        result = run(client.table("tasks").update({"status": "blocked"}).eq("project_id", "P1").limit(1).execute())

        assert result.count == 2
        assert len(fake.requests_for("PATCH")) == 2
        assert fake.document("tasks", "t1")["status"] == "blocked"
        assert fake.document("tasks", "t2")["status"] == "blocked"
        assert fake.document("tasks", "t3")["status"] == "todo"

    def test_update_with_select_returns_rows(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)
        result = run(client.table("tasks").update({"priority": "low"}).eq("id", "t1").select("id, priority").execute())
        assert result.data == [{"id": "t1", "priority": "low"}]

    def test_update_stops_at_first_failure(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)
        fake.fail("PATCH", "/documents/", 500, "boom")

        result = run(client.table("tasks").update({"status": "blocked"}).eq("project_id", "P1").execute())

        assert result.error.status == 500
        assert len(fake.requests_for("PATCH")) == 1

    def test_delete_removes_matches(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)

        result = run(client.table("tasks").delete().eq("status", "todo").execute())

        assert result.count == 2
        assert set(fake.collections["tasks"]) == {"t2", "t4"}

    def test_update_with_no_match_touches_nothing(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)
        result = run(client.table("tasks").update({"status": "x"}).eq("project_id", "P9").execute())
        assert result.count == 0
        assert fake.requests_for("PATCH") == []

    def test_concurrent_updates_lose_the_first_write(self, client, fake):
        """Both updates read before either writes; the last write wins undetected."""
        fake.seed("tasks", [{"id": "t1", "title": "Original", "status": "todo"}])

        async def _race():
            fake.read_barrier = asyncio.Barrier(2)
            first = client.table("tasks").update({"title": "First"}).eq("status", "todo").execute()
            second = client.table("tasks").update({"title": "Second"}).eq("status", "todo").execute()
            return await asyncio.gather(first, second)

        first, second = run(_race())

        assert first.count == 1 and second.count == 1
        patches = fake.requests_for("PATCH")
        assert len(patches) == 2
        last_written = json.loads(patches[-1].content)["data"]["title"]
        assert fake.document("tasks", "t1")["title"] == last_written


class TestExecution:
    """Memoized, single-shot execution."""

    def test_execute_twice_runs_once(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)
        query = client.table("tasks").select("*")

        async def _twice():
            return await query.execute(), await query.execute()

        first, second = run(_twice())

        assert first is second
        assert len(fake.requests) == 1

    def test_concurrent_awaits_share_one_execution(self, client, fake, sample_tasks):
        fake.seed("tasks", sample_tasks)
        query = client.table("tasks").select("*")

        async def _together():
            return await asyncio.gather(query.execute(), query.execute())

        first, second = run(_together())

        assert first is second
        assert len(fake.requests) == 1

    def test_chaining_after_execute_raises(self, client, fake):
        query = client.table("tasks").select("*")
        run(query.execute())

        assert query.executed
        with pytest.raises(QueryStateError):
            query.eq("status", "todo")

    def test_unguarded_builder_skips_authorization(self, client, fake):
        fake.seed("company_transactions", [{"id": "c1", "title": "Lunch"}])

        result = run(QueryBuilder("company_transactions", client.gateway).select("*").execute())

        assert result.error is None
        assert fake.requests_for("GET", "/account") == []

    def test_rpc_is_not_implemented(self, client):
        result = run(client.rpc("refresh_stats"))
        assert result.error.status == 501
