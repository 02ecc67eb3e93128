"""
Taskdesk - Fluent query builder over the document gateway.

Usage mirrors the PostgREST/Supabase builder the rest of the app expects:

    result = await (
        client.table("tasks")
        .select("id, title")
        .eq("project_id", project_id)
        .order("deadline")
        .range(0, 24)
        .execute()
    )

Chained calls only accumulate QueryState; nothing touches the network
until execute(). Execution happens once per builder: later execute()
calls return the same memoized result, and modifying a builder after
execution started raises QueryStateError.

Pipeline: guard.authorize -> gateway.list/create/update/remove ->
in-memory filter/sort/window -> single-row collapse.

Bulk update/delete read the matching rows, then write each one by id.
Two overlapping bulk writes can both read before either writes, and the
last write wins. Multi-row writes stop at the first failure without
rolling back rows already written.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

from taskdesk.db.errors import BackendResult, CardinalityError, QueryStateError
from taskdesk.db.filters import FilterClause, OrderBy, filter_all, sort_records
from taskdesk.db.gateway import DocumentGateway
from taskdesk.db.policy import AccessGuard, Operation
from taskdesk.db.schema import project_columns

logger = logging.getLogger(__name__)

CountMode = Literal["exact"]


@dataclass
class QueryState:
    """Accumulated, not-yet-executed description of one request."""

    table: str
    operation: Operation = "select"
    payload: Any = None
    filters: list[FilterClause] = field(default_factory=list)
    order_by: OrderBy | None = None
    limit: int | None = None
    offset: int = 0
    columns: str = "*"
    count: CountMode | None = None
    return_rows: bool = True
    expect_single: bool = False
    maybe_single: bool = False

    @property
    def wants_single(self) -> bool:
        return self.expect_single or self.maybe_single


class QueryBuilder:
    """Lazily evaluated query against one table."""

    def __init__(self, table: str, gateway: DocumentGateway, guard: AccessGuard | None = None):
        self.state = QueryState(table=table)
        self._gateway = gateway
        self._guard = guard
        self._execution: asyncio.Future | None = None

    def __repr__(self) -> str:
        status = "building" if self._execution is None else "executed"
        return f"<QueryBuilder {self.state.operation} {self.state.table!r} ({status})>"

    @property
    def executed(self) -> bool:
        return self._execution is not None

    def _building(self) -> QueryState:
        if self._execution is not None:
            raise QueryStateError(
                f"Query on {self.state.table!r} has already been executed; build a new query instead."
            )
        return self.state

    def _add_filter(self, field_name: str, op: str, value: Any = None) -> "QueryBuilder":
        self._building().filters.append(FilterClause(field=field_name, op=op, value=value))
        return self

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def select(self, columns: str = "*", count: CountMode | None = None) -> "QueryBuilder":
        """Select rows, or ask an insert/update/delete to return the rows it wrote."""
        state = self._building()
        if state.operation != "select":
            state.return_rows = True
        state.columns = columns or "*"
        state.count = count
        return self

    def insert(self, payload: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> "QueryBuilder":
        state = self._building()
        state.operation = "insert"
        state.payload = payload
        state.return_rows = False
        return self

    def update(self, payload: Mapping[str, Any]) -> "QueryBuilder":
        state = self._building()
        state.operation = "update"
        state.payload = payload
        state.return_rows = False
        return self

    def delete(self) -> "QueryBuilder":
        state = self._building()
        state.operation = "delete"
        state.payload = None
        state.return_rows = False
        return self

    # -------------------------------------------------------------------------
    # Filters
    # -------------------------------------------------------------------------

    def eq(self, column: str, value: Any) -> "QueryBuilder":
        return self._add_filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> "QueryBuilder":
        return self._add_filter(column, "neq", value)

    def in_(self, column: str, values: Sequence[Any]) -> "QueryBuilder":
        return self._add_filter(column, "in", list(values))

    def lt(self, column: str, value: Any) -> "QueryBuilder":
        return self._add_filter(column, "lt", value)

    def lte(self, column: str, value: Any) -> "QueryBuilder":
        return self._add_filter(column, "lte", value)

    def gt(self, column: str, value: Any) -> "QueryBuilder":
        return self._add_filter(column, "gt", value)

    def gte(self, column: str, value: Any) -> "QueryBuilder":
        return self._add_filter(column, "gte", value)

    def search(self, column: str, value: str) -> "QueryBuilder":
        """Case-insensitive substring match on a string column."""
        return self._add_filter(column, "search", value)

    def is_not_null(self, column: str) -> "QueryBuilder":
        return self._add_filter(column, "not_null")

    def not_(self, column: str, operator: str, value: Any) -> "QueryBuilder":
        """Negated filter. Supports ('is', None) and ('eq', value)."""
        if operator == "is" and value is None:
            return self._add_filter(column, "not_null")
        if operator == "eq":
            return self._add_filter(column, "neq", value)
        raise ValueError(f"Unsupported negated filter: not.{operator}")

    def filter(self, clause: FilterClause) -> "QueryBuilder":
        """Add a prebuilt FilterClause."""
        self._building().filters.append(clause)
        return self

    # -------------------------------------------------------------------------
    # Ordering, windowing, cardinality
    # -------------------------------------------------------------------------

    def order(self, column: str, desc: bool = False) -> "QueryBuilder":
        self._building().order_by = OrderBy(field=column, ascending=not desc)
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self._building().limit = count
        return self

    def offset(self, count: int) -> "QueryBuilder":
        self._building().offset = max(0, count)
        return self

    def range(self, start: int, end: int) -> "QueryBuilder":
        """Inclusive row window: offset=start, limit=end-start+1."""
        state = self._building()
        first = max(0, start)
        last = max(first, end)
        state.offset = first
        state.limit = last - first + 1
        return self

    def single(self) -> "QueryBuilder":
        """Require exactly one row; data becomes that row."""
        state = self._building()
        state.expect_single = True
        state.maybe_single = False
        return self

    def maybe_single(self) -> "QueryBuilder":
        """Allow zero rows (data None) but not more than one."""
        state = self._building()
        state.expect_single = False
        state.maybe_single = True
        return self

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(self) -> BackendResult:
        """Run the query once; repeated calls return the same result."""
        if self._execution is None:
            self._execution = asyncio.ensure_future(execute_query(self.state, self._gateway, self._guard))
        # Shielded: a cancelled caller does not abort the in-flight request
        return await asyncio.shield(self._execution)


# =============================================================================
# Executor
# =============================================================================


def collapse_single(rows: list[dict[str, Any]], state: QueryState, label: str = "single()") -> BackendResult:
    if not rows:
        if state.maybe_single:
            return BackendResult(data=None, count=0)
        return BackendResult(error=CardinalityError(f"No rows found for {label}."))
    if len(rows) > 1:
        return BackendResult(error=CardinalityError(f"{label} returned {len(rows)} rows, expected one."))
    return BackendResult(data=rows[0], count=1)


def _write_result(rows: list[dict[str, Any]], state: QueryState) -> BackendResult:
    if not state.return_rows:
        return BackendResult(data=None, count=len(rows))
    rows = project_columns(rows, state.columns)
    if state.wants_single:
        return collapse_single(rows, state)
    return BackendResult(data=rows, count=len(rows))


async def execute_query(state: QueryState, gateway: DocumentGateway, guard: AccessGuard | None) -> BackendResult:
    """Authorize, then dispatch on the operation."""
    if guard is not None:
        access_error = await guard.authorize(state.table, state.operation)
        if access_error is not None:
            logger.info("Denied %s on %s: %s", state.operation, state.table, access_error.message)
            return BackendResult(error=access_error)

    match state.operation:
        case "select":
            return await _execute_select(state, gateway)
        case "insert":
            return await _execute_insert(state, gateway)
        case "update":
            return await _execute_update(state, gateway)
        case "delete":
            return await _execute_delete(state, gateway)
    raise QueryStateError(f"Unsupported operation: {state.operation}")


async def _execute_select(state: QueryState, gateway: DocumentGateway) -> BackendResult:
    listing = await gateway.list(
        state.table,
        filters=state.filters,
        order_by=state.order_by,
        limit=state.limit,
        offset=state.offset,
    )
    if listing.error is not None:
        return BackendResult(error=listing.error)

    rows = filter_all(listing.rows, state.filters)
    rows = sort_records(rows, state.order_by)

    if listing.pushed_down:
        total = listing.total_count
    else:
        total = len(rows)
        if state.offset > 0:
            rows = rows[state.offset:]
    if state.limit is not None:
        rows = rows[: max(0, state.limit)]

    rows = project_columns(rows, state.columns)

    if state.wants_single:
        return collapse_single(rows, state)

    return BackendResult(data=rows, count=total if state.count == "exact" else len(rows))


async def _matching_rows(state: QueryState, gateway: DocumentGateway) -> BackendResult:
    # limit/offset only apply to select; writes touch every match
    listing = await gateway.list(state.table, filters=state.filters)
    if listing.error is not None:
        return BackendResult(error=listing.error)
    return BackendResult(data=filter_all(listing.rows, state.filters))


async def _execute_insert(state: QueryState, gateway: DocumentGateway) -> BackendResult:
    payloads = state.payload if isinstance(state.payload, (list, tuple)) else [state.payload]
    inserted: list[dict[str, Any]] = []

    for payload in payloads:
        result = await gateway.create(state.table, payload)
        if result.error is not None:
            if inserted:
                logger.warning(
                    "Insert into %s failed after %d row(s) were written; they are not rolled back",
                    state.table,
                    len(inserted),
                )
            return BackendResult(error=result.error)
        inserted.append(result.data)

    return _write_result(inserted, state)


async def _execute_update(state: QueryState, gateway: DocumentGateway) -> BackendResult:
    matched = await _matching_rows(state, gateway)
    if matched.error is not None:
        return matched

    updated: list[dict[str, Any]] = []
    for row in matched.data:
        row_id = row.get("id")
        if not isinstance(row_id, str):
            continue
        result = await gateway.update(state.table, row_id, state.payload)
        if result.error is not None:
            return BackendResult(error=result.error)
        updated.append(result.data)

    return _write_result(updated, state)


async def _execute_delete(state: QueryState, gateway: DocumentGateway) -> BackendResult:
    matched = await _matching_rows(state, gateway)
    if matched.error is not None:
        return matched

    deleted: list[dict[str, Any]] = []
    for row in matched.data:
        row_id = row.get("id")
        if not isinstance(row_id, str):
            continue
        result = await gateway.remove(state.table, row_id)
        if result.error is not None:
            return BackendResult(error=result.error)
        deleted.append(row)

    return _write_result(deleted, state)
