"""
Taskdesk - In-memory filter and sort evaluation.

Pure functions over plain dict records. This is the single source of
query semantics: the gateway may push filters down to the store, but the
executor always re-applies them here.

Comparison rules:
- None sorts last ascending, first descending
- ISO-8601 datetime strings compare by timestamp, other strings lexically
- booleans compare as 0/1
"""

import re
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any, Iterable, Literal

from pydantic import BaseModel

FilterOperator = Literal["eq", "in", "neq", "lt", "lte", "gt", "gte", "not_null", "search"]

FILTER_OPERATORS: tuple[str, ...] = ("eq", "in", "neq", "lt", "lte", "gt", "gte", "not_null", "search")


class FilterClause(BaseModel):
    """A single filter predicate. Predicates in a list are ANDed."""

    field: str
    op: FilterOperator
    value: Any = None


class OrderBy(BaseModel):
    """Single sort key."""

    field: str
    ascending: bool = True


# =============================================================================
# Comparison
# =============================================================================


def parse_iso_timestamp(value: str) -> float | None:
    """Timestamp for an ISO-8601 date-time string, None if it is not one."""
    if "T" not in value:
        return None
    candidate = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def to_comparable(value: Any) -> float | int | str | None:
    """Normalize a field value for ordering comparisons."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        timestamp = parse_iso_timestamp(value)
        return timestamp if timestamp is not None else value
    return str(value)


def _compare(left: float | int | str, right: float | int | str) -> int:
    # Mixed number/string pairs fall back to string comparison
    if isinstance(left, str) != isinstance(right, str):
        left, right = str(left), str(right)
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def _strict_equal(left: Any, right: Any) -> bool:
    # True must not equal 1
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


# =============================================================================
# Filtering
# =============================================================================


def matches(record: dict[str, Any], clause: FilterClause) -> bool:
    """Whether one record satisfies one predicate."""
    field_value = record.get(clause.field)

    match clause.op:
        case "eq":
            return _strict_equal(field_value, clause.value)
        case "neq":
            return not _strict_equal(field_value, clause.value)
        case "in":
            if not isinstance(clause.value, (list, tuple, set, frozenset)):
                return False
            return any(_strict_equal(field_value, candidate) for candidate in clause.value)
        case "not_null":
            return field_value is not None
        case "search":
            if not isinstance(field_value, str) or not isinstance(clause.value, str):
                return False
            return clause.value.lower() in field_value.lower()
        case "lt" | "lte" | "gt" | "gte":
            left = to_comparable(field_value)
            right = to_comparable(clause.value)
            if left is None or right is None:
                return False
            result = _compare(left, right)
            if clause.op == "lt":
                return result < 0
            if clause.op == "lte":
                return result <= 0
            if clause.op == "gt":
                return result > 0
            return result >= 0
    return True


def filter_all(records: Iterable[dict[str, Any]], clauses: list[FilterClause]) -> list[dict[str, Any]]:
    """Records matching every clause, in their original order."""
    if not clauses:
        return list(records)
    return [record for record in records if all(matches(record, clause) for clause in clauses)]


def sort_records(records: Iterable[dict[str, Any]], order_by: OrderBy | None) -> list[dict[str, Any]]:
    """
    Stable single-key sort.

    None is treated as greater than any value, so it lands last ascending;
    reverse=True keeps ties in their prior relative order.
    """
    rows = list(records)
    if order_by is None:
        return rows

    def compare_rows(a: dict[str, Any], b: dict[str, Any]) -> int:
        left = to_comparable(a.get(order_by.field))
        right = to_comparable(b.get(order_by.field))
        if left is None and right is None:
            return 0
        if left is None:
            return 1
        if right is None:
            return -1
        return _compare(left, right)

    return sorted(rows, key=cmp_to_key(compare_rows), reverse=not order_by.ascending)


# =============================================================================
# Legacy realtime filter strings ("field=op.value")
# =============================================================================

_REALTIME_FILTER_PATTERN = re.compile(r"^([a-zA-Z0-9_]+)=([a-zA-Z_]+)\.(.+)$")


def parse_realtime_filter(raw: Any) -> FilterClause | None:
    """
    Parse a `field=op.value` filter string.

    Returns None for anything that is not a string of that shape or that
    names an unknown operator. The value is always kept as a string.
    """
    if not isinstance(raw, str):
        return None
    match = _REALTIME_FILTER_PATTERN.match(raw)
    if not match:
        return None
    field, op, value = match.groups()
    if op not in FILTER_OPERATORS:
        return None
    return FilterClause(field=field, op=op, value=value)


def stringify_value(value: Any) -> str:
    """Render a payload value the way it appears in a filter string."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
