"""
Taskdesk - Database access.

Relational-style query layer over the Appwrite document store. The
client itself lives in taskdesk.db.client (it depends on taskdesk.auth,
which imports from this package).
"""

from taskdesk.db.errors import BackendError, BackendResult
from taskdesk.db.filters import FilterClause, OrderBy
from taskdesk.db.query import QueryBuilder

__all__ = [
    "BackendError",
    "BackendResult",
    "FilterClause",
    "OrderBy",
    "QueryBuilder",
]
