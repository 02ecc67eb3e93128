"""
Database Adapter Protocol.

The interface application code (scheduler jobs, the CLI) programs against.
BackendClient is the Appwrite-backed implementation; tests can substitute
anything exposing the same two methods.

table() returns a lazily evaluated QueryBuilder with the PostgREST-style
fluent API (.select(), .insert(), .update(), .delete(), .eq(), ...,
.execute()). rpc() calls a named server function.
"""

from typing import Any, Protocol, runtime_checkable

from taskdesk.db.errors import BackendResult


@runtime_checkable
class DatabaseAdapter(Protocol):
    """Relational-style access to the document store."""

    def table(self, name: str) -> Any:
        """
        Return a query builder for the given table.

        Nothing is sent until the builder's execute() is awaited.
        """
        ...

    async def rpc(self, function_name: str, params: dict | None = None) -> BackendResult:
        """Call a server function. Returns a BackendResult."""
        ...
