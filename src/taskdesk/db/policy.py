"""
Taskdesk - Table-level access control.

AccessGuard.authorize() runs once per query execution, before any gateway
call. The acting user's roles are resolved fresh every time (no caching)
so a role change takes effect on the very next request.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

from taskdesk.db.errors import AuthorizationError

logger = logging.getLogger(__name__)

AppRole = Literal["admin", "manager", "member"]
Operation = Literal["select", "insert", "update", "delete"]

WRITE_OPERATIONS = frozenset({"insert", "update", "delete"})
MUTATE_OPERATIONS = frozenset({"update", "delete"})


@dataclass(frozen=True)
class AccessPolicy:
    """
    Static table sets driving authorization.

    Attributes:
        immutable_tables: every write rejected
        append_only_tables: insert allowed, update/delete rejected
        admin_only_write_tables: writes require admin
        manager_read_tables: reads require manager or admin
        manager_write_tables: writes require manager or admin
        admin_mutation_tables: subset of manager_write_tables where update
            and delete additionally require admin
    """

    immutable_tables: frozenset[str] = frozenset()
    append_only_tables: frozenset[str] = frozenset({"activity_logs", "role_history"})
    admin_only_write_tables: frozenset[str] = frozenset({"user_roles", "role_history"})
    manager_read_tables: frozenset[str] = frozenset({"company_transactions"})
    manager_write_tables: frozenset[str] = frozenset({
        "projects",
        "workspaces",
        "workspace_members",
        "company_transactions",
        "approval_rules",
        "governance_actions",
    })
    admin_mutation_tables: frozenset[str] = frozenset({"company_transactions"})

    def needs_roles(self, table: str, operation: str) -> bool:
        if operation == "select":
            return table in self.manager_read_tables
        return table in self.admin_only_write_tables or table in self.manager_write_tables


DEFAULT_POLICY = AccessPolicy()


def has_manager_access(roles: set[str]) -> bool:
    return "manager" in roles or "admin" in roles


def has_admin_access(roles: set[str]) -> bool:
    return "admin" in roles


@dataclass
class Actor:
    """The signed-in user as far as authorization cares."""

    id: str
    email: str | None = None


class AccessGuard:
    """
    Enforces AccessPolicy for one query at a time.

    Collaborators are injected as callables so the guard has no import-time
    dependency on the query layer:
        current_actor: account probe, None when anonymous
        load_role_rows: unguarded read of user_roles rows for a user id
        privileged_role: config-derived role for an email, if any
    """

    def __init__(
        self,
        policy: AccessPolicy,
        current_actor: Callable[[], Awaitable[Actor | None]],
        load_role_rows: Callable[[str], Awaitable[list[dict]]],
        privileged_role: Callable[[str | None], str | None] = lambda email: None,
    ):
        self.policy = policy
        self._current_actor = current_actor
        self._load_role_rows = load_role_rows
        self._privileged_role = privileged_role

    async def resolve_roles(self) -> set[str]:
        """Roles of the acting user; empty when nobody is signed in."""
        actor = await self._current_actor()
        if actor is None:
            return set()

        roles = [row.get("role") for row in await self._load_role_rows(actor.id)]
        resolved = {role for role in roles if isinstance(role, str)}

        privileged = self._privileged_role(actor.email)
        if privileged:
            resolved.add(privileged)

        if not resolved:
            resolved.add("member")
        return resolved

    async def authorize(self, table: str, operation: Operation) -> AuthorizationError | None:
        """Return an AuthorizationError if the operation is not allowed, else None."""
        policy = self.policy
        is_write = operation in WRITE_OPERATIONS

        if is_write and table in policy.immutable_tables:
            return AuthorizationError(f"{table} is immutable and cannot be modified.")

        if operation in MUTATE_OPERATIONS and table in policy.append_only_tables:
            return AuthorizationError(f"{table} is append-only and cannot be modified.")

        if not policy.needs_roles(table, operation):
            return None

        roles = await self.resolve_roles()
        logger.debug("Authorizing %s on %s with roles %s", operation, table, sorted(roles))

        if operation == "select" and table in policy.manager_read_tables:
            if not has_manager_access(roles):
                return AuthorizationError(f"Access denied: {table} can only be read by managers/admins.")

        if is_write and table in policy.admin_only_write_tables:
            if not has_admin_access(roles):
                return AuthorizationError(f"Access denied: {table} requires admin privileges.")

        if is_write and table in policy.manager_write_tables:
            if not has_manager_access(roles):
                return AuthorizationError(f"Access denied: {table} requires manager/admin privileges.")
            if operation in MUTATE_OPERATIONS and table in policy.admin_mutation_tables:
                if not has_admin_access(roles):
                    return AuthorizationError(f"Access denied: only admins can edit or delete {table}.")

        return None
