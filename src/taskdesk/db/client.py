"""
Taskdesk - Backend client.

Relational-style facade over Appwrite. All application data access goes
through here:

    client = get_client()
    result = await client.table("tasks").select("*").eq("status", "todo").execute()

BackendClient owns the HTTP client and its per-session realtime
connections; close it with `await client.aclose()` (or use it as an
async context manager).
"""

import logging
from typing import Any

import httpx

from taskdesk.auth import AuthBridge
from taskdesk.company_policy import get_privileged_email_role
from taskdesk.config import Settings, get_settings
from taskdesk.db.errors import BackendError, BackendResult
from taskdesk.db.gateway import DocumentGateway
from taskdesk.db.policy import DEFAULT_POLICY, AccessGuard, AccessPolicy
from taskdesk.db.query import QueryBuilder
from taskdesk.db.request_context import get_request_context, session_cookie_names
from taskdesk.db.schema import TableRegistry
from taskdesk.db.storage import Storage
from taskdesk.realtime.channel import Channel, poll_interval_seconds
from taskdesk.realtime.transport import RealtimeConnection, RealtimeTransport

logger = logging.getLogger(__name__)


class BackendClient:
    """Query builder, auth, storage and realtime entry points for one backend."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        realtime: RealtimeTransport | None = None,
        policy: AccessPolicy | None = None,
        registry: TableRegistry | None = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = DocumentGateway(self.settings, registry=registry, http_client=http_client)
        self.auth = AuthBridge(self.settings, self.gateway)
        self.storage = Storage(self.gateway)
        self.guard = AccessGuard(
            policy or DEFAULT_POLICY,
            current_actor=self.auth.current_actor,
            load_role_rows=self._load_role_rows,
            privileged_role=lambda email: get_privileged_email_role(email, self.settings),
        )
        self._realtime = realtime
        self._session_connections: dict[str, RealtimeConnection] = {}
        self._channels: list[Channel] = []

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def table(self, name: str) -> QueryBuilder:
        """Guarded query builder for a table."""
        return QueryBuilder(name, self.gateway, self.guard)

    from_ = table

    async def _load_role_rows(self, user_id: str) -> list[dict]:
        # Unguarded: authorizing this read would recurse into role resolution
        result = await QueryBuilder("user_roles", self.gateway).select("*").eq("user_id", user_id).execute()
        if result.error is not None:
            logger.warning("Could not load roles for %s: %s", user_id, result.error.message)
            return []
        return result.data or []

    async def rpc(self, function_name: str, params: dict | None = None) -> BackendResult:
        """Server functions do not exist on this backend."""
        return BackendResult(
            error=BackendError(
                f"RPC '{function_name}' is not implemented for the Appwrite backend adapter.",
                status=501,
            )
        )

    # -------------------------------------------------------------------------
    # Realtime
    # -------------------------------------------------------------------------

    @property
    def realtime(self) -> RealtimeTransport | None:
        """
        Push transport for the current context, None when channels must poll.

        A transport passed to the constructor is always used. Otherwise push
        needs an interactive request carrying a session cookie, and each
        session gets its own connection that presents the cookie on the
        handshake. Server context has no session, so its channels poll.
        """
        if self._realtime is not None:
            return self._realtime
        if not (self.settings.realtime_enabled and self.settings.has_auth_config):
            return None
        context = get_request_context()
        if context is None:
            return None

        project_id = self.settings.appwrite_project_id.strip()
        session = [
            f"{name}={context.cookies[name]}"
            for name in session_cookie_names(project_id)
            if context.cookies.get(name)
        ]
        if not session:
            return None

        cookie_header = "; ".join(session)
        connection = self._session_connections.get(cookie_header)
        if connection is None or connection.closed:
            connection = RealtimeConnection(
                self.settings.endpoint_with_version,
                project_id,
                headers={"Cookie": cookie_header},
            )
            self._session_connections[cookie_header] = connection
        return connection

    def channel(self, name: str) -> Channel:
        channel = Channel(
            name,
            self.gateway,
            transport=self.realtime,
            poll_interval=poll_interval_seconds(self.settings.sync_poll_ms),
        )
        self._channels.append(channel)
        return channel

    def remove_channel(self, channel: Channel) -> None:
        channel.unsubscribe()
        if channel in self._channels:
            self._channels.remove(channel)

    def get_channels(self) -> list[Channel]:
        return list(self._channels)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def aclose(self) -> None:
        for channel in list(self._channels):
            self.remove_channel(channel)
        for connection in self._session_connections.values():
            await connection.close()
        self._session_connections.clear()
        await self.gateway.aclose()


# Singleton client instance
_client: BackendClient | None = None


def get_client() -> BackendClient:
    """
    Get the backend client.

    Uses singleton pattern to reuse connections.
    """
    global _client

    if _client is None:
        _client = BackendClient(get_settings())

    return _client
