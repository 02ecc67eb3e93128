"""
Taskdesk - Realtime channel emulation.

A Channel collects table listeners, then subscribe() either attaches them
to the shared push transport or, when push is unavailable or fails,
starts a polling task that wakes every listener on a fixed interval.

Callbacks receive no payload: they are a "something changed" signal and
are expected to re-fetch. Each callback runs in isolation; one failing
listener never prevents the others from running.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from pydantic import BaseModel

from taskdesk.db.errors import BackendResult
from taskdesk.db.filters import FilterClause, parse_realtime_filter, stringify_value
from taskdesk.db.gateway import DocumentGateway
from taskdesk.realtime.transport import RealtimeTransport

logger = logging.getLogger(__name__)

DEFAULT_POLL_MS = 7000
MIN_POLL_MS = 3000

# Listener event name -> suffix of the store's event strings
EVENT_SUFFIXES = {
    "INSERT": ".create",
    "UPDATE": ".update",
    "DELETE": ".delete",
}

StatusCallback = Callable[[str], Any]


def poll_interval_seconds(poll_ms: int, minimum_ms: int = MIN_POLL_MS) -> float:
    """Polling period from a configured millisecond value, clamped to the minimum."""
    if poll_ms <= 0:
        return DEFAULT_POLL_MS / 1000
    return max(minimum_ms, poll_ms) / 1000


class ChannelFilter(BaseModel):
    """Which changes a listener cares about."""

    event: str = "*"
    table: str | None = None
    where: FilterClause | None = None

    @classmethod
    def from_legacy(cls, descriptor: Mapping[str, Any]) -> "ChannelFilter":
        """Build from a {"event", "table", "filter": "field=op.value"} mapping."""
        table = descriptor.get("table")
        return cls(
            event=str(descriptor.get("event") or "*").upper(),
            table=table if isinstance(table, str) and table else None,
            where=parse_realtime_filter(descriptor.get("filter")),
        )


@dataclass
class ChannelListener:
    kind: str
    filter: ChannelFilter
    callback: Callable[[], Any]


class Channel:
    """Change subscription over one or more tables."""

    def __init__(
        self,
        name: str,
        gateway: DocumentGateway,
        transport: RealtimeTransport | None = None,
        poll_interval: float = DEFAULT_POLL_MS / 1000,
    ):
        self.name = name
        self._gateway = gateway
        self._transport = transport
        self.poll_interval = poll_interval
        self.listeners: list[ChannelListener] = []
        self._subscribed = False
        self._poll_task: asyncio.Task | None = None
        self._push_unsubscribe: Callable[[], None] | None = None
        self._pending: set[asyncio.Future] = set()

    def __repr__(self) -> str:
        return f"<Channel {self.name!r} mode={self.mode}>"

    @property
    def mode(self) -> str:
        if self._push_unsubscribe is not None:
            return "push"
        if self._poll_task is not None:
            return "poll"
        return "idle"

    def on(
        self,
        kind: str,
        descriptor: ChannelFilter | Mapping[str, Any],
        callback: Callable[[], Any],
    ) -> "Channel":
        """Register a listener. Listeners should be added before subscribe()."""
        if not callable(callback):
            return self
        if not isinstance(descriptor, ChannelFilter):
            descriptor = ChannelFilter.from_legacy(descriptor)
        if self._subscribed:
            logger.warning(
                "Listener added to channel %s after subscribe(); it will not join the push topic set",
                self.name,
            )
        self.listeners.append(ChannelListener(kind=kind, filter=descriptor, callback=callback))
        return self

    def topics(self) -> list[str]:
        """Distinct store topics implied by the listeners' tables."""
        resolved = set()
        for listener in self.listeners:
            if listener.filter.table:
                topic = self._gateway.topic_for_table(listener.filter.table)
                if topic:
                    resolved.add(topic)
        return sorted(resolved)

    def subscribe(self, on_status: StatusCallback | None = None) -> "Channel":
        """
        Start delivering change signals. Must be called from a running event loop.

        Prefers the push transport; falls back to polling when no transport
        is configured, no listener maps to a topic, or subscribing raises.
        """
        if self._subscribed:
            return self
        self._subscribed = True

        topics = self.topics()
        if self._transport is not None and topics:
            try:
                self._push_unsubscribe = self._transport.subscribe(topics, self.handle_event)
            except Exception as exc:
                logger.warning("Realtime subscribe failed for channel %s, falling back to polling: %s", self.name, exc)
                self._start_polling()
        else:
            self._start_polling()

        if on_status is not None:
            try:
                on_status("SUBSCRIBED")
            except Exception:
                logger.exception("Channel status callback failed")
        return self

    def unsubscribe(self) -> None:
        """Stop polling and detach from the push transport. Safe to call repeatedly."""
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

        if self._push_unsubscribe is not None:
            detach = self._push_unsubscribe
            self._push_unsubscribe = None
            try:
                detach()
            except Exception:
                logger.exception("Failed to unsubscribe realtime channel %s", self.name)

        self._subscribed = False

    async def track(self, state: Mapping[str, Any] | None = None) -> BackendResult:
        """Presence is not supported by the store; accepted and ignored."""
        return BackendResult()

    def presence_state(self) -> dict[str, list[Any]]:
        return {}

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def matches(self, listener: ChannelListener, event: Mapping[str, Any]) -> bool:
        """Whether a push event concerns this listener's table, event kind and eq filter."""
        descriptor = listener.filter
        event_names = [name for name in event.get("events") or [] if isinstance(name, str)]

        suffix = EVENT_SUFFIXES.get(descriptor.event)
        if suffix is not None and not any(name.endswith(suffix) for name in event_names):
            return False

        if not descriptor.table:
            return True

        collection_id = self._gateway.collection_id(descriptor.table)
        if not collection_id:
            return False
        marker = f".collections.{collection_id}."
        if not any(marker in name for name in event_names):
            return False

        where = descriptor.where
        if where is None or where.op != "eq":
            return True
        payload = event.get("payload")
        if not isinstance(payload, Mapping):
            return False
        return stringify_value(payload.get(where.field)) == stringify_value(where.value)

    def handle_event(self, event: dict[str, Any]) -> None:
        """Push path: wake the listeners this event matches."""
        self._trigger([listener for listener in self.listeners if self.matches(listener, event)])

    def _trigger(self, listeners: list[ChannelListener]) -> None:
        for listener in listeners:
            try:
                result = listener.callback()
            except Exception:
                logger.exception("Channel %s listener failed", self.name)
                continue
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._pending.add(future)
                future.add_done_callback(self._settle)

    def _settle(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Channel %s listener failed", self.name, exc_info=future.exception())

    def _start_polling(self) -> None:
        if self._poll_task is None:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll())

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            self._trigger(list(self.listeners))
