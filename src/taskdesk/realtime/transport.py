"""
Taskdesk - Appwrite realtime connection.

One RealtimeConnection multiplexes every channel's topics over a single
WebSocket. Appwrite takes the topic set in the connection URL, so the
socket is reopened whenever the set of subscribed topics changes.

The realtime endpoint does not accept the API key, so a connection only
receives the events its session may read: pass the session cookie in
`headers` for the WebSocket handshake. The connection is owned by whoever
creates it (normally BackendClient) and must be closed explicitly with
`await connection.close()`.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Callable, Iterable, Mapping, Protocol
from urllib.parse import urlencode

import websockets

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], None]

HEARTBEAT_SECONDS = 20.0
RECONNECT_DELAY_SECONDS = 1.0


class RealtimeTransport(Protocol):
    """What a Channel needs from a push transport."""

    def subscribe(self, topics: Iterable[str], callback: EventCallback) -> Callable[[], None]:
        """Register callback for events on any of `topics`. Returns an unsubscribe function."""
        ...


def realtime_url(endpoint_with_version: str, project_id: str, topics: Iterable[str]) -> str:
    """WebSocket URL for a topic set: https -> wss, http -> ws."""
    if endpoint_with_version.startswith("https://"):
        base = "wss://" + endpoint_with_version[len("https://"):]
    elif endpoint_with_version.startswith("http://"):
        base = "ws://" + endpoint_with_version[len("http://"):]
    else:
        base = endpoint_with_version
    params = [("project", project_id)] + [("channels[]", topic) for topic in sorted(set(topics))]
    return f"{base}/realtime?{urlencode(params)}"


class RealtimeConnection:
    """
    Shared WebSocket to the Appwrite realtime endpoint.

    subscribe() is synchronous and must be called from a running event
    loop; it raises RuntimeError when no loop is running or the connection
    has been closed, which channels treat as "push unavailable".
    """

    def __init__(
        self,
        endpoint_with_version: str,
        project_id: str,
        connect: Callable[..., Any] = websockets.connect,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        headers: Mapping[str, str] | None = None,
    ):
        self.endpoint_with_version = endpoint_with_version
        self.project_id = project_id
        self.headers = dict(headers or {})
        self._connect = connect
        self._reconnect_delay = reconnect_delay
        self._subscriptions: dict[int, tuple[frozenset[str], EventCallback]] = {}
        self._ids = itertools.count(1)
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def topics(self) -> set[str]:
        return {topic for topics, _ in self._subscriptions.values() for topic in topics}

    def subscribe(self, topics: Iterable[str], callback: EventCallback) -> Callable[[], None]:
        if self._closed:
            raise RuntimeError("Realtime connection is closed")
        topic_set = frozenset(topics)
        if not topic_set:
            raise ValueError("At least one topic is required")
        asyncio.get_running_loop()

        subscription_id = next(self._ids)
        previous = self.topics
        self._subscriptions[subscription_id] = (topic_set, callback)
        if self.topics != previous or self._task is None:
            self._restart()

        def unsubscribe() -> None:
            before = self.topics
            if self._subscriptions.pop(subscription_id, None) is None:
                return
            if not self._subscriptions:
                self._stop()
            elif self.topics != before and not self._closed:
                self._restart()

        return unsubscribe

    def open(self) -> None:
        """Start the socket if there are subscriptions and it is not running."""
        if self._closed:
            raise RuntimeError("Realtime connection is closed")
        if self._subscriptions and (self._task is None or self._task.done()):
            self._restart()

    async def close(self) -> None:
        """Stop the socket and drop every subscription."""
        self._closed = True
        self._subscriptions.clear()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _restart(self) -> None:
        self._stop()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while not self._closed and self._subscriptions:
            url = realtime_url(self.endpoint_with_version, self.project_id, self.topics)
            try:
                connecting = self._connect(url, additional_headers=self.headers) if self.headers else self._connect(url)
                async with connecting as socket:
                    logger.debug("Realtime connected: %s", url)
                    await self._read(socket)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Realtime connection dropped (%s); reconnecting", exc)
            await asyncio.sleep(self._reconnect_delay)

    async def _read(self, socket: Any) -> None:
        while True:
            try:
                raw = await asyncio.wait_for(socket.recv(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                await socket.send(json.dumps({"type": "ping"}))
                continue

            try:
                message = json.loads(raw)
            except (TypeError, ValueError):
                logger.debug("Ignoring non-JSON realtime frame")
                continue

            match message:
                case {"type": "event", "data": dict(data)}:
                    self.dispatch(data)
                case {"type": "error", "data": data}:
                    logger.warning("Realtime error frame: %s", data)

    def dispatch(self, event: dict[str, Any]) -> None:
        """Deliver one event to every subscription whose topics it was sent on."""
        channels = set(event.get("channels") or [])
        for topics, callback in list(self._subscriptions.values()):
            if channels and not channels & topics:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Realtime subscriber failed")
