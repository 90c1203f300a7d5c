"""
Twitch EventSub websocket session.

Lifecycle:
- session_welcome     → session id captured, "ready" (and "connected" on
                        the first welcome of a lineage)
- session_reconnect   → live handoff to the given URL; the old socket is
                        closed once the new one is welcomed
- notification        → payload forwarded verbatim on "notification"
- session_keepalive   → ignored
- unexpected close    → "disconnected", then a delayed fresh connect
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import aiohttp
import httpx

from chatstream.services.twitch.api.helix import HelixClient
from chatstream.services.twitch.errors import HelixError, SubscriptionError, TransportError
from chatstream.shared.config.chat import EventSubConfig
from chatstream.shared.logging.logger import get_logger
from chatstream.shared.utils.emitter import Emitter

log = get_logger("twitch.eventsub")

SubscribeFn = Callable[[str, Any, Dict[str, Any]], None]
SubscriptionBuilder = Callable[[SubscribeFn], None]
WsConnector = Callable[[str], Awaitable[Any]]

_CLOSED_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
    aiohttp.WSMsgType.ERROR,
)


def subscription_key(subscription_type: str, version: Any, condition: Dict[str, Any]) -> Tuple:
    return (subscription_type, str(version), tuple(sorted((k, str(v)) for k, v in condition.items())))


@dataclass(eq=False)
class _Connection:
    ws: Any
    url: str
    handoff: bool = False
    task: Optional[asyncio.Task] = None


@dataclass(eq=False)
class _Subscription:
    """One subscribe() call: the builder plus the remote ids it produced."""

    client: "EventSubClient"
    builder: SubscriptionBuilder
    closed: bool = False
    ids: Dict[Tuple, str] = field(default_factory=dict)
    # key → lineage the in-flight request was issued for
    pending: Dict[Tuple, int] = field(default_factory=dict)

    def declared(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        wanted: List[Tuple[str, str, Dict[str, Any]]] = []

        def to(subscription_type: str, version: Any, condition: Dict[str, Any]) -> None:
            wanted.append((subscription_type, str(version), dict(condition)))

        self.builder(to)
        return wanted

    async def sync(self) -> None:
        """Create every declared subscription not already held or in flight."""
        if self.closed or not self.client.session_id:
            return

        lineage = self.client.lineage
        jobs = []
        for subscription_type, version, condition in self.declared():
            key = subscription_key(subscription_type, version, condition)
            if key in self.ids or self.pending.get(key) == lineage:
                continue
            self.pending[key] = lineage
            jobs.append(self._create(key, subscription_type, version, condition, lineage))

        if jobs:
            await asyncio.gather(*jobs)

    async def _create(
        self,
        key: Tuple,
        subscription_type: str,
        version: str,
        condition: Dict[str, Any],
        lineage: int,
    ) -> None:
        client = self.client
        try:
            sub_id = await client.helix.create_eventsub_subscription(
                subscription_type, version, condition, client.session_id or ""
            )
        except (HelixError, httpx.HTTPError) as e:
            if self.pending.get(key) == lineage:
                del self.pending[key]
            error = SubscriptionError(
                f"Could not subscribe to {subscription_type}: {e}",
                subscription_type=subscription_type,
                status_code=getattr(e, "status_code", None),
            )
            log.warning(str(error))
            client.emit_error(error)
            return

        if self.pending.get(key) == lineage:
            del self.pending[key]

        if self.closed:
            # unsubscribe() ran while the request was in flight.
            client.spawn(client.delete_subscription(sub_id), cleanup=True)
            return

        if lineage != client.lineage:
            # The session this was created for is gone; Twitch drops it with the socket.
            log.debug(f"Discarding stale subscription {sub_id} ({subscription_type})")
            return

        self.ids[key] = sub_id
        log.info(f"Subscribed to {subscription_type} v{version} (id={sub_id})")

    def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.client.forget(self)

        ids = list(self.ids.values())
        self.ids.clear()
        for sub_id in ids:
            self.client.spawn(self.client.delete_subscription(sub_id), cleanup=True)


class EventSubClient:
    """
    One EventSub websocket shared by every channel session of a ChatClient.

    Emits: connected, ready, disconnected, reconnect_requested,
    notification (raw payload dict), error.
    """

    def __init__(
        self,
        helix: HelixClient,
        *,
        config: Optional[EventSubConfig] = None,
        connector: Optional[WsConnector] = None,
    ):
        self.helix = helix
        self.config = config or EventSubConfig()
        self.session_id: Optional[str] = None
        self.lineage = 0

        self._connector = connector or self._aiohttp_connect
        self._http: Optional[aiohttp.ClientSession] = None

        self._events = Emitter("twitch.eventsub")
        self._ready = asyncio.Event()

        self._current: Optional[_Connection] = None
        self._pending: Optional[_Connection] = None
        self._opening = False
        self._closed = False

        self._subscriptions: List[_Subscription] = []
        self._reconnect_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._cleanup_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #

    def on(self, event: str, handler: Callable[[Any], Any]) -> Callable[[], None]:
        return self._events.on(event, handler)

    def off(self, event: str, handler: Callable[[Any], Any]) -> None:
        self._events.off(event, handler)

    def emit_error(self, error: Exception) -> None:
        self._events.emit("error", error)

    @property
    def connected(self) -> bool:
        return self._current is not None and self._ready.is_set()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """Open the socket if needed and wait for the session welcome."""
        self._closed = False
        if self._current is None and self._pending is None and not self._opening:
            await self._open(self.config.url, handoff=False)
        await self._ready.wait()

    async def close(self) -> None:
        self._closed = True

        if self._reconnect_task:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        connections = [c for c in (self._current, self._pending) if c is not None]
        self._current = None
        self._pending = None
        self.session_id = None
        self._ready.clear()

        for conn in connections:
            await self._close_socket(conn)
            if conn.task and conn.task is not asyncio.current_task():
                conn.task.cancel()
                try:
                    await conn.task
                except asyncio.CancelledError:
                    pass

        # Pending subscription work dies with the socket; removals still finish.
        for task in list(self._tasks):
            if task not in self._cleanup_tasks:
                task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        if self._http is not None:
            await self._http.close()
            self._http = None

        log.info("EventSub client closed")

    async def _aiohttp_connect(self, url: str):
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return await self._http.ws_connect(url)

    async def _open(self, url: str, *, handoff: bool) -> Optional[_Connection]:
        if not handoff:
            self._opening = True

        log.info(f"Connecting to EventSub ({url}){' [handoff]' if handoff else ''}")
        try:
            ws = await self._connector(url)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            error = TransportError(f"Could not connect to EventSub: {e}")
            log.warning(str(error))
            self._events.emit("error", error)
            if not handoff:
                self._schedule_reconnect()
            return None
        finally:
            if not handoff:
                self._opening = False

        if self._closed:
            await ws.close()
            return None

        conn = _Connection(ws=ws, url=url, handoff=handoff)
        if handoff:
            self._pending = conn
        else:
            self._current = conn
        conn.task = asyncio.create_task(self._read_loop(conn))
        return conn

    async def _read_loop(self, conn: _Connection) -> None:
        try:
            while True:
                msg = await conn.ws.receive()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_frame(conn, msg.data)
                elif msg.type in _CLOSED_TYPES:
                    break
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, OSError, RuntimeError) as e:
            error = TransportError(f"EventSub read failed: {e}")
            log.warning(str(error))
            self._events.emit("error", error)

        self._on_socket_closed(conn)

    def _on_socket_closed(self, conn: _Connection) -> None:
        if conn is self._pending:
            log.warning("EventSub handoff socket closed before welcome")
            self._pending = None
            if self._current is None:
                self._connection_lost()
            return

        if conn is not self._current:
            # Retired by a handoff, or closed by close().
            return

        if self._pending is not None:
            log.info("EventSub socket closed during handoff; waiting for new session")
            self._current = None
            self._ready.clear()
            return

        self._current = None
        self._connection_lost()

    def _connection_lost(self) -> None:
        self.session_id = None
        self._ready.clear()
        log.warning("EventSub connection closed unexpectedly")
        self._events.emit("disconnected")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_after(self.config.reconnect_delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._closed or self._current is not None or self._pending is not None:
            return
        await self._open(self.config.url, handoff=False)

    async def _close_socket(self, conn: _Connection) -> None:
        try:
            await conn.ws.close()
        except (aiohttp.ClientError, OSError, RuntimeError) as e:
            log.debug(f"Error during EventSub close ignored: {e}")

    # ------------------------------------------------------------------ #
    # Frames
    # ------------------------------------------------------------------ #

    def _handle_frame(self, conn: _Connection, data: str) -> None:
        try:
            message = json.loads(data)
        except ValueError:
            log.warning(f"Dropping non-JSON EventSub frame: {data[:120]!r}")
            return

        if not isinstance(message, dict):
            return

        metadata = message.get("metadata") or {}
        payload = message.get("payload") or {}
        message_type = metadata.get("message_type")

        if message_type == "session_welcome":
            session_id = (payload.get("session") or {}).get("id")
            if not session_id:
                log.warning("EventSub welcome without session id")
                return
            self._on_welcome(conn, session_id)

        elif message_type == "session_reconnect":
            url = (payload.get("session") or {}).get("reconnect_url")
            log.info("EventSub requested reconnect")
            self._events.emit("reconnect_requested")
            if url and conn is self._current and self._pending is None:
                self.spawn(self._open(url, handoff=True))

        elif message_type == "notification":
            self._events.emit("notification", payload)

        elif message_type == "revocation":
            sub = payload.get("subscription") or {}
            log.warning(f"EventSub subscription revoked: {sub.get('type')} ({sub.get('status')})")

        elif message_type == "session_keepalive":
            pass

        else:
            log.debug(f"Ignoring EventSub message type {message_type!r}")

    def _on_welcome(self, conn: _Connection, session_id: str) -> None:
        self.session_id = session_id
        self._ready.set()

        if conn.handoff:
            old = self._current
            self._current = conn
            if self._pending is conn:
                self._pending = None
            if old is not None and old is not conn:
                self.spawn(self._close_socket(old))
            log.info(f"EventSub handoff complete (session={session_id})")
            self._events.emit("ready")
            for sub in list(self._subscriptions):
                self.spawn(sub.sync())
            return

        self.lineage += 1
        log.info(f"EventSub connected (session={session_id})")
        self._events.emit("connected")
        self._events.emit("ready")

        for sub in list(self._subscriptions):
            sub.ids.clear()
            self.spawn(sub.sync())

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #

    def subscribe(self, builder: SubscriptionBuilder) -> Callable[[], None]:
        """
        Register a set of subscriptions declared by `builder(to)`.

        They are created once connected and again after every reconnect.
        The returned function removes them; it may be called any number of
        times.
        """
        sub = _Subscription(client=self, builder=builder)
        self._subscriptions.append(sub)
        self.spawn(self._start(sub))
        return sub.unsubscribe

    async def _start(self, sub: _Subscription) -> None:
        await self.connect()
        await sub.sync()

    def forget(self, sub: _Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    async def delete_subscription(self, subscription_id: str) -> None:
        try:
            await self.helix.delete_eventsub_subscription(subscription_id)
            log.info(f"Removed EventSub subscription {subscription_id}")
        except (HelixError, httpx.HTTPError) as e:
            log.warning(f"Could not remove EventSub subscription {subscription_id}: {e}")

    def spawn(self, coro: Awaitable[Any], *, cleanup: bool = False) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if cleanup:
            self._cleanup_tasks.add(task)
            task.add_done_callback(self._cleanup_tasks.discard)
        return task
