import asyncio
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from chatstream.services.twitch.api.badges import BadgeCatalog, BadgeInfo, fetch_channel_badges
from chatstream.services.twitch.api.emotes import EmoteMap
from chatstream.services.twitch.api.eventsub import EventSubClient
from chatstream.services.twitch.api.helix import HelixClient
from chatstream.services.twitch.api.irc import TwitchIrcClient
from chatstream.services.twitch.api.recent_messages import RecentMessagesClient
from chatstream.services.twitch.errors import (
    AuthenticationError,
    HelixError,
    HistoricalFetchError,
    SubscriptionError,
)
from chatstream.services.twitch.models import notification as nt
from chatstream.services.twitch.models.irc import IrcMessage
from chatstream.services.twitch.models.notification import parse_notification
from chatstream.services.twitch.normalizer import (
    irc_to_deletion,
    irc_to_event,
    notification_to_deletion,
    notification_to_event,
)
from chatstream.shared.chat.event_log import EventLog, EventLogView
from chatstream.shared.chat.events import (
    ChatEvent,
    ChatMessage,
    DeletionSignal,
    SystemEvent,
    UserInfo,
    create_system_event,
    utc_now,
)
from chatstream.shared.chat.segmenter import Segment, segment_message
from chatstream.shared.config.chat import ChatConfig
from chatstream.shared.logging.logger import get_logger
from chatstream.shared.utils.emitter import Emitter

log = get_logger("core.channel")

MSG_CONNECTED = "Connected to Twitch."
MSG_DISCONNECTED = "Disconnected from Twitch."
MSG_RECONNECT_REQUESTED = "Twitch asked us to reconnect."
MSG_REUSING_CONNECTION = "Reusing existing connection to Twitch."


class ChannelSession:
    """
    One open channel: its event log plus the wiring to the shared
    connection managers.

    Live chat arrives over EventSub when the session has one, otherwise over
    IRC. Emits:
    - "event"  → a ChatEvent newly added to the log
    - "update" → list of events changed in place (deletions) or merged in
                 from history
    - "room_id" → UserInfo, once, when ROOMSTATE supplies an id the session
                  was opened without
    """

    def __init__(
        self,
        info: UserInfo,
        *,
        config: Optional[ChatConfig] = None,
        irc: Optional[TwitchIrcClient] = None,
        eventsub: Optional[EventSubClient] = None,
        helix: Optional[HelixClient] = None,
        history: Optional[RecentMessagesClient] = None,
        self_user: Optional[UserInfo] = None,
    ):
        if irc is None and eventsub is None:
            raise ValueError("a channel session needs an IRC or EventSub connection")

        self.info = info
        self.config = config or ChatConfig()
        self.self_user = self_user

        self._irc = irc
        self._eventsub = eventsub
        self._helix = helix
        self._history = history

        self._log = EventLog(self.config.event_log.capacity)
        self._events = Emitter(f"channel.{info.login}")
        self._detach: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._backfill_task: Optional[asyncio.Task] = None
        self._closed = False
        self._started = False

        self.room_state: Dict[str, str] = {}
        self.badges = BadgeCatalog()
        self.emotes: EmoteMap = {}

    # ------------------------------------------------------------------ #
    # Public surface
    # ------------------------------------------------------------------ #

    @property
    def login(self) -> str:
        return self.info.login

    @property
    def events(self) -> EventLogView:
        return self._log.view()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connected(self) -> bool:
        if self._eventsub is not None:
            return self._eventsub.connected
        return self._irc is not None and self._irc.ready

    def on(self, event: str, handler: Callable[[Any], Any]) -> Callable[[], None]:
        return self._events.on(event, handler)

    def add_system_message(self, text: str) -> Optional[SystemEvent]:
        """Append a local-only system event (synchronously)."""
        if self._closed:
            log.debug(f"[#{self.login}] System message after close dropped: {text}")
            return None

        event = create_system_event(text)
        self._append(event)
        return event

    def segment(self, message: ChatMessage, remove_leading_mention: bool = False) -> List[Segment]:
        return segment_message(message, remove_leading_mention, self.emotes)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Attach to the connection managers and begin live ingestion."""
        if self._started:
            return
        self._started = True

        if self._eventsub is not None:
            self._attach_eventsub(self._eventsub)
        else:
            self._attach_irc(self._irc)

        log.info(f"[#{self.login}] Channel session started")

    def close(self) -> None:
        """
        Detach from the connection managers and stop delivering events.

        Listener removal and the unsubscribe/part requests are issued
        synchronously; in-flight backfill results are discarded.
        """
        if self._closed:
            return
        self._closed = True

        for detach in self._detach:
            detach()
        self._detach.clear()

        if self._eventsub is None and self._irc is not None:
            self._irc.part(self.login)

        for task in list(self._tasks):
            task.cancel()

        self._events.clear()
        log.info(f"[#{self.login}] Channel session closed")

    # ------------------------------------------------------------------ #
    # History
    # ------------------------------------------------------------------ #

    async def fetch_historic_events(self) -> List[ChatEvent]:
        """
        Fetch the backfill window and parse it into events, oldest first.
        Nothing is merged into the log.
        """
        if self._history is None or not self.config.history.enabled:
            return []

        before = utc_now()
        after = before - timedelta(seconds=self.config.history.window_seconds)
        messages = await self._history.fetch(self.login, after=after, before=before)

        events: List[ChatEvent] = []
        for msg in messages:
            if msg.channel and msg.channel != self.login:
                continue
            event = irc_to_event(msg)
            if event is None or isinstance(event, SystemEvent):
                continue
            event.historical = True
            events.append(event)

        events.sort(key=lambda e: e.timestamp)
        return events

    async def backfill(self) -> int:
        """Fetch history and merge it into the log. Returns events added."""
        if self._closed:
            return 0

        try:
            events = await self.fetch_historic_events()
        except HistoricalFetchError as e:
            log.warning(f"[#{self.login}] Historic fetch failed: {e}")
            self.add_system_message(f"Could not fetch historic messages: {e}")
            return 0

        if self._closed:
            log.debug(f"[#{self.login}] Discarding {len(events)} historic events after close")
            return 0

        added = self._log.merge_historical(events)
        if added:
            log.info(f"[#{self.login}] Backfilled {added} historic events")
            self._events.emit("update", [e for e in events if e.id in self._log])
        return added

    def _trigger_backfill(self) -> None:
        if self._closed:
            return
        if self._backfill_task is not None and not self._backfill_task.done():
            return
        self._backfill_task = self._spawn(self.backfill())

    # ------------------------------------------------------------------ #
    # Enrichment
    # ------------------------------------------------------------------ #

    async def load_badges(self, global_badges: Optional[Dict[str, BadgeInfo]] = None) -> BadgeCatalog:
        channel_badges: Dict[str, BadgeInfo] = {}
        if self._helix is not None and self.info.id:
            try:
                channel_badges = await fetch_channel_badges(self._helix, self.info.id)
            except HelixError as e:
                log.warning(f"[#{self.login}] Badge fetch failed: {e}")
                self.add_system_message(f"Could not fetch badges: {e}")

        self.badges = BadgeCatalog(global_badges, channel_badges)
        return self.badges

    # ------------------------------------------------------------------ #
    # Sending
    # ------------------------------------------------------------------ #

    async def send(self, text: str) -> bool:
        text = text.strip()
        if not text or self._closed:
            return False

        if self._helix is not None and self.self_user is not None and self.info.id:
            try:
                sent = await self._helix.send_chat_message(self.info.id, self.self_user.id, text)
            except HelixError as e:
                log.warning(f"[#{self.login}] Send failed: {e}")
                self.add_system_message(f"Could not send message: {e}")
                return False
            if not sent:
                self.add_system_message("Your message was not sent.")
            return sent

        if self._irc is not None and self._irc.token:
            if self._irc.say(self.login, text):
                return True
            self.add_system_message("Could not send message: not connected.")
            return False

        self.add_system_message("You need to be logged in to chat.")
        return False

    # ------------------------------------------------------------------ #
    # EventSub wiring
    # ------------------------------------------------------------------ #

    def _attach_eventsub(self, eventsub: EventSubClient) -> None:
        on = eventsub.on
        self._detach.extend(
            [
                on("notification", self._on_notification),
                on("connected", self._on_connected),
                on("disconnected", lambda _: self.add_system_message(MSG_DISCONNECTED)),
                on("reconnect_requested", lambda _: self.add_system_message(MSG_RECONNECT_REQUESTED)),
                on("error", self._on_error),
            ]
        )

        broadcaster_id = self.info.id
        user_id = self.self_user.id if self.self_user else broadcaster_id

        def build(to) -> None:
            condition = {"broadcaster_user_id": broadcaster_id, "user_id": user_id}
            to(nt.CHAT_MESSAGE, 1, condition)
            to(nt.CHAT_NOTIFICATION, 1, condition)
            to(nt.CHAT_CLEAR, 1, condition)
            to(nt.CHAT_CLEAR_USER_MESSAGES, 1, condition)
            to(nt.CHAT_MESSAGE_DELETE, 1, condition)
            to(nt.REWARD_REDEMPTION, 1, {"broadcaster_user_id": broadcaster_id})

        self._detach.append(eventsub.subscribe(build))

        if eventsub.connected:
            self.add_system_message(MSG_REUSING_CONNECTION)
            self._trigger_backfill()

    def _on_notification(self, payload: Any) -> None:
        if self._closed:
            return

        note = parse_notification(payload)
        if note.broadcaster_user_id != self.info.id:
            return

        signal = notification_to_deletion(payload, broadcaster_id=self.info.id, notification=note)
        if signal is not None:
            self._apply_deletion(signal)

        event = notification_to_event(
            payload,
            broadcaster_id=self.info.id,
            received_at=utc_now(),
            notification=note,
        )
        if event is not None:
            self._append(event)

    # ------------------------------------------------------------------ #
    # IRC wiring
    # ------------------------------------------------------------------ #

    def _attach_irc(self, irc: TwitchIrcClient) -> None:
        on = irc.on
        self._detach.extend(
            [
                on("message", self._on_irc_message),
                on("ready", self._on_connected),
                on("disconnected", lambda _: self.add_system_message(MSG_DISCONNECTED)),
                on("reconnect_requested", lambda _: self.add_system_message(MSG_RECONNECT_REQUESTED)),
                on("error", self._on_error),
            ]
        )
        irc.join(self.login)

        if irc.ready:
            self.add_system_message(MSG_REUSING_CONNECTION)
            self._trigger_backfill()

    def _on_irc_message(self, msg: IrcMessage) -> None:
        if self._closed or msg.channel != self.login:
            return

        if msg.command == "ROOMSTATE":
            self._update_room_state(msg)
            return

        signal = irc_to_deletion(msg)
        if signal is not None:
            self._apply_deletion(signal)

        event = irc_to_event(msg)
        if event is not None:
            self._append(event)

    def _update_room_state(self, msg: IrcMessage) -> None:
        for key, value in msg.tags.items():
            if isinstance(value, str):
                self.room_state[key] = value

        room_id = self.room_state.get("room-id")
        if room_id and not self.info.id:
            self.info = UserInfo(id=room_id, login=self.info.login, name=self.info.name)
            log.info(f"[#{self.login}] Room id resolved from ROOMSTATE: {room_id}")
            self._events.emit("room_id", self.info)

    # ------------------------------------------------------------------ #
    # Shared handlers
    # ------------------------------------------------------------------ #

    def _on_connected(self, _data: Any = None) -> None:
        self.add_system_message(MSG_CONNECTED)
        self._trigger_backfill()

    def _on_error(self, error: Any) -> None:
        if isinstance(error, SubscriptionError):
            self.add_system_message(f"Could not subscribe to chat events: {error}")
        elif isinstance(error, AuthenticationError):
            self.add_system_message(f"Authentication failed: {error}")

    def _apply_deletion(self, signal: DeletionSignal) -> None:
        changed = self._log.apply_deletion(signal)
        if changed:
            self._events.emit("update", changed)

    def _append(self, event: ChatEvent) -> None:
        if self._closed:
            return
        if self._log.append(event):
            self._events.emit("event", event)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
