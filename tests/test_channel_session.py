import asyncio

import pytest

from conftest import settle, wait_for

from chatstream.core.channel import ChannelSession
from chatstream.core.client import ChatClient
from chatstream.services.twitch.api.irc import TwitchIrcClient
from chatstream.services.twitch.errors import (
    ChannelNotFoundError,
    HelixError,
    HistoricalFetchError,
    SubscriptionError,
)
from chatstream.services.twitch.models import notification as nt
from chatstream.services.twitch.models.irc import parse_irc_line
from chatstream.shared.chat.events import MessageEvent, NoticeEvent, SystemEvent, ThirdPartyEmote, UserInfo
from chatstream.shared.config.chat import IrcConfig
from chatstream.shared.utils.emitter import Emitter

BAR = UserInfo(id="1", login="bar", name="Bar")
ME = UserInfo(id="10", login="foo", name="foo")


class FakeEventSub:
    def __init__(self, connected: bool = False):
        self.connected = connected
        self.events = Emitter("fake.eventsub")
        self.builders = []
        self.unsubscribed = 0

    def on(self, event, handler):
        return self.events.on(event, handler)

    def subscribe(self, builder):
        self.builders.append(builder)

        def unsubscribe():
            self.unsubscribed += 1

        return unsubscribe

    def emit(self, event, data=None):
        self.events.emit(event, data)


class FakeHistory:
    def __init__(self, lines=(), error=None, gate=None):
        self.lines = list(lines)
        self.error = error
        self.gate = gate
        self.calls = []

    async def fetch(self, login, *, after, before):
        self.calls.append((login, after, before))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return [parse_irc_line(line) for line in self.lines]


class FakeHelix:
    def __init__(self, user=None, sent=True, send_error=None):
        self.user = user
        self.sent = sent
        self.send_error = send_error
        self.messages = []

    async def get_user(self, login):
        return self.user

    async def get_chat_badges(self, broadcaster_id=None):
        if broadcaster_id is None:
            return [{"set_id": "moderator", "versions": [{"id": "1", "image_url_1x": "m1", "title": "Moderator"}]}]
        return [{"set_id": "subscriber", "versions": [{"id": "0", "image_url_1x": "s1", "title": "Subscriber"}]}]

    async def send_chat_message(self, broadcaster_id, sender_id, message):
        self.messages.append((broadcaster_id, sender_id, message))
        if self.send_error is not None:
            raise self.send_error
        return self.sent


class FakeEmoteProvider:
    def __init__(self):
        self.channel_calls = []

    async def global_emotes(self):
        return {"LUL": ThirdPartyEmote(name="LUL", image_url="global/LUL")}

    async def channel_emotes(self, user_id):
        self.channel_calls.append(user_id)
        return {"barHype": ThirdPartyEmote(name="barHype", image_url=f"channel/{user_id}")}


async def _unreachable(host, port):
    raise OSError("offline")


def chat_payload(message_id="m-1", broadcaster_id="1", user_id="20", text="hello"):
    return {
        "subscription": {"type": nt.CHAT_MESSAGE, "version": "1"},
        "event": {
            "broadcaster_user_id": broadcaster_id,
            "message_id": message_id,
            "chatter_user_id": user_id,
            "chatter_user_login": f"user{user_id}",
            "chatter_user_name": f"User{user_id}",
            "color": "",
            "badges": [],
            "message": {"text": text, "fragments": [{"type": "text", "text": text}]},
            "message_type": "text",
        },
    }


def clear_user_payload(user_id="20", broadcaster_id="1"):
    return {
        "subscription": {"type": nt.CHAT_CLEAR_USER_MESSAGES, "version": "1"},
        "event": {
            "broadcaster_user_id": broadcaster_id,
            "target_user_id": user_id,
            "target_user_login": f"user{user_id}",
            "target_user_name": f"User{user_id}",
        },
    }


def system_texts(session):
    return [e.text for e in session.events if isinstance(e, SystemEvent)]


def test_session_needs_a_connection():
    with pytest.raises(ValueError):
        ChannelSession(BAR)


# ---------------------------------------------------------------------- #
# IRC mode
# ---------------------------------------------------------------------- #


def test_irc_timeout_marks_user_messages_deleted():
    irc = TwitchIrcClient()
    session = ChannelSession(UserInfo(id="", login="bar", name="bar"), irc=irc)
    added, updates = [], []
    session.on("event", added.append)
    session.on("update", updates.append)
    session.start()

    assert irc.channels == {"bar"}

    irc.handle_data(
        "@id=a;user-id=10;tmi-sent-ts=1000 :foo!foo@foo.tmi.twitch.tv PRIVMSG #bar :one\r\n"
        "@id=b;user-id=20;tmi-sent-ts=2000 :baz!baz@baz.tmi.twitch.tv PRIVMSG #bar :two\r\n"
        "@id=x;user-id=10;tmi-sent-ts=2500 :foo!foo@foo.tmi.twitch.tv PRIVMSG #other :elsewhere\r\n"
        "@id=c;user-id=10;tmi-sent-ts=3000 :foo!foo@foo.tmi.twitch.tv PRIVMSG #bar :three\r\n"
        "@ban-duration=60;room-id=1;target-user-id=10;tmi-sent-ts=4000 :tmi.twitch.tv CLEARCHAT #bar :foo\r\n"
    )

    events = list(session.events)
    assert [e.id for e in events[:3]] == ["a", "b", "c"]
    assert [e.deleted for e in events] == [True, False, True, False]
    assert isinstance(events[3], NoticeEvent)
    assert events[3].message_type == "timeout"
    assert len(added) == 4
    assert [[e.id for e in batch] for batch in updates] == [["a", "c"]]


def test_irc_roomstate_fills_room_id():
    irc = TwitchIrcClient()
    session = ChannelSession(UserInfo(id="", login="bar", name="bar"), irc=irc)
    resolved = []
    session.on("room_id", resolved.append)
    session.start()

    irc.handle_data("@emote-only=0;room-id=1;slow=10 :tmi.twitch.tv ROOMSTATE #bar\r\n")
    irc.handle_data("@room-id=1;slow=0 :tmi.twitch.tv ROOMSTATE #bar\r\n")

    assert [info.id for info in resolved] == ["1"]
    assert session.info.id == "1"
    assert session.room_state["slow"] == "0"
    assert len(session.events) == 0


def test_irc_close_parts_channel_and_stops_delivery():
    irc = TwitchIrcClient()
    session = ChannelSession(UserInfo(id="", login="bar", name="bar"), irc=irc)
    session.start()

    session.close()
    irc.handle_data("@id=a;tmi-sent-ts=1000 :foo!foo@foo.tmi.twitch.tv PRIVMSG #bar :late\r\n")

    assert session.closed
    assert irc.channels == set()
    assert len(session.events) == 0
    assert session.add_system_message("too late") is None


def test_anonymous_send_explains_login_requirement():
    session = ChannelSession(BAR, irc=TwitchIrcClient())

    assert asyncio.run(session.send("hi")) is False
    assert system_texts(session) == ["You need to be logged in to chat."]


# ---------------------------------------------------------------------- #
# EventSub mode
# ---------------------------------------------------------------------- #


def test_eventsub_subscriptions_cover_chat_and_redemptions():
    eventsub = FakeEventSub()
    session = ChannelSession(BAR, eventsub=eventsub, self_user=ME)
    session.start()

    declared = []
    eventsub.builders[0](lambda t, v, c: declared.append((t, str(v), c)))

    condition = {"broadcaster_user_id": "1", "user_id": "10"}
    assert declared == [
        (nt.CHAT_MESSAGE, "1", condition),
        (nt.CHAT_NOTIFICATION, "1", condition),
        (nt.CHAT_CLEAR, "1", condition),
        (nt.CHAT_CLEAR_USER_MESSAGES, "1", condition),
        (nt.CHAT_MESSAGE_DELETE, "1", condition),
        (nt.REWARD_REDEMPTION, "1", {"broadcaster_user_id": "1"}),
    ]


def test_eventsub_notifications_feed_the_log():
    eventsub = FakeEventSub()
    session = ChannelSession(BAR, eventsub=eventsub, self_user=ME)
    updates = []
    session.on("update", updates.append)
    session.start()

    eventsub.emit("notification", chat_payload("m-1", user_id="20"))
    eventsub.emit("notification", chat_payload("m-2", user_id="30"))
    eventsub.emit("notification", chat_payload("m-3", broadcaster_id="999"))
    eventsub.emit("notification", chat_payload("m-1", user_id="20"))
    eventsub.emit("notification", clear_user_payload("20"))

    events = list(session.events)
    assert [e.id for e in events if isinstance(e, MessageEvent)] == ["m-1", "m-2"]
    assert events[0].deleted is True
    assert events[1].deleted is False
    assert events[-1].message_type == "clear_user_messages"
    assert [[e.id for e in batch] for batch in updates] == [["m-1"]]


def test_eventsub_connection_messages_and_errors():
    eventsub = FakeEventSub()
    session = ChannelSession(BAR, eventsub=eventsub, self_user=ME)
    session.start()

    eventsub.emit("reconnect_requested")
    eventsub.emit("disconnected")
    eventsub.emit("error", SubscriptionError("Could not subscribe to channel.chat.message: 403"))

    assert system_texts(session) == [
        "Twitch asked us to reconnect.",
        "Disconnected from Twitch.",
        "Could not subscribe to chat events: Could not subscribe to channel.chat.message: 403",
    ]


def test_connected_triggers_backfill_merge():
    history = FakeHistory(
        [
            "@historical=1;id=h1;user-id=20;tmi-sent-ts=1000 :a!a@a.tmi.twitch.tv PRIVMSG #bar :old one",
            "@historical=1;id=h2;user-id=20;tmi-sent-ts=2000 :a!a@a.tmi.twitch.tv PRIVMSG #bar :old two",
            "@historical=1;id=h3;user-id=20;tmi-sent-ts=1500 :a!a@a.tmi.twitch.tv PRIVMSG #other :wrong room",
            "@historical=1;room-id=1 :tmi.twitch.tv ROOMSTATE #bar",
        ]
    )

    async def run():
        eventsub = FakeEventSub()
        session = ChannelSession(BAR, eventsub=eventsub, history=history, self_user=ME)
        updates = []
        session.on("update", updates.append)
        session.start()

        eventsub.connected = True
        eventsub.emit("connected")
        await wait_for(lambda: updates)
        return session, updates

    session, updates = asyncio.run(run())

    events = list(session.events)
    assert [e.id for e in events[:2]] == ["h1", "h2"]
    assert all(e.historical for e in events[:2])
    assert isinstance(events[2], SystemEvent)
    assert events[2].text == "Connected to Twitch."
    assert [e.id for e in updates[0]] == ["h1", "h2"]
    login, after, before = history.calls[0]
    assert login == "bar"
    assert (before - after).total_seconds() == 3600


def test_repeated_backfill_does_not_duplicate_moderation_notices():
    timeout = "@ban-duration=60;room-id=1;target-user-id=20;tmi-sent-ts=1000 :tmi.twitch.tv CLEARCHAT #bar :a"
    history = FakeHistory(["@historical=1;rm-received-ts=1001;" + timeout[1:]])

    async def run():
        irc = TwitchIrcClient()
        session = ChannelSession(UserInfo(id="", login="bar", name="bar"), irc=irc, history=history)
        session.start()
        irc.handle_data(timeout + "\r\n")
        first = await session.backfill()
        second = await session.backfill()
        return session, first, second

    session, first, second = asyncio.run(run())

    notices = [e.text for e in session.events if isinstance(e, NoticeEvent)]
    assert notices == ["a has been timed out for 60 seconds."]
    assert (first, second) == (0, 0)


def test_reusing_connection_backfills_immediately():
    history = FakeHistory([])

    async def run():
        session = ChannelSession(BAR, eventsub=FakeEventSub(connected=True), history=history, self_user=ME)
        session.start()
        await wait_for(lambda: history.calls)
        await settle()
        return session

    session = asyncio.run(run())

    assert system_texts(session) == ["Reusing existing connection to Twitch."]


def test_backfill_failure_becomes_system_message():
    history = FakeHistory(error=HistoricalFetchError("channel not joined", status_code=200))

    async def run():
        eventsub = FakeEventSub()
        session = ChannelSession(BAR, eventsub=eventsub, history=history, self_user=ME)
        session.start()
        eventsub.emit("connected")
        await wait_for(lambda: len(session.events) == 2)
        return session

    session = asyncio.run(run())

    assert system_texts(session) == [
        "Connected to Twitch.",
        "Could not fetch historic messages: channel not joined",
    ]


def test_close_discards_in_flight_backfill():
    async def run():
        history = FakeHistory(
            ["@historical=1;id=h1;tmi-sent-ts=1000 :a!a@a.tmi.twitch.tv PRIVMSG #bar :old"],
            gate=asyncio.Event(),
        )
        eventsub = FakeEventSub()
        session = ChannelSession(BAR, eventsub=eventsub, history=history, self_user=ME)
        session.start()
        eventsub.emit("connected")
        await wait_for(lambda: history.calls)

        session.close()
        history.gate.set()
        await settle()

        eventsub.emit("notification", chat_payload("late"))
        return session, eventsub

    session, eventsub = asyncio.run(run())

    assert [e.id for e in session.events if not isinstance(e, SystemEvent)] == []
    assert eventsub.unsubscribed == 1
    assert eventsub.events.listener_count("notification") == 0


def test_send_through_helix_reports_drops_and_errors():
    async def run():
        helix = FakeHelix(sent=False)
        session = ChannelSession(BAR, eventsub=FakeEventSub(), helix=helix, self_user=ME)
        dropped = await session.send("  hello  ")

        helix.send_error = HelixError("Helix POST chat/messages returned 403: nope", path="chat/messages", status_code=403)
        failed = await session.send("again")

        helix.send_error = None
        helix.sent = True
        ok = await session.send("third")
        return session, helix, (dropped, failed, ok)

    session, helix, results = asyncio.run(run())

    assert results == (False, False, True)
    assert helix.messages[0] == ("1", "10", "hello")
    assert system_texts(session) == [
        "Your message was not sent.",
        "Could not send message: Helix POST chat/messages returned 403: nope",
    ]


# ---------------------------------------------------------------------- #
# ChatClient
# ---------------------------------------------------------------------- #


def test_open_unknown_channel_raises():
    client = ChatClient(eventsub=FakeEventSub(), helix=FakeHelix(user=None))

    with pytest.raises(ChannelNotFoundError):
        asyncio.run(client.open("nobody"))
    with pytest.raises(ChannelNotFoundError):
        asyncio.run(client.open("  #  "))
    assert client.sessions == set()


def test_open_resolves_channel_and_loads_badges():
    async def run():
        eventsub = FakeEventSub()
        client = ChatClient(eventsub=eventsub, helix=FakeHelix(user=BAR), self_user=ME)
        session = await client.open("#Bar")
        opened = set(client.sessions)
        client.close(session)
        return session, opened, client, eventsub

    session, opened, client, eventsub = asyncio.run(run())

    assert session.info == BAR
    assert opened == {session}
    assert client.sessions == set()
    assert session.closed
    assert eventsub.unsubscribed == 1
    assert session.badges.lookup("moderator/1").title == "Moderator"
    assert session.badges.lookup("subscriber/0").title == "Subscriber"


def test_anonymous_resolution_defers_room_id():
    client = ChatClient(irc=TwitchIrcClient())

    info = asyncio.run(client.resolve_channel("#Bar"))

    assert info == UserInfo(id="", login="bar", name="bar")


def test_anonymous_session_loads_channel_emotes_once_room_id_arrives():
    async def run():
        irc = TwitchIrcClient(config=IrcConfig(reconnect_interval=60), connector=_unreachable)
        provider = FakeEmoteProvider()
        client = ChatClient(irc=irc, emote_provider=provider)
        session = await client.open("bar")
        before = sorted(session.emotes)

        irc.handle_data("@emote-only=0;room-id=1;slow=0 :tmi.twitch.tv ROOMSTATE #bar\r\n")
        irc.handle_data("@emote-only=0;room-id=1;slow=5 :tmi.twitch.tv ROOMSTATE #bar\r\n")
        await wait_for(lambda: "barHype" in session.emotes)
        await settle()

        await irc.close()
        return before, session, provider

    before, session, provider = asyncio.run(run())

    assert before == ["LUL"]
    assert sorted(session.emotes) == ["LUL", "barHype"]
    assert session.emotes["barHype"].image_url == "channel/1"
    assert provider.channel_calls == ["1"]
