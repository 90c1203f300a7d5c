"""
Map both Twitch wire formats onto the unified chat event model.

Every mapper returns zero or one result. Commands and subscription types
outside the recognized set map to None. Missing optional tags or fields
mean "feature absent" and never raise.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from chatstream.services.twitch.models.irc import IrcMessage
from chatstream.services.twitch.models.notification import (
    ChatClearNotification,
    ChatMessageNotification,
    ChatNotificationNotification,
    Chatter,
    ClearUserMessagesNotification,
    MessageBody,
    MessageDeleteNotification,
    Notification,
    RedemptionNotification,
    parse_notification,
)
from chatstream.shared.chat.events import (
    Author,
    BadgeIdentifier,
    ChatEvent,
    ChatMessage,
    ClearAll,
    ClearMessage,
    ClearUser,
    DeletionSignal,
    EmoteFragment,
    EmotePosition,
    Fragment,
    MentionFragment,
    MessageEvent,
    NoticeEvent,
    RedemptionEvent,
    Reward,
    TextFragment,
    UserInfo,
    fragments_from_emotes,
    from_epoch_millis,
    name_color,
    new_event_id,
    twitch_emote_url,
    utc_now,
)

IdFactory = Callable[[], str]

ACTION_PREFIX = "\u0001ACTION "
ACTION_SUFFIX = "\u0001"

# Commands that carry per-user or per-room state rather than chat content.
STATE_COMMANDS = frozenset({"USERSTATE", "GLOBALUSERSTATE", "ROOMSTATE"})

RECOGNIZED_COMMANDS = frozenset(
    {"PRIVMSG", "USERNOTICE", "NOTICE", "CLEARCHAT", "CLEARMSG"}
) | STATE_COMMANDS


def unwrap_action(text: str) -> Tuple[str, bool]:
    """Strip the `/me` envelope. Returns (display_text, is_action)."""
    if (
        text.startswith(ACTION_PREFIX)
        and text.endswith(ACTION_SUFFIX)
        and len(text) >= len(ACTION_PREFIX) + len(ACTION_SUFFIX)
    ):
        return text[len(ACTION_PREFIX):-len(ACTION_SUFFIX)], True
    return text, False


# ---------------------------------------------------------------------- #
# IRC tag helpers
# ---------------------------------------------------------------------- #


def parse_badges(raw: Optional[str]) -> List[BadgeIdentifier]:
    if not raw:
        return []

    badges = []
    for entry in raw.split(","):
        if not entry:
            continue
        badge_set, _, version = entry.partition("/")
        badges.append(BadgeIdentifier(set=badge_set, id=version))
    return badges


def parse_emote_positions(raw: Optional[str]) -> List[EmotePosition]:
    """Parse `id:start-end,start-end/id:start-end`; malformed ranges are skipped."""
    emotes: List[EmotePosition] = []
    if not raw:
        return emotes

    for entry in raw.split("/"):
        emote_id, sep, ranges = entry.partition(":")
        if not emote_id or not sep or not ranges:
            continue
        for pair in ranges.split(","):
            start, dash, end = pair.partition("-")
            if not dash:
                continue
            try:
                emotes.append(EmotePosition(id=emote_id, start=int(start), end=int(end)))
            except ValueError:
                continue

    emotes.sort(key=lambda e: e.start)
    return emotes


def _irc_timestamp(msg: IrcMessage) -> datetime:
    return (
        from_epoch_millis(msg.tag("tmi-sent-ts"))
        or from_epoch_millis(msg.tag("rm-received-ts"))
        or utc_now()
    )


def _irc_author(msg: IrcMessage, *, login: Optional[str] = None) -> Author:
    login = login if login is not None else msg.login
    return Author(
        id=msg.tag("user-id", ""),
        login=login,
        name=msg.tag("display-name") or login,
        color=name_color(msg.tag("color")),
        badges=parse_badges(msg.tag("badges")),
    )


def _irc_chat_message(msg: IrcMessage, text: str, *, login: Optional[str] = None) -> ChatMessage:
    emotes = parse_emote_positions(msg.tag("emotes"))
    return ChatMessage(
        id=msg.tag("id", ""),
        author=_irc_author(msg, login=login),
        text=text,
        fragments=fragments_from_emotes(text, emotes),
        emotes=emotes,
    )


def _irc_reply(msg: IrcMessage) -> Optional[ChatMessage]:
    parent_id = msg.tag("reply-parent-msg-id")
    if not parent_id:
        return None

    login = msg.tag("reply-parent-user-login", "")
    body = msg.tag("reply-parent-msg-body", "")
    return ChatMessage(
        id=parent_id,
        author=Author(
            id=msg.tag("reply-parent-user-id", ""),
            login=login,
            name=msg.tag("reply-parent-display-name") or login,
        ),
        text=body,
        fragments=[TextFragment(text=body)] if body else [],
    )


def _line_event_id(msg: IrcMessage) -> Optional[str]:
    """
    Id for lines Twitch sends without an `id` tag (CLEARCHAT, CLEARMSG, NOTICE).

    Built from the line itself so the live copy and every history copy of the
    same line share one id. None when the line carries no timestamp tag.
    """
    sent = msg.tag("tmi-sent-ts") or msg.tag("rm-received-ts")
    if not sent:
        return None
    target = msg.tag("target-user-id") or msg.tag("target-msg-id") or msg.tag("msg-id") or ""
    return f"{msg.command.lower()}-{msg.channel or ''}-{sent}-{target}"


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------- #
# IRC → unified
# ---------------------------------------------------------------------- #


def irc_to_event(msg: IrcMessage, *, id_factory: Optional[IdFactory] = None) -> Optional[ChatEvent]:
    """Convert one parsed IRC line into a unified event, or None."""
    if msg.command not in RECOGNIZED_COMMANDS or msg.command in STATE_COMMANDS:
        return None

    make_id = id_factory or (lambda: new_event_id("irc"))
    base: Dict[str, Any] = {
        "id": msg.tag("id") or _line_event_id(msg) or make_id(),
        "timestamp": _irc_timestamp(msg),
        "historical": msg.tag("historical") == "1",
        "deleted": msg.tag("rm-deleted") == "1",
    }
    content = msg.text

    if msg.command == "PRIVMSG":
        text, is_action = unwrap_action(content if content is not None else "")
        return MessageEvent(
            **base,
            message=_irc_chat_message(msg, text),
            reply_to=_irc_reply(msg),
            bits=_int_or_none(msg.tag("bits")),
            is_action=is_action,
            is_first_message=msg.tag("first-msg") == "1",
        )

    if msg.command == "USERNOTICE":
        notice_type = msg.tag("msg-id", "")
        message = None
        if content:
            message = _irc_chat_message(msg, content, login=msg.tag("login", msg.login))

        text = "Announcement" if notice_type == "announcement" else msg.tag("system-msg", "")
        return NoticeEvent(
            **base,
            kind="usernotice",
            message_type=notice_type,
            text=text,
            message=message,
        )

    if msg.command == "NOTICE":
        return NoticeEvent(
            **base,
            kind="notice",
            message_type=msg.tag("msg-id", "notice"),
            text=content if content is not None else "<no message>",
        )

    if msg.command == "CLEARCHAT":
        if msg.tag("target-user-id"):
            username = content or "A user"
            duration = msg.tag("ban-duration")
            if duration:
                return NoticeEvent(
                    **base,
                    kind="notice",
                    message_type="timeout",
                    text=f"{username} has been timed out for {duration} seconds.",
                )
            return NoticeEvent(
                **base,
                kind="notice",
                message_type="ban",
                text=f"{username} has been banned from the channel.",
            )
        return NoticeEvent(
            **base,
            kind="notice",
            message_type="clearchat",
            text="The chat has been cleared by a moderator.",
        )

    if msg.command == "CLEARMSG":
        # The tag id here is the deleted message's, never reuse it.
        base["id"] = _line_event_id(msg) or make_id()
        login = msg.tag("login")
        text = f"A message from {login} was deleted." if login else "A message was deleted."
        return NoticeEvent(**base, kind="notice", message_type="clearmsg", text=text)

    return None


def irc_to_deletion(msg: IrcMessage) -> Optional[DeletionSignal]:
    if msg.command == "CLEARCHAT":
        target = msg.tag("target-user-id")
        if target:
            return ClearUser(user_id=target, duration=_int_or_none(msg.tag("ban-duration")))
        return ClearAll()

    if msg.command == "CLEARMSG":
        target = msg.tag("target-msg-id")
        if target:
            return ClearMessage(message_id=target)

    return None


# ---------------------------------------------------------------------- #
# EventSub → unified
# ---------------------------------------------------------------------- #


def _helix_fragments(body: MessageBody) -> List[Fragment]:
    fragments: List[Fragment] = []
    for raw in body.fragments:
        text = str(raw.get("text") or "")
        kind = raw.get("type")
        emote = raw.get("emote")
        mention = raw.get("mention")

        if kind == "emote" and isinstance(emote, dict) and emote.get("id"):
            emote_id = str(emote["id"])
            fragments.append(EmoteFragment(id=emote_id, name=text, url=twitch_emote_url(emote_id)))
        elif kind == "mention" and isinstance(mention, dict):
            fragments.append(
                MentionFragment(
                    text=text,
                    user=UserInfo(
                        id=str(mention.get("user_id") or ""),
                        login=str(mention.get("user_login") or ""),
                        name=str(mention.get("user_name") or mention.get("user_login") or ""),
                    ),
                )
            )
        else:
            fragments.append(TextFragment(text=text))

    if not fragments and body.text:
        fragments.append(TextFragment(text=body.text))
    return fragments


def _emotes_from_fragments(fragments: List[Fragment]) -> List[EmotePosition]:
    emotes: List[EmotePosition] = []
    offset = 0
    for fragment in fragments:
        if isinstance(fragment, EmoteFragment) and fragment.name:
            emotes.append(EmotePosition(id=fragment.id, start=offset, end=offset + len(fragment.name) - 1))
        offset += len(fragment.text)
    return emotes


def _helix_author(chatter: Chatter) -> Author:
    return Author(
        id=chatter.user_id,
        login=chatter.login,
        name=chatter.name,
        color=name_color(chatter.color),
        badges=[
            BadgeIdentifier(set=str(b.get("set_id") or ""), id=str(b.get("id") or ""))
            for b in chatter.badges
        ],
    )


def _helix_chat_message(message_id: str, chatter: Chatter, body: MessageBody, *, is_action: bool = False) -> ChatMessage:
    fragments = _helix_fragments(body)
    text = body.text

    if is_action:
        text, _ = unwrap_action(text)
        # Action envelope sits in the first and last text fragments.
        fragments = _strip_action_fragments(fragments)

    return ChatMessage(
        id=message_id,
        author=_helix_author(chatter),
        text=text,
        fragments=fragments,
        emotes=_emotes_from_fragments(fragments),
    )


def _strip_action_fragments(fragments: List[Fragment]) -> List[Fragment]:
    out = list(fragments)
    if out and isinstance(out[0], TextFragment) and out[0].text.startswith("\u0001ACTION "):
        out[0] = TextFragment(text=out[0].text[len(ACTION_PREFIX):])
    if out and isinstance(out[-1], TextFragment) and out[-1].text.endswith(ACTION_SUFFIX):
        out[-1] = TextFragment(text=out[-1].text[:-len(ACTION_SUFFIX)])
    return [f for f in out if not (isinstance(f, TextFragment) and not f.text)]


def notification_to_event(
    payload: Any,
    *,
    broadcaster_id: str,
    received_at: Optional[datetime] = None,
    notification: Optional[Notification] = None,
) -> Optional[ChatEvent]:
    """
    Convert an EventSub notification payload into a unified event.

    Payloads for another broadcaster are rejected: a single websocket serves
    every open channel session.
    """
    note = notification or parse_notification(payload)
    if note.broadcaster_user_id != str(broadcaster_id):
        return None

    timestamp = received_at or note.created_at or utc_now()

    if isinstance(note, ChatMessageNotification) and note.chatter and note.message:
        _, is_action = unwrap_action(note.message.text)
        reply_to = None
        if note.reply:
            reply_to = ChatMessage(
                id=note.reply.message_id,
                author=Author(id=note.reply.user_id, login=note.reply.login, name=note.reply.name),
                text=note.reply.body,
                fragments=[TextFragment(text=note.reply.body)] if note.reply.body else [],
            )
        return MessageEvent(
            id=note.message_id or new_event_id("es"),
            timestamp=timestamp,
            message=_helix_chat_message(note.message_id, note.chatter, note.message, is_action=is_action),
            reply_to=reply_to,
            bits=note.bits,
            is_action=is_action,
            is_first_message=note.message_type == "user_intro",
        )

    if isinstance(note, ChatNotificationNotification):
        message = None
        if note.chatter and note.message and note.message.text:
            message = _helix_chat_message(note.message_id, note.chatter, note.message)
        text = "Announcement" if note.notice_type == "announcement" else note.system_message
        return NoticeEvent(
            id=note.message_id or new_event_id("es"),
            timestamp=timestamp,
            kind="usernotice",
            message_type=note.notice_type,
            text=text,
            message=message,
        )

    if isinstance(note, RedemptionNotification):
        return RedemptionEvent(
            id=note.redemption_id or new_event_id("es"),
            timestamp=note.redeemed_at or timestamp,
            by=UserInfo(id=note.user_id, login=note.user_login, name=note.user_name),
            redemption=Reward(
                id=note.reward_id,
                title=note.reward_title,
                cost=note.reward_cost,
                input=note.user_input,
            ),
        )

    if isinstance(note, ChatClearNotification):
        return NoticeEvent(
            id=new_event_id("es"),
            timestamp=timestamp,
            kind="notice",
            message_type="clearchat",
            text="The chat has been cleared by a moderator.",
        )

    if isinstance(note, ClearUserMessagesNotification):
        username = note.target_user_name or "A user"
        return NoticeEvent(
            id=new_event_id("es"),
            timestamp=timestamp,
            kind="notice",
            message_type="clear_user_messages",
            text=f"Messages from {username} have been removed.",
        )

    if isinstance(note, MessageDeleteNotification):
        login = note.target_user_login
        return NoticeEvent(
            id=new_event_id("es"),
            timestamp=timestamp,
            kind="notice",
            message_type="clearmsg",
            text=f"A message from {login} was deleted." if login else "A message was deleted.",
        )

    return None


def notification_to_deletion(
    payload: Any,
    *,
    broadcaster_id: str,
    notification: Optional[Notification] = None,
) -> Optional[DeletionSignal]:
    note = notification or parse_notification(payload)
    if note.broadcaster_user_id != str(broadcaster_id):
        return None

    if isinstance(note, ChatClearNotification):
        return ClearAll()
    if isinstance(note, ClearUserMessagesNotification) and note.target_user_id:
        return ClearUser(user_id=note.target_user_id)
    if isinstance(note, MessageDeleteNotification) and note.message_id:
        return ClearMessage(message_id=note.message_id)
    return None
