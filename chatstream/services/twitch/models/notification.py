"""
EventSub notification payload shapes.

Each supported subscription type has an explicit record built from the raw
`payload` dict. Unknown types, and known types whose event body does not
have the expected shape, become UnrecognizedNotification and are ignored by
the normalizer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from chatstream.shared.chat.events import from_iso
from chatstream.shared.logging.logger import get_logger

log = get_logger("twitch.notification")

CHAT_MESSAGE = "channel.chat.message"
CHAT_NOTIFICATION = "channel.chat.notification"
REWARD_REDEMPTION = "channel.channel_points_custom_reward_redemption.add"
CHAT_CLEAR = "channel.chat.clear"
CHAT_CLEAR_USER_MESSAGES = "channel.chat.clear_user_messages"
CHAT_MESSAGE_DELETE = "channel.chat.message_delete"


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


@dataclass
class Notification:
    subscription_type: str
    broadcaster_user_id: str
    created_at: Optional[datetime] = None


@dataclass
class UnrecognizedNotification(Notification):
    pass


@dataclass
class MessageBody:
    text: str
    fragments: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["MessageBody"]:
        if not isinstance(raw, dict):
            return None
        return cls(
            text=_str(raw.get("text")),
            fragments=[f for f in _list(raw.get("fragments")) if isinstance(f, dict)],
        )


@dataclass
class Chatter:
    user_id: str
    login: str
    name: str
    color: str = ""
    badges: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "Chatter":
        return cls(
            user_id=_str(event.get("chatter_user_id")),
            login=_str(event.get("chatter_user_login")),
            name=_str(event.get("chatter_user_name") or event.get("chatter_user_login")),
            color=_str(event.get("color")),
            badges=[b for b in _list(event.get("badges")) if isinstance(b, dict)],
        )


@dataclass
class ReplyParent:
    message_id: str
    body: str
    user_id: str
    login: str
    name: str


@dataclass
class ChatMessageNotification(Notification):
    message_id: str = ""
    chatter: Optional[Chatter] = None
    message: Optional[MessageBody] = None
    message_type: str = "text"
    bits: Optional[int] = None
    reply: Optional[ReplyParent] = None

    @classmethod
    def from_payload(cls, sub: Dict[str, Any], event: Dict[str, Any]) -> "ChatMessageNotification":
        message = MessageBody.from_raw(event["message"])
        if message is None:
            raise TypeError("message body is not an object")

        cheer = _dict(event.get("cheer"))
        bits = cheer.get("bits")

        reply = None
        raw_reply = event.get("reply")
        if isinstance(raw_reply, dict) and raw_reply.get("parent_message_id"):
            reply = ReplyParent(
                message_id=_str(raw_reply.get("parent_message_id")),
                body=_str(raw_reply.get("parent_message_body")),
                user_id=_str(raw_reply.get("parent_user_id")),
                login=_str(raw_reply.get("parent_user_login")),
                name=_str(raw_reply.get("parent_user_name") or raw_reply.get("parent_user_login")),
            )

        return cls(
            subscription_type=CHAT_MESSAGE,
            broadcaster_user_id=_str(event["broadcaster_user_id"]),
            created_at=from_iso(sub.get("created_at")),
            message_id=_str(event["message_id"]),
            chatter=Chatter.from_event(event),
            message=message,
            message_type=_str(event.get("message_type") or "text"),
            bits=int(bits) if isinstance(bits, (int, str)) and str(bits).isdigit() else None,
            reply=reply,
        )


@dataclass
class ChatNotificationNotification(Notification):
    message_id: str = ""
    notice_type: str = ""
    system_message: str = ""
    chatter: Optional[Chatter] = None
    message: Optional[MessageBody] = None

    @classmethod
    def from_payload(cls, sub: Dict[str, Any], event: Dict[str, Any]) -> "ChatNotificationNotification":
        return cls(
            subscription_type=CHAT_NOTIFICATION,
            broadcaster_user_id=_str(event["broadcaster_user_id"]),
            created_at=from_iso(sub.get("created_at")),
            message_id=_str(event["message_id"]),
            notice_type=_str(event.get("notice_type")),
            system_message=_str(event.get("system_message")),
            chatter=Chatter.from_event(event),
            message=MessageBody.from_raw(event.get("message")),
        )


@dataclass
class RedemptionNotification(Notification):
    redemption_id: str = ""
    user_id: str = ""
    user_login: str = ""
    user_name: str = ""
    user_input: Optional[str] = None
    reward_id: str = ""
    reward_title: str = ""
    reward_cost: int = 0
    redeemed_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, sub: Dict[str, Any], event: Dict[str, Any]) -> "RedemptionNotification":
        reward = event["reward"]
        if not isinstance(reward, dict):
            raise TypeError("reward is not an object")
        return cls(
            subscription_type=REWARD_REDEMPTION,
            broadcaster_user_id=_str(event["broadcaster_user_id"]),
            created_at=from_iso(sub.get("created_at")),
            redemption_id=_str(event["id"]),
            user_id=_str(event.get("user_id")),
            user_login=_str(event.get("user_login")),
            user_name=_str(event.get("user_name") or event.get("user_login")),
            user_input=event.get("user_input") or None,
            reward_id=_str(reward.get("id")),
            reward_title=_str(reward.get("title")),
            reward_cost=int(reward.get("cost") or 0),
            redeemed_at=from_iso(event.get("redeemed_at")),
        )


@dataclass
class ChatClearNotification(Notification):
    @classmethod
    def from_payload(cls, sub: Dict[str, Any], event: Dict[str, Any]) -> "ChatClearNotification":
        return cls(
            subscription_type=CHAT_CLEAR,
            broadcaster_user_id=_str(event["broadcaster_user_id"]),
            created_at=from_iso(sub.get("created_at")),
        )


@dataclass
class ClearUserMessagesNotification(Notification):
    target_user_id: str = ""
    target_user_login: str = ""
    target_user_name: str = ""

    @classmethod
    def from_payload(cls, sub: Dict[str, Any], event: Dict[str, Any]) -> "ClearUserMessagesNotification":
        return cls(
            subscription_type=CHAT_CLEAR_USER_MESSAGES,
            broadcaster_user_id=_str(event["broadcaster_user_id"]),
            created_at=from_iso(sub.get("created_at")),
            target_user_id=_str(event["target_user_id"]),
            target_user_login=_str(event.get("target_user_login")),
            target_user_name=_str(event.get("target_user_name") or event.get("target_user_login")),
        )


@dataclass
class MessageDeleteNotification(Notification):
    message_id: str = ""
    target_user_login: str = ""

    @classmethod
    def from_payload(cls, sub: Dict[str, Any], event: Dict[str, Any]) -> "MessageDeleteNotification":
        return cls(
            subscription_type=CHAT_MESSAGE_DELETE,
            broadcaster_user_id=_str(event["broadcaster_user_id"]),
            created_at=from_iso(sub.get("created_at")),
            message_id=_str(event["message_id"]),
            target_user_login=_str(event.get("target_user_login")),
        )


_PARSERS: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Notification]] = {
    CHAT_MESSAGE: ChatMessageNotification.from_payload,
    CHAT_NOTIFICATION: ChatNotificationNotification.from_payload,
    REWARD_REDEMPTION: RedemptionNotification.from_payload,
    CHAT_CLEAR: ChatClearNotification.from_payload,
    CHAT_CLEAR_USER_MESSAGES: ClearUserMessagesNotification.from_payload,
    CHAT_MESSAGE_DELETE: MessageDeleteNotification.from_payload,
}

SUPPORTED_TYPES = frozenset(_PARSERS)


def parse_notification(payload: Any) -> Notification:
    """Map a raw notification payload to its typed record."""
    sub = _dict(_dict(payload).get("subscription"))
    event = _dict(payload).get("event")
    sub_type = _str(sub.get("type"))

    parser = _PARSERS.get(sub_type)
    if parser is None or not isinstance(event, dict):
        return UnrecognizedNotification(
            subscription_type=sub_type,
            broadcaster_user_id=_str(_dict(event).get("broadcaster_user_id")),
        )

    try:
        return parser(sub, event)
    except (KeyError, TypeError, ValueError) as e:
        log.warning(f"Malformed {sub_type} notification ignored: {e}")
        return UnrecognizedNotification(
            subscription_type=sub_type,
            broadcaster_user_id=_str(event.get("broadcaster_user_id")),
        )
