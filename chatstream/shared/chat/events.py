"""Canonical unified chat event schema and helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional, Union
from uuid import uuid4

NEUTRAL_COLOR = "gray"

TWITCH_EMOTE_URL = "https://static-cdn.jtvnw.net/emoticons/v2/{id}/default/dark/2.0"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def from_epoch_millis(value: Union[str, int, float, None]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        # Helix sends nanosecond precision which fromisoformat rejects
        # on older interpreters; trim to microseconds.
        head, dot, tail = value.partition(".")
        if not dot:
            return None
        digits = "".join(ch for ch in tail if ch.isdigit())[:6]
        try:
            parsed = datetime.fromisoformat(f"{head}.{digits}+00:00")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def new_event_id(prefix: str = "evt") -> str:
    return f"{prefix}-{uuid4().hex}"


def name_color(color: Optional[str]) -> str:
    """Empty or missing colors become the neutral default; anything else passes."""
    if not color:
        return NEUTRAL_COLOR
    return color


def twitch_emote_url(emote_id: str) -> str:
    return TWITCH_EMOTE_URL.format(id=emote_id)


# ---------------------------------------------------------------------- #
# Users, badges, emotes
# ---------------------------------------------------------------------- #


@dataclass
class UserInfo:
    id: str
    login: str
    name: str


@dataclass
class BadgeIdentifier:
    """Compound key into the badge catalog (`set/id`)."""

    set: str
    id: str

    @property
    def key(self) -> str:
        return f"{self.set}/{self.id}"


@dataclass
class Author(UserInfo):
    color: str = NEUTRAL_COLOR
    badges: List[BadgeIdentifier] = field(default_factory=list)


@dataclass
class EmotePosition:
    """Native emote occurrence; `start` and `end` are inclusive text offsets."""

    id: str
    start: int
    end: int


@dataclass
class ThirdPartyEmote:
    name: str
    image_url: str
    aspect_ratio: float = 1.0


# ---------------------------------------------------------------------- #
# Fragments
# ---------------------------------------------------------------------- #


@dataclass
class TextFragment:
    text: str
    type: str = field(default="text", init=False, repr=False)


@dataclass
class EmoteFragment:
    id: str
    name: str
    url: str
    aspect_ratio: float = 1.0
    type: str = field(default="emote", init=False, repr=False)

    @property
    def text(self) -> str:
        return self.name


@dataclass
class MentionFragment:
    text: str
    user: UserInfo
    type: str = field(default="mention", init=False, repr=False)


Fragment = Union[TextFragment, EmoteFragment, MentionFragment]


def fragments_from_emotes(text: str, emotes: List[EmotePosition]) -> List[Fragment]:
    """
    Split `text` into text/emote fragments using positional emote data.

    Emotes can arrive out of order in the tag (`a:1-2,8-9/b:4-5`), so they
    are sorted first. Ranges that overlap an earlier one or fall outside the
    text are skipped.
    """
    fragments: List[Fragment] = []
    index = 0

    for emote in sorted(emotes, key=lambda e: e.start):
        end = emote.end + 1
        if emote.start < index or end > len(text) or emote.start >= end:
            continue
        if index < emote.start:
            fragments.append(TextFragment(text=text[index:emote.start]))
        fragments.append(
            EmoteFragment(
                id=emote.id,
                name=text[emote.start:end],
                url=twitch_emote_url(emote.id),
            )
        )
        index = end

    if index < len(text):
        fragments.append(TextFragment(text=text[index:]))

    return fragments


@dataclass
class ChatMessage:
    id: str
    author: Author
    text: str
    fragments: List[Fragment] = field(default_factory=list)
    emotes: List[EmotePosition] = field(default_factory=list)


@dataclass
class Reward:
    id: str
    title: str
    cost: int
    input: Optional[str] = None


# ---------------------------------------------------------------------- #
# Events
# ---------------------------------------------------------------------- #


@dataclass(kw_only=True)
class ChatEvent:
    id: str
    timestamp: datetime
    historical: bool = False
    deleted: bool = False
    type: ClassVar[str] = "event"

    @property
    def embedded_message(self) -> Optional[ChatMessage]:
        return None

    def mark_deleted(self) -> bool:
        """Flip `deleted` on. Returns False when it was already set."""
        if self.deleted:
            return False
        self.deleted = True
        return True

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type
        payload["timestamp"] = (
            self.timestamp.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        )
        return payload


@dataclass(kw_only=True)
class MessageEvent(ChatEvent):
    message: ChatMessage
    reply_to: Optional[ChatMessage] = None
    bits: Optional[int] = None
    is_action: bool = False
    is_first_message: bool = False
    type: ClassVar[str] = "message"

    @property
    def embedded_message(self) -> Optional[ChatMessage]:
        return self.message

    @property
    def author(self) -> Author:
        return self.message.author

    @property
    def text(self) -> str:
        return self.message.text

    @property
    def fragments(self) -> List[Fragment]:
        return self.message.fragments


@dataclass(kw_only=True)
class NoticeEvent(ChatEvent):
    """
    Platform-generated notice.

    kind="usernotice" covers subs, raids and announcements (may carry the
    user's attached message); kind="notice" covers channel notices and
    moderation outcomes.
    """

    message_type: str
    text: str
    message: Optional[ChatMessage] = None
    kind: str = "usernotice"

    @property
    def type(self) -> str:  # type: ignore[override]
        return self.kind

    @property
    def embedded_message(self) -> Optional[ChatMessage]:
        return self.message


@dataclass(kw_only=True)
class SystemEvent(ChatEvent):
    """Client-local information line. Never historical, never deleted."""

    text: str
    type: ClassVar[str] = "system"

    def mark_deleted(self) -> bool:
        return False


@dataclass(kw_only=True)
class RedemptionEvent(ChatEvent):
    by: UserInfo
    redemption: Reward
    type: ClassVar[str] = "redemption"


def create_system_event(text: str, *, event_id: Optional[str] = None) -> SystemEvent:
    if not text:
        raise ValueError("system message text is required")
    return SystemEvent(
        id=event_id or new_event_id("sys"),
        timestamp=utc_now(),
        text=str(text),
    )


# ---------------------------------------------------------------------- #
# Deletion signals
# ---------------------------------------------------------------------- #


@dataclass(frozen=True)
class ClearAll:
    """Moderator cleared the whole chat."""


@dataclass(frozen=True)
class ClearUser:
    """Timeout or ban: every message by `user_id` is removed."""

    user_id: str
    duration: Optional[int] = None


@dataclass(frozen=True)
class ClearMessage:
    message_id: str


DeletionSignal = Union[ClearAll, ClearUser, ClearMessage]


__all__ = [
    "Author",
    "BadgeIdentifier",
    "ChatEvent",
    "ChatMessage",
    "ClearAll",
    "ClearMessage",
    "ClearUser",
    "DeletionSignal",
    "EmoteFragment",
    "EmotePosition",
    "Fragment",
    "MentionFragment",
    "MessageEvent",
    "NEUTRAL_COLOR",
    "NoticeEvent",
    "RedemptionEvent",
    "Reward",
    "SystemEvent",
    "TextFragment",
    "ThirdPartyEmote",
    "UserInfo",
    "create_system_event",
    "fragments_from_emotes",
    "from_epoch_millis",
    "from_iso",
    "name_color",
    "new_event_id",
    "twitch_emote_url",
    "utc_now",
]
