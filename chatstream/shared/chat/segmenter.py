"""
Split chat message text into renderable segments.

Annotation sources, in discovery order:
  1. leading @mention (optional elision)
  2. native positional emotes
  3. URLs
  4. third-party emote words

Markers are stably sorted by start offset; a marker that starts before
the previous surviving marker ends is dropped. Text between markers becomes
text segments, so concatenating segment texts (emote names, urls) gives the
original message back, minus an elided mention.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Union

from chatstream.shared.chat.events import ChatMessage, ThirdPartyEmote, twitch_emote_url

URL_RE = re.compile(r"\bhttps?://\S+|\bwww\.\S+")

# Tokens for third-party emote lookup are runs of anything but these.
WORD_RE = re.compile(r"[^()\[\]\"'`;,. \n\t]+")

# Some third-party clients append this to dodge duplicate-message filters.
UNIQUENESS_SUFFIX = "\U000e0000"


@dataclass
class TextSegment:
    content: str
    type: str = field(default="text", init=False, repr=False)

    @property
    def text(self) -> str:
        return self.content


@dataclass
class EmoteSegment:
    id: str
    name: str
    image_url: str
    aspect_ratio: float = 1.0
    type: str = field(default="emote", init=False, repr=False)

    @property
    def text(self) -> str:
        return self.name


@dataclass
class UrlSegment:
    url: str
    type: str = field(default="url", init=False, repr=False)

    @property
    def text(self) -> str:
        return self.url


Segment = Union[TextSegment, EmoteSegment, UrlSegment]


@dataclass
class _Marker:
    start: int
    end: int  # exclusive
    kind: str
    emote_id: Optional[str] = None


def strip_uniqueness_suffix(text: str) -> str:
    if text.endswith(UNIQUENESS_SUFFIX):
        return text[: -len(UNIQUENESS_SUFFIX)].rstrip()
    return text


def _collect_markers(
    text: str,
    message: ChatMessage,
    remove_leading_mention: bool,
    third_party_emotes: Mapping[str, ThirdPartyEmote],
) -> List[_Marker]:
    markers: List[_Marker] = []

    if remove_leading_mention and text.startswith("@"):
        space = text.find(" ")
        end = len(text) if space == -1 else space + 1
        markers.append(_Marker(start=0, end=end, kind="mention"))

    for emote in message.emotes:
        end = emote.end + 1
        if emote.start < 0 or emote.start >= end or end > len(text):
            continue
        markers.append(_Marker(start=emote.start, end=end, kind="twitch_emote", emote_id=emote.id))

    for match in URL_RE.finditer(text):
        markers.append(_Marker(start=match.start(), end=match.end(), kind="url"))

    if third_party_emotes:
        for match in WORD_RE.finditer(text):
            if match.group(0) in third_party_emotes:
                markers.append(_Marker(start=match.start(), end=match.end(), kind="third_party_emote"))

    return markers


def _drop_overlaps(markers: List[_Marker]) -> List[_Marker]:
    # list.sort is stable: equal starts keep discovery order.
    markers.sort(key=lambda m: m.start)

    kept: List[_Marker] = []
    for marker in markers:
        if kept and marker.start < kept[-1].end:
            continue
        kept.append(marker)
    return kept


def segment_message(
    message: ChatMessage,
    remove_leading_mention: bool = False,
    third_party_emotes: Optional[Mapping[str, ThirdPartyEmote]] = None,
) -> List[Segment]:
    """
    Segment `message.text` into text, emote and url segments.

    `third_party_emotes` is a word → emote mapping (see
    services.twitch.api.emotes.merge_emote_maps for building one).
    """
    emotes = third_party_emotes or {}
    text = strip_uniqueness_suffix(message.text)

    markers = _collect_markers(text, message, remove_leading_mention, emotes)
    if not markers:
        return [TextSegment(content=text)]

    segments: List[Segment] = []
    cursor = 0

    for marker in _drop_overlaps(markers):
        if marker.start > cursor:
            segments.append(TextSegment(content=text[cursor:marker.start]))

        content = text[marker.start:marker.end]
        if marker.kind == "url":
            segments.append(UrlSegment(url=content))
        elif marker.kind == "twitch_emote":
            segments.append(
                EmoteSegment(
                    id=f"twitch/{marker.emote_id}",
                    name=content,
                    image_url=twitch_emote_url(marker.emote_id or ""),
                    aspect_ratio=1.0,
                )
            )
        elif marker.kind == "third_party_emote":
            emote = emotes[content]
            segments.append(
                EmoteSegment(
                    id=f"third-party/{content}",
                    name=content,
                    image_url=emote.image_url,
                    aspect_ratio=emote.aspect_ratio,
                )
            )

        cursor = marker.end

    if cursor < len(text):
        segments.append(TextSegment(content=text[cursor:]))

    return segments


def segments_text(segments: List[Segment]) -> str:
    return "".join(segment.text for segment in segments)
