"""
IRC line model and parser for Twitch chat.

Grammar (one line, no terminator):

    [@tag1=val1;tag2;... ] [:prefix ] COMMAND [param ...] [:trailing param]

Parsing is pure: no logging, no I/O. Anything that does not match the
grammar raises ParseError so callers can drop the single line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from chatstream.services.twitch.errors import ParseError

TagValue = Union[str, bool]

_COMMAND_RE = re.compile(r"^(?:[A-Za-z]+|\d{3})$")

_UNESCAPE = {
    ":": ";",
    "s": " ",
    "\\": "\\",
    "r": "\r",
    "n": "\n",
}

_ESCAPE = {
    ";": "\\:",
    " ": "\\s",
    "\\": "\\\\",
    "\r": "\\r",
    "\n": "\\n",
}


@dataclass(frozen=True)
class IrcPrefix:
    """Message source, e.g. `foo!foo@foo.tmi.twitch.tv` or `tmi.twitch.tv`."""

    nick: str
    user: Optional[str] = None
    host: Optional[str] = None

    def serialize(self) -> str:
        out = self.nick
        if self.user:
            out += f"!{self.user}"
        if self.host:
            out += f"@{self.host}"
        return out


@dataclass
class IrcMessage:
    """
    One parsed protocol line.

    Tags without a value are stored as True; every other tag value is the
    unescaped string (possibly empty).
    """

    command: str
    params: List[str] = field(default_factory=list)
    tags: Dict[str, TagValue] = field(default_factory=dict)
    prefix: Optional[IrcPrefix] = None
    raw: Optional[str] = None

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    def tag(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """String value of a tag; valueless tags and absent tags give `default`."""
        value = self.tags.get(name)
        if isinstance(value, str):
            return value
        return default

    def has_tag(self, name: str) -> bool:
        return name in self.tags

    @property
    def channel(self) -> Optional[str]:
        if self.params and self.params[0].startswith("#"):
            return self.params[0][1:]
        return None

    @property
    def text(self) -> Optional[str]:
        """Trailing parameter when the line carries one beyond the target."""
        if len(self.params) > 1:
            return self.params[-1]
        return None

    @property
    def login(self) -> str:
        if not self.prefix:
            return ""
        return self.prefix.user or self.prefix.nick

    # ------------------------------------------------------------------ #
    # Serialization
    # ------------------------------------------------------------------ #

    def serialize(self) -> str:
        parts: List[str] = []

        if self.tags:
            rendered = []
            for key, value in self.tags.items():
                if value is True:
                    rendered.append(key)
                else:
                    rendered.append(f"{key}={escape_tag_value(str(value))}")
            parts.append("@" + ";".join(rendered))

        if self.prefix:
            parts.append(":" + self.prefix.serialize())

        parts.append(self.command)

        for i, param in enumerate(self.params):
            last = i == len(self.params) - 1
            needs_colon = not param or " " in param or param.startswith(":")
            if needs_colon:
                if not last:
                    raise ValueError(f"middle parameter cannot be encoded: {param!r}")
                parts.append(":" + param)
            else:
                parts.append(param)

        return " ".join(parts)


# ---------------------------------------------------------------------- #
# Tag escaping
# ---------------------------------------------------------------------- #


def unescape_tag_value(value: str) -> str:
    out: List[str] = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch != "\\":
            out.append(ch)
            i += 1
            continue

        if i + 1 >= len(value):
            # Lone trailing backslash is dropped.
            break

        nxt = value[i + 1]
        out.append(_UNESCAPE.get(nxt, nxt))
        i += 2

    return "".join(out)


def escape_tag_value(value: str) -> str:
    return "".join(_ESCAPE.get(ch, ch) for ch in value)


# ---------------------------------------------------------------------- #
# Parser
# ---------------------------------------------------------------------- #


def _parse_tags(raw_tags: str) -> Dict[str, TagValue]:
    tags: Dict[str, TagValue] = {}
    for pair in raw_tags.split(";"):
        if not pair:
            continue
        if "=" in pair:
            key, value = pair.split("=", 1)
            if not key:
                raise ParseError("tag with empty key")
            tags[key] = unescape_tag_value(value)
        else:
            tags[pair] = True
    return tags


def _parse_prefix(raw_prefix: str) -> IrcPrefix:
    if not raw_prefix:
        raise ParseError("empty prefix")

    rest = raw_prefix
    host = None
    user = None

    if "@" in rest:
        rest, host = rest.split("@", 1)
    if "!" in rest:
        rest, user = rest.split("!", 1)

    return IrcPrefix(nick=rest, user=user or None, host=host or None)


def parse_irc_line(line: str) -> IrcMessage:
    """
    Parse one raw line into an IrcMessage.

    Raises ParseError on any grammar violation; never IndexError.
    """
    if line is None:
        raise ParseError("no line", line)

    raw = line
    line = line.rstrip("\r\n")
    if not line.strip():
        raise ParseError("empty line", raw)

    pos = 0
    length = len(line)
    tags: Dict[str, TagValue] = {}
    prefix: Optional[IrcPrefix] = None

    def _skip_spaces(at: int) -> int:
        while at < length and line[at] == " ":
            at += 1
        return at

    def _read_token(at: int) -> tuple[str, int]:
        end = line.find(" ", at)
        if end == -1:
            end = length
        return line[at:end], end

    if line.startswith("@"):
        token, pos = _read_token(1)
        if pos >= length:
            raise ParseError("tags without command", raw)
        try:
            tags = _parse_tags(token)
        except ParseError as e:
            raise ParseError(str(e), raw) from e
        pos = _skip_spaces(pos)

    if pos < length and line[pos] == ":":
        token, pos = _read_token(pos + 1)
        if pos >= length:
            raise ParseError("prefix without command", raw)
        try:
            prefix = _parse_prefix(token)
        except ParseError as e:
            raise ParseError(str(e), raw) from e
        pos = _skip_spaces(pos)

    command, pos = _read_token(pos)
    if not command or not _COMMAND_RE.match(command):
        raise ParseError(f"invalid command {command!r}", raw)

    params: List[str] = []
    while pos < length:
        pos = _skip_spaces(pos)
        if pos >= length:
            break
        if line[pos] == ":":
            params.append(line[pos + 1:])
            break
        token, pos = _read_token(pos)
        params.append(token)

    return IrcMessage(
        command=command.upper(),
        params=params,
        tags=tags,
        prefix=prefix,
        raw=raw,
    )
