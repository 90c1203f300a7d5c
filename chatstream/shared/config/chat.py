"""
Chat pipeline configuration loader.

Design rules:
- Import-safe (no side effects)
- JSON-only configuration, validated against CHAT_CONFIG_SCHEMA
- Validation problems are warnings; bad keys fall back to defaults
- Missing file means all defaults
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from chatstream.shared.logging.logger import get_logger

log = get_logger("shared.config.chat")

_CONFIG_PATH = Path(__file__).parent / "chat.json"

CHAT_CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "irc": {
            "type": "object",
            "properties": {
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                "reconnect_interval": {"type": "number", "exclusiveMinimum": 0},
                "max_reconnect_interval": {"type": "number", "exclusiveMinimum": 0},
                "reconnect_multiplier": {"type": "number", "minimum": 1},
                "max_auth_failures": {"type": "integer", "minimum": 1},
            },
        },
        "eventsub": {
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "reconnect_delay": {"type": "number", "minimum": 0},
            },
        },
        "history": {
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "window_seconds": {"type": "integer", "minimum": 1},
                "enabled": {"type": "boolean"},
            },
        },
        "event_log": {
            "type": "object",
            "properties": {
                "capacity": {"type": "integer", "minimum": 1},
            },
        },
        "emotes": {
            "type": "object",
            "properties": {
                "providers": {
                    "type": "array",
                    "items": {"enum": ["bttv", "ffz"]},
                },
            },
        },
    },
}


@dataclass
class IrcConfig:
    host: str = "irc.chat.twitch.tv"
    port: int = 6697
    reconnect_interval: float = 1.0
    max_reconnect_interval: float = 30.0
    reconnect_multiplier: float = 1.5
    max_auth_failures: int = 3


@dataclass
class EventSubConfig:
    url: str = "wss://eventsub.wss.twitch.tv/ws"
    reconnect_delay: float = 0.5


@dataclass
class HistoryConfig:
    url: str = "https://recent-messages.robotty.de/api/v2/recent-messages"
    window_seconds: int = 3600
    enabled: bool = True


@dataclass
class EventLogConfig:
    capacity: int = 1000


@dataclass
class EmoteConfig:
    providers: List[str] = field(default_factory=lambda: ["bttv", "ffz"])


@dataclass
class ChatConfig:
    irc: IrcConfig = field(default_factory=IrcConfig)
    eventsub: EventSubConfig = field(default_factory=EventSubConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    event_log: EventLogConfig = field(default_factory=EventLogConfig)
    emotes: EmoteConfig = field(default_factory=EmoteConfig)


def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.debug(f"chat config not found at {path}; using defaults")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning(f"Failed to load chat config ({e}); using defaults")
        return {}

    if not isinstance(data, dict):
        log.warning("chat config root is not an object; ignoring file")
        return {}
    return data


def _validate(payload: Dict[str, Any]) -> set:
    """Log schema violations; return the dotted keys that failed."""
    invalid = set()
    validator = Draft7Validator(CHAT_CONFIG_SCHEMA)
    for err in sorted(validator.iter_errors(payload), key=lambda e: list(e.path)):
        path = [str(p) for p in err.path]
        loc = "/".join(path)
        log.warning(f"chat config validation warning at '{loc}': {err.message}")
        if len(path) >= 2:
            invalid.add(f"{path[0]}.{path[1]}")
        elif path:
            invalid.add(path[0])
    return invalid


def _build_section(cls, raw: Any, section: str, invalid: set):
    if not isinstance(raw, dict) or section in invalid:
        return cls()

    values = {}
    for f in fields(cls):
        if f.name not in raw or f"{section}.{f.name}" in invalid:
            continue
        values[f.name] = raw[f.name]
    return cls(**values)


def load_chat_config(path: Optional[Path | str] = None) -> ChatConfig:
    """
    Load the chat configuration.

    Resolution order: explicit `path`, $CHATSTREAM_CONFIG, chat.json next to
    this module.
    """
    resolved = Path(path or os.getenv("CHATSTREAM_CONFIG") or _CONFIG_PATH)
    raw = _load_json(resolved)
    invalid = _validate(raw) if raw else set()

    config = ChatConfig(
        irc=_build_section(IrcConfig, raw.get("irc"), "irc", invalid),
        eventsub=_build_section(EventSubConfig, raw.get("eventsub"), "eventsub", invalid),
        history=_build_section(HistoryConfig, raw.get("history"), "history", invalid),
        event_log=_build_section(EventLogConfig, raw.get("event_log"), "event_log", invalid),
        emotes=_build_section(EmoteConfig, raw.get("emotes"), "emotes", invalid),
    )

    if config.irc.max_reconnect_interval < config.irc.reconnect_interval:
        log.warning("irc.max_reconnect_interval below reconnect_interval; clamping")
        config.irc.max_reconnect_interval = config.irc.reconnect_interval

    return config


@dataclass
class Credentials:
    """Credentials resolved from the environment (never logged)."""

    token: str = ""
    client_id: str = ""
    nickname: str = ""
    channel: str = ""

    @property
    def authenticated(self) -> bool:
        return bool(self.token and self.client_id)


def _env(key: str) -> str:
    return os.getenv(key, "").strip()


def load_env_credentials(channel_override: Optional[str] = None) -> Credentials:
    token = _env("TWITCH_OAUTH_TOKEN")
    if token.startswith("oauth:"):
        token = token[len("oauth:"):]
    return Credentials(
        token=token,
        client_id=_env("TWITCH_CLIENT_ID"),
        nickname=_env("TWITCH_BOT_NICK"),
        channel=(channel_override or _env("TWITCH_CHANNEL")).lstrip("#").lower(),
    )
