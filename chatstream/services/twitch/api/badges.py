from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union

from chatstream.services.twitch.api.helix import HelixClient
from chatstream.shared.chat.events import BadgeIdentifier
from chatstream.shared.logging.logger import get_logger

log = get_logger("twitch.api.badges")


@dataclass(frozen=True)
class BadgeInfo:
    image_url: str
    title: str
    description: str = ""


def parse_badge_sets(sets: Iterable[Dict[str, Any]]) -> Dict[str, BadgeInfo]:
    """Flatten Helix badge sets into a "set/version" keyed dictionary."""
    badges: Dict[str, BadgeInfo] = {}
    for badge_set in sets:
        set_id = badge_set.get("set_id")
        if not set_id:
            continue
        for version in badge_set.get("versions") or []:
            version_id = version.get("id")
            if version_id is None:
                continue
            badges[f"{set_id}/{version_id}"] = BadgeInfo(
                image_url=version.get("image_url_2x") or version.get("image_url_1x") or "",
                title=version.get("title") or set_id,
                description=version.get("description") or "",
            )
    return badges


class BadgeCatalog:
    """Badge lookup where channel badges shadow global ones."""

    def __init__(
        self,
        global_badges: Optional[Dict[str, BadgeInfo]] = None,
        channel_badges: Optional[Dict[str, BadgeInfo]] = None,
    ):
        self.global_badges = dict(global_badges or {})
        self.channel_badges = dict(channel_badges or {})

    def lookup(self, badge: Union[BadgeIdentifier, str]) -> Optional[BadgeInfo]:
        key = badge.key if isinstance(badge, BadgeIdentifier) else badge
        return self.channel_badges.get(key) or self.global_badges.get(key)

    def __len__(self) -> int:
        return len(self.global_badges.keys() | self.channel_badges.keys())

    def with_channel(self, channel_badges: Dict[str, BadgeInfo]) -> "BadgeCatalog":
        return BadgeCatalog(self.global_badges, channel_badges)


async def fetch_global_badges(helix: HelixClient) -> Dict[str, BadgeInfo]:
    badges = parse_badge_sets(await helix.get_chat_badges())
    log.debug(f"Loaded {len(badges)} global badges")
    return badges


async def fetch_channel_badges(helix: HelixClient, broadcaster_id: str) -> Dict[str, BadgeInfo]:
    badges = parse_badge_sets(await helix.get_chat_badges(broadcaster_id))
    log.debug(f"Loaded {len(badges)} channel badges for {broadcaster_id}")
    return badges
