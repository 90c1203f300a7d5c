import asyncio
import httpx
from typing import Any, Dict, Iterable, List, Mapping, Optional

from chatstream.shared.chat.events import ThirdPartyEmote
from chatstream.shared.logging.logger import get_logger

log = get_logger("twitch.api.emotes")

EmoteMap = Dict[str, ThirdPartyEmote]

PROVIDERS = ("bttv", "ffz")

BTTV_GLOBAL_URL = "https://api.betterttv.net/3/cached/emotes/global"
BTTV_CHANNEL_URL = "https://api.betterttv.net/3/cached/users/twitch/{user_id}"
BTTV_CDN_URL = "https://cdn.betterttv.net/emote/{id}/2x.{image_type}"

FFZ_GLOBAL_URL = "https://api.frankerfacez.com/v1/set/global"
FFZ_CHANNEL_URL = "https://api.frankerfacez.com/v1/room/id/{user_id}"


def merge_emote_maps(*maps: Optional[Mapping[str, ThirdPartyEmote]]) -> EmoteMap:
    """
    Combine emote dictionaries in order.

    On a name collision the later map wins, so pass the most specific
    source last (global before channel, bttv before ffz).
    """
    merged: EmoteMap = {}
    for emote_map in maps:
        if emote_map:
            merged.update(emote_map)
    return merged


def _aspect_ratio(width: Any, height: Any) -> float:
    try:
        if width and height:
            return float(width) / float(height)
    except (TypeError, ValueError):
        pass
    return 1.0


# ---------------------------------------------------------------------------
# BTTV
# ---------------------------------------------------------------------------

def parse_bttv_emotes(emotes: Iterable[Dict[str, Any]]) -> EmoteMap:
    parsed: EmoteMap = {}
    for emote in emotes:
        code = emote.get("code")
        if not code or not emote.get("id"):
            continue
        parsed[code] = ThirdPartyEmote(
            name=code,
            image_url=BTTV_CDN_URL.format(id=emote["id"], image_type=emote.get("imageType") or "webp"),
            aspect_ratio=_aspect_ratio(emote.get("width"), emote.get("height")),
        )
    return parsed


# ---------------------------------------------------------------------------
# FFZ
# ---------------------------------------------------------------------------

def parse_ffz_sets(sets: Iterable[Dict[str, Any]]) -> EmoteMap:
    parsed: EmoteMap = {}
    for emote_set in sets:
        for emote in emote_set.get("emoticons") or []:
            name = emote.get("name")
            urls = emote.get("animated") or emote.get("urls") or {}
            url = urls.get("2") or urls.get("1")
            if not name or not url:
                continue
            parsed[name] = ThirdPartyEmote(
                name=name,
                image_url=url,
                aspect_ratio=_aspect_ratio(emote.get("width"), emote.get("height")),
            )
    return parsed


class EmoteProviderClient:
    """
    Fetch third-party emote dictionaries.

    A failing provider is logged and contributes nothing; the other
    providers still load.
    """

    def __init__(
        self,
        providers: Iterable[str] = PROVIDERS,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.providers: List[str] = [p for p in providers if p in PROVIDERS]
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=10)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, url: str) -> Any:
        resp = await self._client.get(url)
        resp.raise_for_status()
        return resp.json()

    # -- BTTV --------------------------------------------------------------

    async def bttv_global(self) -> EmoteMap:
        data = await self._get_json(BTTV_GLOBAL_URL)
        return parse_bttv_emotes(data if isinstance(data, list) else [])

    async def bttv_channel(self, user_id: str) -> EmoteMap:
        data = await self._get_json(BTTV_CHANNEL_URL.format(user_id=user_id))
        if not isinstance(data, dict):
            return {}
        return parse_bttv_emotes([*(data.get("channelEmotes") or []), *(data.get("sharedEmotes") or [])])

    # -- FFZ ---------------------------------------------------------------

    async def ffz_global(self) -> EmoteMap:
        data = await self._get_json(FFZ_GLOBAL_URL)
        sets = data.get("sets") or {}
        default_sets = [sets.get(str(set_id)) for set_id in data.get("default_sets") or []]
        return parse_ffz_sets(s for s in default_sets if s)

    async def ffz_channel(self, user_id: str) -> EmoteMap:
        data = await self._get_json(FFZ_CHANNEL_URL.format(user_id=user_id))
        return parse_ffz_sets((data.get("sets") or {}).values())

    # -- Combined ----------------------------------------------------------

    async def _guarded(self, provider: str, scope: str, fetch) -> EmoteMap:
        try:
            return await fetch()
        except httpx.HTTPStatusError as e:
            log.warning(
                f"Failed to fetch {provider} {scope} emotes: "
                f"{e.response.status_code} {e.response.reason_phrase}"
            )
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            log.warning(f"Failed to fetch {provider} {scope} emotes: {e}")
        return {}

    async def global_emotes(self) -> EmoteMap:
        fetchers = {"bttv": self.bttv_global, "ffz": self.ffz_global}
        results = await asyncio.gather(
            *(self._guarded(p, "global", fetchers[p]) for p in self.providers)
        )
        return merge_emote_maps(*results)

    async def channel_emotes(self, user_id: str) -> EmoteMap:
        fetchers = {
            "bttv": lambda: self.bttv_channel(user_id),
            "ffz": lambda: self.ffz_channel(user_id),
        }
        results = await asyncio.gather(
            *(self._guarded(p, "channel", fetchers[p]) for p in self.providers)
        )
        return merge_emote_maps(*results)
