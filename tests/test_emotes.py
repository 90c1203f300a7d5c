import asyncio

import httpx

from chatstream.services.twitch.api.emotes import (
    EmoteProviderClient,
    merge_emote_maps,
    parse_bttv_emotes,
    parse_ffz_sets,
)
from chatstream.shared.chat.events import ThirdPartyEmote

BTTV_GLOBAL = [
    {"id": "b1", "code": "catJAM", "imageType": "gif", "width": 56, "height": 28},
    {"id": "b2", "code": "FeelsGoodMan"},
    {"code": "NoId"},
]

BTTV_CHANNEL = {
    "channelEmotes": [{"id": "c1", "code": "chanEmote", "imageType": "png"}],
    "sharedEmotes": [{"id": "s1", "code": "catJAM", "imageType": "webp"}],
}

FFZ_GLOBAL = {
    "default_sets": [3],
    "sets": {
        "3": {"emoticons": [{"name": "ZreknarF", "urls": {"1": "https://cdn.ffz/1", "2": "https://cdn.ffz/2"}}]},
        "4": {"emoticons": [{"name": "NotDefault", "urls": {"1": "https://cdn.ffz/x"}}]},
    },
}

FFZ_CHANNEL = {
    "sets": {
        "99": {
            "emoticons": [
                {"name": "LilZ", "urls": {"1": "https://cdn.ffz/lil"}, "animated": {"2": "https://cdn.ffz/lil.webp"}},
                {"name": "NoUrl", "urls": {}},
            ]
        }
    }
}


def _transport(routes):
    def handler(request: httpx.Request) -> httpx.Response:
        route = routes.get(request.url.host + request.url.path)
        if route is None:
            return httpx.Response(404, json={"message": "not found"})
        status, body = route
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


def _client(routes, providers=("bttv", "ffz")):
    http = httpx.AsyncClient(transport=_transport(routes))
    return EmoteProviderClient(providers, client=http), http


def test_parse_bttv_emotes_builds_cdn_urls():
    emotes = parse_bttv_emotes(BTTV_GLOBAL)

    assert set(emotes) == {"catJAM", "FeelsGoodMan"}
    assert emotes["catJAM"].image_url == "https://cdn.betterttv.net/emote/b1/2x.gif"
    assert emotes["catJAM"].aspect_ratio == 2.0
    assert emotes["FeelsGoodMan"].image_url == "https://cdn.betterttv.net/emote/b2/2x.webp"
    assert emotes["FeelsGoodMan"].aspect_ratio == 1.0


def test_parse_ffz_prefers_animated_and_larger_urls():
    emotes = parse_ffz_sets(FFZ_CHANNEL["sets"].values())

    assert list(emotes) == ["LilZ"]
    assert emotes["LilZ"].image_url == "https://cdn.ffz/lil.webp"


def test_merge_later_map_wins():
    a = {"x": ThirdPartyEmote(name="x", image_url="a")}
    b = {"x": ThirdPartyEmote(name="x", image_url="b"), "y": ThirdPartyEmote(name="y", image_url="b")}

    merged = merge_emote_maps(a, None, b)

    assert merged["x"].image_url == "b"
    assert set(merged) == {"x", "y"}
    assert a["x"].image_url == "a"


def test_global_emotes_combine_providers():
    routes = {
        "api.betterttv.net/3/cached/emotes/global": (200, BTTV_GLOBAL),
        "api.frankerfacez.com/v1/set/global": (200, FFZ_GLOBAL),
    }

    async def run():
        provider, http = _client(routes)
        try:
            return await provider.global_emotes()
        finally:
            await http.aclose()

    emotes = asyncio.run(run())

    assert set(emotes) == {"catJAM", "FeelsGoodMan", "ZreknarF"}
    assert emotes["ZreknarF"].image_url == "https://cdn.ffz/2"


def test_channel_emotes_include_shared_bttv_emotes():
    routes = {
        "api.betterttv.net/3/cached/users/twitch/42": (200, BTTV_CHANNEL),
        "api.frankerfacez.com/v1/room/id/42": (200, FFZ_CHANNEL),
    }

    async def run():
        provider, http = _client(routes)
        try:
            return await provider.channel_emotes("42")
        finally:
            await http.aclose()

    emotes = asyncio.run(run())

    assert set(emotes) == {"chanEmote", "catJAM", "LilZ"}
    assert emotes["catJAM"].image_url == "https://cdn.betterttv.net/emote/s1/2x.webp"


def test_failing_provider_contributes_nothing():
    routes = {
        "api.betterttv.net/3/cached/emotes/global": (200, BTTV_GLOBAL),
        "api.frankerfacez.com/v1/set/global": (500, {"message": "down"}),
    }

    async def run():
        provider, http = _client(routes)
        try:
            return await provider.global_emotes()
        finally:
            await http.aclose()

    emotes = asyncio.run(run())

    assert set(emotes) == {"catJAM", "FeelsGoodMan"}


def test_channel_without_provider_account_is_empty():
    async def run():
        provider, http = _client({})
        try:
            return await provider.channel_emotes("7")
        finally:
            await http.aclose()

    assert asyncio.run(run()) == {}


def test_unknown_providers_are_ignored():
    routes = {"api.betterttv.net/3/cached/emotes/global": (200, BTTV_GLOBAL)}

    async def run():
        provider, http = _client(routes, providers=["bttv", "7tv"])
        try:
            assert provider.providers == ["bttv"]
            return await provider.global_emotes()
        finally:
            await http.aclose()

    assert set(asyncio.run(run())) == {"catJAM", "FeelsGoodMan"}
