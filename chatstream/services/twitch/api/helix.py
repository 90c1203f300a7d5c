import httpx
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from chatstream.services.twitch.errors import HelixError
from chatstream.shared.chat.events import ThirdPartyEmote, UserInfo
from chatstream.shared.logging.logger import get_logger

log = get_logger("twitch.api.helix")

HELIX_BASE_URL = "https://api.twitch.tv/helix/"
VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"
USER_EMOTE_URL = "https://static-cdn.jtvnw.net/emoticons/v2/{id}/default/light/2.0"


@dataclass
class TokenInfo:
    client_id: str
    user_id: str
    login: str
    scopes: List[str] = field(default_factory=list)
    expires_in: Optional[int] = None

    @property
    def user(self) -> UserInfo:
        return UserInfo(id=self.user_id, login=self.login, name=self.login)


async def validate_token(
    token: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[TokenInfo]:
    """
    Resolve an OAuth token to its owner and client id.

    Returns None when Twitch rejects the token; any other failure raises
    HelixError.
    """
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10)

    try:
        resp = await client.get(VALIDATE_URL, headers={"Authorization": f"OAuth {token}"})
    except httpx.HTTPError as e:
        raise HelixError(f"Token validation failed: {e}", path=VALIDATE_URL) from e
    finally:
        if owns_client:
            await client.aclose()

    if resp.status_code == 401:
        log.warning(f"Twitch rejected OAuth token: {_error_message(resp)}")
        return None

    if resp.status_code >= 400:
        raise HelixError(
            f"Token validation failed: {resp.status_code} {_error_message(resp)}",
            path=VALIDATE_URL,
            status_code=resp.status_code,
        )

    data = resp.json()
    return TokenInfo(
        client_id=data["client_id"],
        user_id=data["user_id"],
        login=data["login"],
        scopes=list(data.get("scopes") or []),
        expires_in=data.get("expires_in"),
    )


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or resp.reason_phrase)
    return resp.reason_phrase


class HelixClient:
    """
    Minimal Helix REST client.

    Every call carries the bearer token and Client-Id headers. Non-2xx
    responses and transport failures raise HelixError.
    """

    def __init__(
        self,
        token: str,
        client_id: str,
        *,
        base_url: str = HELIX_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10,
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.client_id = client_id
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Client-Id": client_id,
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------ #
    # Raw requests
    # ------------------------------------------------------------------ #

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = self.base_url + path.lstrip("/")

        try:
            resp = await self._client.request(
                method,
                url,
                headers=self._headers,
                params=params,
                json=json,
            )
        except httpx.HTTPError as e:
            raise HelixError(f"Helix {method} {path} failed: {e}", path=path) from e

        if resp.status_code >= 400:
            raise HelixError(
                f"Helix {method} {path} returned {resp.status_code}: {_error_message(resp)}",
                path=path,
                status_code=resp.status_code,
            )

        if resp.status_code == 204 or not resp.content:
            return {}

        try:
            data = resp.json()
        except ValueError as e:
            raise HelixError(
                f"Helix {method} {path} returned non-JSON body",
                path=path,
                status_code=resp.status_code,
            ) from e

        if not isinstance(data, dict):
            raise HelixError(
                f"Helix {method} {path} returned non-object body",
                path=path,
                status_code=resp.status_code,
            )
        return data

    async def get(self, path: str, **params: Any) -> Dict[str, Any]:
        return await self.request("GET", path, params=params or None)

    async def post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", path, json=body)

    async def delete(self, path: str, **params: Any) -> Dict[str, Any]:
        return await self.request("DELETE", path, params=params or None)

    # ------------------------------------------------------------------ #
    # Users
    # ------------------------------------------------------------------ #

    async def get_user(self, login: str) -> Optional[UserInfo]:
        data = await self.get("users", login=login.lower())
        users = data.get("data") or []
        if not users:
            return None

        user = users[0]
        return UserInfo(
            id=user["id"],
            login=user["login"],
            name=user.get("display_name") or user["login"],
        )

    # ------------------------------------------------------------------ #
    # EventSub
    # ------------------------------------------------------------------ #

    async def create_eventsub_subscription(
        self,
        subscription_type: str,
        version: str,
        condition: Dict[str, Any],
        session_id: str,
    ) -> str:
        data = await self.post(
            "eventsub/subscriptions",
            {
                "type": subscription_type,
                "version": str(version),
                "condition": condition,
                "transport": {"method": "websocket", "session_id": session_id},
            },
        )

        try:
            return data["data"][0]["id"]
        except (KeyError, IndexError, TypeError) as e:
            raise HelixError(
                "eventsub/subscriptions response carried no subscription id",
                path="eventsub/subscriptions",
            ) from e

    async def delete_eventsub_subscription(self, subscription_id: str) -> None:
        await self.delete("eventsub/subscriptions", id=subscription_id)

    # ------------------------------------------------------------------ #
    # Chat
    # ------------------------------------------------------------------ #

    async def get_chat_badges(self, broadcaster_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Raw badge sets; global sets when no broadcaster is given."""
        if broadcaster_id is None:
            data = await self.get("chat/badges/global")
        else:
            data = await self.get("chat/badges", broadcaster_id=broadcaster_id)
        return list(data.get("data") or [])

    async def send_chat_message(self, broadcaster_id: str, sender_id: str, message: str) -> bool:
        data = await self.post(
            "chat/messages",
            {
                "broadcaster_id": broadcaster_id,
                "sender_id": sender_id,
                "message": message,
            },
        )

        result = (data.get("data") or [{}])[0]
        if not result.get("is_sent", False):
            reason = (result.get("drop_reason") or {}).get("message", "unknown reason")
            log.warning(f"Chat message dropped by Twitch: {reason}")
            return False
        return True

    async def get_user_emotes(self, user_id: str) -> Dict[str, ThirdPartyEmote]:
        """Every emote the user may send, keyed by name (follows pagination)."""
        emotes: Dict[str, ThirdPartyEmote] = {}
        cursor: Optional[str] = None

        while True:
            params: Dict[str, Any] = {"user_id": user_id}
            if cursor:
                params["after"] = cursor
            data = await self.get("chat/emotes/user", **params)

            for emote in data.get("data") or []:
                emotes[emote["name"]] = ThirdPartyEmote(
                    name=emote["name"],
                    image_url=USER_EMOTE_URL.format(id=emote["id"]),
                )

            cursor = (data.get("pagination") or {}).get("cursor")
            if not cursor:
                return emotes
