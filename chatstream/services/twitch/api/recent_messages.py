import httpx
from datetime import datetime
from typing import List, Optional

from chatstream.services.twitch.errors import HistoricalFetchError, ParseError
from chatstream.services.twitch.models.irc import IrcMessage, parse_irc_line
from chatstream.shared.config.chat import HistoryConfig
from chatstream.shared.logging.logger import get_logger

log = get_logger("twitch.api.recent_messages")


def _epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class RecentMessagesClient:
    """
    Historical backfill from the recent-messages service.

    The service answers {"messages": [raw IRC lines]} or {"error": "..."};
    every line is parsed independently and bad lines are skipped.
    """

    def __init__(
        self,
        *,
        config: Optional[HistoryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or HistoryConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=10)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_lines(self, login: str, *, after: datetime, before: datetime) -> List[str]:
        url = f"{self.config.url.rstrip('/')}/{login.lower()}"
        params = {"after": _epoch_millis(after), "before": _epoch_millis(before)}

        try:
            resp = await self._client.get(url, params=params)
        except httpx.HTTPError as e:
            raise HistoricalFetchError(f"request failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and body.get("error"):
            raise HistoricalFetchError(str(body["error"]), status_code=resp.status_code)

        if resp.status_code >= 400:
            raise HistoricalFetchError(
                f"{resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
            )

        if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
            raise HistoricalFetchError("malformed response", status_code=resp.status_code)

        return [line for line in body["messages"] if isinstance(line, str)]

    async def fetch(self, login: str, *, after: datetime, before: datetime) -> List[IrcMessage]:
        lines = await self.fetch_lines(login, after=after, before=before)

        messages: List[IrcMessage] = []
        for line in lines:
            try:
                messages.append(parse_irc_line(line.rstrip("\r\n")))
            except ParseError as e:
                log.warning(f"[#{login}] Skipping malformed historic line: {e}")

        log.debug(f"[#{login}] Fetched {len(messages)} historic lines")
        return messages
