"""Error taxonomy for the Twitch chat pipeline."""

from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by the chat pipeline."""


class ParseError(ChatError):
    """
    A single protocol line did not match the IRC grammar.

    Connection managers log it and drop the line; the connection survives.
    """

    def __init__(self, message: str, line: Optional[str] = None):
        super().__init__(message)
        self.line = line


class AuthenticationError(ChatError):
    """The server rejected our credentials for the current connection attempt."""


class TransportError(ChatError):
    """Socket-level failure. Always followed by a backoff reconnect."""


class SubscriptionError(ChatError):
    """A remote EventSub subscription request failed."""

    def __init__(
        self,
        message: str,
        *,
        subscription_type: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.subscription_type = subscription_type
        self.status_code = status_code


class HistoricalFetchError(ChatError):
    """The recent-messages backfill request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class HelixError(ChatError):
    """Non-2xx response from the Helix REST API."""

    def __init__(self, message: str, *, path: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.path = path
        self.status_code = status_code


class ChannelNotFoundError(ChatError):
    """Raised by ChatClient.open() when the login does not resolve to a channel."""

    def __init__(self, login: str):
        super().__init__(f"channel does not exist: {login}")
        self.login = login
