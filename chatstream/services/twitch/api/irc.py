import asyncio
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set, Tuple

from chatstream.services.twitch.errors import (
    AuthenticationError,
    ParseError,
    TransportError,
)
from chatstream.services.twitch.models.irc import IrcMessage, parse_irc_line
from chatstream.shared.config.chat import IrcConfig
from chatstream.shared.logging.logger import get_logger
from chatstream.shared.utils.emitter import Emitter

log = get_logger("twitch.irc")

Connector = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, Any]]]


async def _open_tls(host: str, port: int):
    return await asyncio.open_connection(host, port, ssl=True)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READY = "ready"
    RECONNECTING = "reconnecting"


class TwitchIrcClient:
    """
    Persistent Twitch IRC-over-TLS connection with automatic reconnection.

    - No event loop work on construction; connect() starts everything.
    - Emits: connecting, connected, ready, disconnected, reconnecting,
      reconnect_requested, error, message (IrcMessage).
    - PING is answered inline and never surfaced.
    - Sends are fire-and-forget writes on the transport.
    - Joined channels are remembered and re-joined after every login.
    """

    CAPABILITIES = "twitch.tv/tags twitch.tv/commands twitch.tv/membership"

    AUTH_FAILURE_NOTICES = frozenset(
        {
            "Login authentication failed",
            "Improperly formatted AUTH",
            "Invalid NICK",
        }
    )

    def __init__(
        self,
        token: Optional[str] = None,
        nickname: Optional[str] = None,
        *,
        config: Optional[IrcConfig] = None,
        connector: Optional[Connector] = None,
    ):
        if token and not nickname:
            raise ValueError("nickname is required when a token is supplied")

        self.config = config or IrcConfig()
        self.token = self._normalize_token(token) if token else None
        self.nickname = nickname.lower() if nickname else None
        self.channels: Set[str] = set()
        self.state = ConnectionState.DISCONNECTED

        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Any = None

        self._connector = connector or _open_tls
        self._events = Emitter("twitch.irc")
        self._ready = asyncio.Event()

        self._read_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connection_id = 0

        self._intentional_disconnect = False
        self._reconnect_immediately = False
        self._reconnect_attempts = 0
        self._auth_failures = 0

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #

    def on(self, event: str, handler: Callable[[Any], Any]) -> Callable[[], None]:
        return self._events.on(event, handler)

    def off(self, event: str, handler: Callable[[Any], Any]) -> None:
        self._events.off(event, handler)

    @property
    def ready(self) -> bool:
        return self.state == ConnectionState.READY

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        """Resolve once the current connection has logged in."""
        if timeout is None:
            await self._ready.wait()
        else:
            await asyncio.wait_for(self._ready.wait(), timeout)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """
        Open the TLS socket, request capabilities and log in.

        Returns once the socket is open; use wait_ready() for login.
        """
        if self.writer is not None or self.state == ConnectionState.CONNECTING:
            log.debug("TwitchIrcClient already connected or connecting")
            return

        current = asyncio.current_task()
        if self._reconnect_task and self._reconnect_task is not current:
            self._reconnect_task.cancel()
        self._reconnect_task = None

        self._intentional_disconnect = False
        self.state = ConnectionState.CONNECTING
        self._events.emit("connecting")

        log.info(f"Connecting to Twitch IRC ({self.config.host}:{self.config.port})")
        try:
            reader, writer = await self._connector(self.config.host, self.config.port)
        except (OSError, asyncio.TimeoutError) as e:
            error = TransportError(f"Could not connect to Twitch IRC: {e}")
            log.warning(str(error))
            self.state = ConnectionState.DISCONNECTED
            self._events.emit("error", error)
            if not self._intentional_disconnect:
                self._schedule_reconnect()
            return

        if self._intentional_disconnect:
            # disconnect() was called while the socket was opening.
            writer.close()
            self.state = ConnectionState.DISCONNECTED
            return

        self.reader = reader
        self.writer = writer
        self._connection_id += 1
        self.state = ConnectionState.CONNECTED
        self._events.emit("connected")

        self._send_raw(f"CAP REQ :{self.CAPABILITIES}")
        self._authenticate()

        self._read_task = asyncio.create_task(self._read_loop(reader, self._connection_id))

    def disconnect(self, intentional: bool = True) -> None:
        """
        Drop the connection. An intentional disconnect suppresses the
        automatic reconnect; a non-intentional one goes through backoff.
        """
        if intentional:
            self._intentional_disconnect = True
            if self._reconnect_task:
                self._reconnect_task.cancel()
                self._reconnect_task = None

        if self.writer is None:
            if intentional:
                self.state = ConnectionState.DISCONNECTED
            return

        self._send_raw("QUIT")
        self._drop_connection()

    async def close(self) -> None:
        """Intentional disconnect that also waits for the reader to stop."""
        read_task = self._read_task
        self.disconnect(intentional=True)

        if read_task and not read_task.done():
            read_task.cancel()
            try:
                await read_task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------ #
    # Channels & messaging
    # ------------------------------------------------------------------ #

    def join(self, channel: str) -> None:
        normalized = self._normalize_channel(channel)
        self.channels.add(normalized)
        if self.ready:
            self._send_raw(f"JOIN #{normalized}")

    def part(self, channel: str) -> None:
        normalized = self._normalize_channel(channel)
        self.channels.discard(normalized)
        if self.ready:
            self._send_raw(f"PART #{normalized}")

    def say(self, channel: str, text: str) -> bool:
        if not text.strip():
            return False
        normalized = self._normalize_channel(channel)
        sent = self._send_raw(f"PRIVMSG #{normalized} :{text}")
        if sent:
            log.info(f"[#{normalized}] Sent chat message ({len(text)} chars)")
        return sent

    # ------------------------------------------------------------------ #
    # Inbound
    # ------------------------------------------------------------------ #

    def handle_data(self, data: str) -> None:
        """Dispatch a chunk of inbound text, one CRLF-delimited line at a time."""
        for line in data.split("\r\n"):
            line = line.rstrip("\n")
            if line:
                self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        if line.startswith("PING"):
            # PING :tmi.twitch.tv → PONG :tmi.twitch.tv
            self._send_raw(f"PONG{line[4:]}")
            log.debug("Responded to Twitch PING")
            return

        try:
            message = parse_irc_line(line)
        except ParseError as e:
            log.warning(f"Dropping malformed IRC line ({e}): {line!r}")
            self._events.emit("error", e)
            return

        if message.command == "001":
            self._on_authenticated()
            return

        if message.command == "NOTICE" and message.text in self.AUTH_FAILURE_NOTICES:
            self._on_auth_failure(message.text or "Authentication failed")
            return

        if message.command == "RECONNECT":
            log.info("Twitch requested reconnect; reconnecting immediately")
            self._events.emit("reconnect_requested")
            self._reconnect_immediately = True
            self.disconnect(intentional=False)
            return

        self._events.emit("message", message)

    async def _read_loop(self, reader: asyncio.StreamReader, connection_id: int) -> None:
        try:
            while True:
                line = await reader.readline()
                if line == b"":
                    log.warning("Twitch IRC connection closed by remote")
                    break
                self.handle_data(line.decode("utf-8", errors="replace"))
                if connection_id != self._connection_id or self.writer is None:
                    return
        except asyncio.CancelledError:
            raise
        except (OSError, asyncio.IncompleteReadError, ValueError) as e:
            error = TransportError(f"Twitch IRC read failed: {e}")
            log.warning(str(error))
            self._events.emit("error", error)

        if connection_id == self._connection_id and self.writer is not None:
            self._drop_connection()

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _authenticate(self) -> None:
        if self.token:
            self._send_raw(f"PASS {self.token}")
            self._send_raw(f"NICK {self.nickname}")
        else:
            anonymous = f"justinfan{random.randint(1000, 99999)}"
            log.info(f"No token supplied; logging in anonymously as {anonymous}")
            self._send_raw(f"NICK {anonymous}")

    def _on_authenticated(self) -> None:
        self.state = ConnectionState.READY
        self._reconnect_attempts = 0
        self._auth_failures = 0
        self._ready.set()
        log.info("Twitch IRC ready")
        self._events.emit("ready")

        for channel in sorted(self.channels):
            self._send_raw(f"JOIN #{channel}")

    def _on_auth_failure(self, reason: str) -> None:
        self._auth_failures += 1
        error = AuthenticationError(reason)
        log.error(f"Twitch IRC authentication failed ({self._auth_failures}x): {reason}")
        self._events.emit("error", error)

        if self._auth_failures >= self.config.max_auth_failures:
            log.error("Repeated authentication failures; not reconnecting")
            self.disconnect(intentional=True)
        else:
            self.disconnect(intentional=False)

    def _drop_connection(self) -> None:
        writer = self.writer
        read_task = self._read_task

        self._handle_closed()

        try:
            writer.close()
        except (OSError, RuntimeError) as e:
            log.debug(f"Error during Twitch IRC close ignored: {e}")

        if read_task and read_task is not asyncio.current_task() and not read_task.done():
            read_task.cancel()

    def _handle_closed(self) -> None:
        self.reader = None
        self.writer = None
        self._read_task = None
        self._ready.clear()
        self.state = ConnectionState.DISCONNECTED
        self._events.emit("disconnected")

        if self._intentional_disconnect:
            log.info("Twitch IRC disconnected")
            return

        immediate = self._reconnect_immediately
        self._reconnect_immediately = False
        self._schedule_reconnect(immediate=immediate)

    def backoff_for(self, attempt: int) -> float:
        cfg = self.config
        return min(
            cfg.max_reconnect_interval,
            cfg.reconnect_interval * cfg.reconnect_multiplier ** attempt,
        )

    def _schedule_reconnect(self, immediate: bool = False) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()

        backoff = 0.0 if immediate else self.backoff_for(self._reconnect_attempts)
        self._reconnect_attempts += 1
        self.state = ConnectionState.RECONNECTING

        log.info(
            f"Reconnecting to Twitch IRC in {backoff:.1f}s "
            f"(attempt={self._reconnect_attempts})"
        )
        self._events.emit(
            "reconnecting",
            {"attempt": self._reconnect_attempts, "backoff": backoff},
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(backoff))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.connect()

    def _send_raw(self, data: str) -> bool:
        if self.writer is None:
            log.debug(f"IRC writer not connected; dropped {data.split(' ', 1)[0]}")
            return False

        self.writer.write((data + "\r\n").encode("utf-8"))
        return True

    @staticmethod
    def _normalize_token(token: str) -> str:
        token = token.strip()
        if not token.startswith("oauth:"):
            return f"oauth:{token}"
        return token

    @staticmethod
    def _normalize_channel(channel: str) -> str:
        return channel.lstrip("#").strip().lower()
