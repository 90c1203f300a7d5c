from typing import Dict, Optional, Set

from chatstream.core.channel import ChannelSession
from chatstream.services.twitch.api.badges import BadgeInfo, fetch_global_badges
from chatstream.services.twitch.api.emotes import EmoteMap, EmoteProviderClient, merge_emote_maps
from chatstream.services.twitch.api.eventsub import EventSubClient
from chatstream.services.twitch.api.helix import HelixClient, validate_token
from chatstream.services.twitch.api.irc import ConnectionState, TwitchIrcClient
from chatstream.services.twitch.api.recent_messages import RecentMessagesClient
from chatstream.services.twitch.errors import AuthenticationError, ChannelNotFoundError, HelixError
from chatstream.shared.chat.events import UserInfo
from chatstream.shared.config.chat import ChatConfig
from chatstream.shared.logging.logger import get_logger

log = get_logger("core.client")


class ChatClient:
    """
    Process-wide owner of the connection managers.

    Every ChannelSession opened through one ChatClient shares its single
    IRC socket or EventSub socket. Construct with authenticate() or
    anonymous().
    """

    def __init__(
        self,
        config: Optional[ChatConfig] = None,
        *,
        irc: Optional[TwitchIrcClient] = None,
        eventsub: Optional[EventSubClient] = None,
        helix: Optional[HelixClient] = None,
        history: Optional[RecentMessagesClient] = None,
        emote_provider: Optional[EmoteProviderClient] = None,
        self_user: Optional[UserInfo] = None,
    ):
        if irc is None and eventsub is None:
            raise ValueError("ChatClient needs an IRC or EventSub connection")

        self.config = config or ChatConfig()
        self.irc = irc
        self.eventsub = eventsub
        self.helix = helix
        self.history = history
        self.emote_provider = emote_provider
        self.self_user = self_user

        self.sessions: Set[ChannelSession] = set()

        self._global_emotes: Optional[EmoteMap] = None
        self._global_badges: Optional[Dict[str, BadgeInfo]] = None

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #

    @classmethod
    async def authenticate(
        cls,
        token: str,
        *,
        config: Optional[ChatConfig] = None,
        use_eventsub: bool = True,
    ) -> "ChatClient":
        """
        Validate `token` and build an authenticated client.

        With use_eventsub (the default) chat is read over EventSub and sent
        through Helix; otherwise an authenticated IRC connection is used.
        """
        config = config or ChatConfig()
        info = await validate_token(token)
        if info is None:
            raise AuthenticationError("Twitch rejected the OAuth token")

        log.info(f"Authenticated as {info.login} (client_id={info.client_id})")
        helix = HelixClient(token, info.client_id)

        if use_eventsub:
            eventsub: Optional[EventSubClient] = EventSubClient(helix, config=config.eventsub)
            irc: Optional[TwitchIrcClient] = None
        else:
            eventsub = None
            irc = TwitchIrcClient(token, info.login, config=config.irc)

        return cls(
            config,
            irc=irc,
            eventsub=eventsub,
            helix=helix,
            history=RecentMessagesClient(config=config.history),
            emote_provider=EmoteProviderClient(config.emotes.providers),
            self_user=info.user,
        )

    @classmethod
    def anonymous(cls, config: Optional[ChatConfig] = None) -> "ChatClient":
        """Read-only client over an anonymous IRC login."""
        config = config or ChatConfig()
        return cls(
            config,
            irc=TwitchIrcClient(config=config.irc),
            history=RecentMessagesClient(config=config.history),
            emote_provider=EmoteProviderClient(config.emotes.providers),
        )

    # ------------------------------------------------------------------ #
    # Channels
    # ------------------------------------------------------------------ #

    async def resolve_channel(self, login: str) -> UserInfo:
        login = login.strip().lstrip("#").strip().lower()
        if not login:
            raise ChannelNotFoundError(login)

        if self.helix is None:
            # Anonymous: the room id arrives later with ROOMSTATE.
            return UserInfo(id="", login=login, name=login)

        user = await self.helix.get_user(login)
        if user is None:
            raise ChannelNotFoundError(login)
        return user

    async def open(self, login: str) -> ChannelSession:
        """
        Open a channel and start live ingestion.

        Raises ChannelNotFoundError when the login does not resolve.
        """
        info = await self.resolve_channel(login)

        session = ChannelSession(
            info,
            config=self.config,
            irc=self.irc if self.eventsub is None else None,
            eventsub=self.eventsub,
            helix=self.helix,
            history=self.history,
            self_user=self.self_user,
        )
        self.sessions.add(session)

        if not info.id:
            async def _enrich_with_room_id(_info: UserInfo) -> None:
                await self._enrich(session)

            session.on("room_id", _enrich_with_room_id)
        session.start()

        if self.eventsub is None and self.irc is not None:
            if self.irc.state == ConnectionState.DISCONNECTED:
                await self.irc.connect()

        await self._enrich(session)
        log.info(f"Opened channel #{info.login} (id={info.id or 'pending'})")
        return session

    def close(self, session: ChannelSession) -> None:
        session.close()
        self.sessions.discard(session)

    async def shutdown(self) -> None:
        for session in list(self.sessions):
            self.close(session)

        if self.irc is not None:
            await self.irc.close()
        if self.eventsub is not None:
            await self.eventsub.close()
        for collaborator in (self.helix, self.history, self.emote_provider):
            if collaborator is not None:
                await collaborator.close()

        log.info("Chat client shut down")

    # ------------------------------------------------------------------ #
    # Enrichment
    # ------------------------------------------------------------------ #

    async def global_emotes(self) -> EmoteMap:
        if self._global_emotes is None:
            self._global_emotes = (
                await self.emote_provider.global_emotes() if self.emote_provider else {}
            )
        return self._global_emotes

    async def global_badges(self) -> Dict[str, BadgeInfo]:
        if self._global_badges is None:
            self._global_badges = {}
            if self.helix is not None:
                try:
                    self._global_badges = await fetch_global_badges(self.helix)
                except HelixError as e:
                    log.warning(f"Global badge fetch failed: {e}")
        return self._global_badges

    async def usable_emotes(self) -> EmoteMap:
        """Twitch emotes the logged-in user may send (empty when anonymous)."""
        if self.helix is None or self.self_user is None:
            return {}
        return await self.helix.get_user_emotes(self.self_user.id)

    async def _enrich(self, session: ChannelSession) -> None:
        room_id = session.info.id
        channel_emotes: EmoteMap = {}
        if self.emote_provider is not None and room_id:
            channel_emotes = await self.emote_provider.channel_emotes(room_id)

        global_emotes = await self.global_emotes()
        if room_id != session.info.id or session.closed:
            # A ROOMSTATE load for the resolved id supersedes this one.
            return

        # Channel emotes shadow global ones.
        session.emotes = merge_emote_maps(global_emotes, channel_emotes)
        await session.load_badges(await self.global_badges())
