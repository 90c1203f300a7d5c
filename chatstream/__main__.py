import argparse
import asyncio
from typing import List

from dotenv import load_dotenv

from chatstream.core.channel import ChannelSession
from chatstream.core.client import ChatClient
from chatstream.services.twitch.errors import AuthenticationError, ChannelNotFoundError
from chatstream.shared.chat.events import (
    ChatEvent,
    MessageEvent,
    NoticeEvent,
    RedemptionEvent,
    SystemEvent,
)
from chatstream.shared.chat.segmenter import EmoteSegment, Segment, UrlSegment
from chatstream.shared.config.chat import load_chat_config, load_env_credentials
from chatstream.shared.logging.logger import get_logger

log = get_logger("chatstream.cli")


def _render_segments(segments: List[Segment]) -> str:
    parts = []
    for segment in segments:
        if isinstance(segment, EmoteSegment):
            parts.append(f"[{segment.name}]")
        elif isinstance(segment, UrlSegment):
            parts.append(f"<{segment.url}>")
        else:
            parts.append(segment.text)
    return "".join(parts)


def render_event(session: ChannelSession, event: ChatEvent) -> str:
    prefix = "✖ " if event.deleted else ""
    stamp = event.timestamp.strftime("%H:%M:%S")

    if isinstance(event, MessageEvent):
        body = _render_segments(session.segment(event.message))
        name = event.author.name or event.author.login
        if event.is_action:
            return f"{stamp} {prefix}* {name} {body}"
        return f"{stamp} {prefix}{name}: {body}"

    if isinstance(event, NoticeEvent):
        line = f"{stamp} {prefix}📣 {event.text}"
        if event.message is not None:
            line += f" | {event.message.author.name}: {event.message.text}"
        return line

    if isinstance(event, RedemptionEvent):
        reward = event.redemption
        line = f"{stamp} 🎁 {event.by.name} redeemed {reward.title} ({reward.cost})"
        if reward.input:
            line += f": {reward.input}"
        return line

    if isinstance(event, SystemEvent):
        return f"{stamp} -- {event.text}"

    return f"{stamp} {event.type}"


async def _run(args) -> None:
    load_dotenv()

    config = load_chat_config(args.config)
    creds = load_env_credentials(args.channel)
    token = (args.token or creds.token).strip()
    if token.startswith("oauth:"):
        token = token[len("oauth:"):]

    if not creds.channel:
        raise RuntimeError("Missing Twitch channel. Provide --channel or set TWITCH_CHANNEL")

    if token:
        client = await ChatClient.authenticate(token, config=config, use_eventsub=not args.irc)
        if creds.client_id and client.helix and creds.client_id != client.helix.client_id:
            log.warning("TWITCH_CLIENT_ID does not match the token's client id; using the token's")
    else:
        log.info("No token supplied; joining anonymously over IRC (read-only)")
        client = ChatClient.anonymous(config)

    session = await client.open(creds.channel)

    def _on_update(events: List[ChatEvent]) -> None:
        for event in events:
            if event.deleted:
                print(render_event(session, event))

    session.on("event", lambda event: print(render_event(session, event)))
    session.on("update", _on_update)

    for event in session.events:
        print(render_event(session, event))

    log.info(f"Listening to #{session.login} (Ctrl+C to stop)")
    try:
        await asyncio.Event().wait()
    finally:
        await client.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="ChatStream smoke test: print a Twitch channel's unified chat stream"
    )
    parser.add_argument("--channel", help="Twitch channel to open (without #)")
    parser.add_argument("--token", help="OAuth token (with or without oauth: prefix)")
    parser.add_argument("--irc", action="store_true", help="Read chat over IRC instead of EventSub")
    parser.add_argument("--config", help="Path to a chat.json config file")

    args = parser.parse_args()
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutting down")
    except (AuthenticationError, ChannelNotFoundError) as e:
        log.error(str(e))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
