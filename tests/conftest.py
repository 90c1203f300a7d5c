import asyncio
import os

# Keep test runs from writing per-run log files.
os.environ["CHATSTREAM_LOG_DIR"] = ""

import pytest


async def wait_for(condition, timeout: float = 1.0, interval: float = 0.005) -> None:
    """Poll `condition` on the running loop until it holds or time runs out."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def basic_chat_line() -> str:
    return (
        "@badges=broadcaster/1;color=#FF0000;display-name=Foo;emotes=;first-msg=1;"
        "id=abc;mod=0;room-id=1;subscriber=0;tmi-sent-ts=1000;turbo=0;user-id=10;"
        "user-type= :foo!foo@foo.tmi.twitch.tv PRIVMSG #bar :Hello world"
    )
