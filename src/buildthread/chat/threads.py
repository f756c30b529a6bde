"""discord.py adapters for the conversation contract."""

from __future__ import annotations

from typing import Any

import discord

MAX_MESSAGE_LENGTH = 2000
MAX_THREAD_NAME_LENGTH = 100
THREAD_AUTO_ARCHIVE_MINUTES = 1440


def clip(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


class DiscordConversation:
    """Wrap a Discord thread or text channel."""

    def __init__(self, channel: discord.abc.Messageable) -> None:
        self._channel = channel

    @property
    def id(self) -> int:
        return self._channel.id  # type: ignore[attr-defined]

    @property
    def channel(self) -> discord.abc.Messageable:
        return self._channel

    async def send(self, text: str) -> discord.Message:
        return await self._channel.send(clip(text))

    async def edit(self, message: Any, text: str) -> None:
        await message.edit(content=clip(text))

    async def typing(self) -> None:
        # awaiting the context manager object sends a single typing pulse
        await self._channel.typing()


async def create_thread(origin: discord.Message, title: str) -> DiscordConversation:
    """Open a public thread anchored on ``origin``."""

    thread = await origin.create_thread(
        name=title[:MAX_THREAD_NAME_LENGTH],
        auto_archive_duration=THREAD_AUTO_ARCHIVE_MINUTES,
    )
    return DiscordConversation(thread)


__all__ = [
    "DiscordConversation",
    "MAX_MESSAGE_LENGTH",
    "clip",
    "create_thread",
]
