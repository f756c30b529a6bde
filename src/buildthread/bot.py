"""Discord bot bootstrap for buildthread."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Optional

import discord

from . import __version__
from .agent import AgentController, ProfileLoader
from .chat.threads import DiscordConversation, create_thread
from .config import BuildSettings, get_settings
from .sandbox import create_backend
from .session import BuildSessionManager, Requester
from .storage import ChromaStore, ChromaUnavailableError
from .vcs import GitHubAppCredentials, GitHubClient, GitWorkspace

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the build bot."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def open_journal(settings: BuildSettings) -> ChromaStore | None:
    try:
        journal = ChromaStore(settings.chroma_persist_path)
        journal.ping()
    except ChromaUnavailableError as exc:
        logger.warning(
            "Session journal unavailable; orphaned sandboxes will not be reaped",
            extra={"path": str(settings.chroma_persist_path), "error": str(exc)},
        )
        return None
    return journal


def create_manager(
    settings: Optional[BuildSettings] = None,
    *,
    journal: ChromaStore | None = None,
) -> BuildSessionManager:
    """Wire the sandbox, git, review and agent collaborators into a manager."""

    settings = settings or get_settings()

    backend = create_backend(settings)
    credentials = GitHubAppCredentials(
        settings.github_app_id,
        settings.github_app_private_key,
        settings.github_app_installation_id,
        api_url=settings.github_api_url,
    )
    review = GitHubClient(
        credentials, settings.repo_owner, settings.repo_name, api_url=settings.github_api_url
    )
    workspace = GitWorkspace(
        backend,
        repo_url=settings.repo_url,
        default_branch=settings.default_branch,
        repo_path=settings.repo_path,
        token_provider=credentials.installation_token,
        author_email=settings.git_author_email,
    )
    profile = (
        ProfileLoader(settings.profile_paths)
        .get(settings.agent_profile)
        .with_overrides(
            binary=settings.agent_bin,
            run_flags=settings.agent_run_flags,
            path_prefix=settings.agent_path_prefix,
        )
    )
    agent = AgentController(backend, profile, settings.repo_path)

    return BuildSessionManager(
        settings,
        backend=backend,
        workspace=workspace,
        review=review,
        agent=agent,
        open_thread=create_thread,
        journal=journal if journal is not None else open_journal(settings),
    )


def format_status(snapshot: list[dict[str, Any]]) -> str:
    if not snapshot:
        return "No active build sessions."
    lines = [f"**Build sessions ({len(snapshot)})**"]
    for entry in snapshot:
        minutes = entry["age_seconds"] // 60
        lines.append(
            f"• `{entry['session_id']}` {entry['status']} by {entry['requester']}, "
            f"{minutes}m old: {entry['pr_url']}"
        )
    return "\n".join(lines)


class BuildBot(discord.Client):
    """Routes build commands and thread messages to the session manager."""

    def __init__(self, manager: BuildSessionManager, settings: BuildSettings) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(intents=intents)
        self._manager = manager
        self._settings = settings
        self._sweep_task: asyncio.Task[None] | None = None
        self._reaped = False

    async def setup_hook(self) -> None:
        self._sweep_task = self.loop.create_task(self._periodic_sweep())

    async def _periodic_sweep(self) -> None:
        while not self.is_closed():
            await asyncio.sleep(self._settings.sweep_interval)
            await self._manager.sweep_stale()

    async def on_ready(self) -> None:
        logger.info("Connected to Discord", extra={"user": str(self.user)})
        if self._reaped:
            return
        self._reaped = True
        reaped = await self._manager.reap_orphans()
        if reaped:
            logger.info("Reaped sandboxes left by a previous run", extra={"count": len(reaped)})

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot:
            return
        content = message.content.strip()

        if isinstance(message.channel, discord.Thread):
            if self._manager.get_session_by_thread(message.channel.id) is not None:
                await self._manager.handle_turn(DiscordConversation(message.channel), content)
                return

        if content == self._settings.status_command:
            await message.channel.send(format_status(self._manager.status_snapshot()))
            return

        prefix = self._settings.build_command_prefix
        if content != prefix and not content.startswith(prefix + " "):
            return
        description = content[len(prefix) :].strip()
        if not description:
            await message.channel.send(f"Usage: `{prefix} <description of what to build>`")
            return

        requester = Requester(id=str(message.author.id), name=message.author.name)
        await self._manager.start(message, description, requester)

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
        await self._manager.shutdown()
        await super().close()


def main() -> None:
    """Entry point for running the build bot via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    if not settings.discord_token:
        raise SystemExit("DISCORD_TOKEN is not configured")

    manager = create_manager(settings)
    bot = BuildBot(manager, settings)
    logger.info(
        "Launching build bot",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "sandbox_backend": settings.sandbox_backend,
            "agent_profile": settings.agent_profile,
        },
    )
    bot.run(settings.discord_token, log_handler=None)


if __name__ == "__main__":
    main()
