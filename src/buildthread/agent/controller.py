"""Install, configure and drive the coding agent inside a sandbox."""

from __future__ import annotations

import json
import logging
import posixpath

from ..sandbox import ChunkCallback, ExecutionBackend, SandboxError, SandboxHandle
from .profiles import AgentProfile

logger = logging.getLogger(__name__)


class AgentError(RuntimeError):
    """Raised when the agent cannot be installed or configured."""


def escape_prompt(prompt: str) -> str:
    """Escape ``prompt`` for embedding inside a double-quoted shell argument."""

    escaped = prompt.replace("\\", "\\\\")
    for char in ('"', "$", "`"):
        escaped = escaped.replace(char, "\\" + char)
    return escaped.replace("\n", "\\n")


def build_run_command(profile: AgentProfile, prompt: str) -> str:
    """Render the shell command that sends one instruction to the agent."""

    return (
        f'PATH="{profile.path_prefix}:$PATH" {profile.binary} run {profile.run_flags} '
        f'--session {profile.session_name} "{escape_prompt(prompt)}"'
    )


class AgentController:
    """Coding-agent lifecycle bound to one repository path."""

    def __init__(self, backend: ExecutionBackend, profile: AgentProfile, repo_path: str) -> None:
        self._backend = backend
        self._profile = profile
        self._repo_path = repo_path

    @property
    def profile(self) -> AgentProfile:
        return self._profile

    @property
    def title(self) -> str:
        return self._profile.title

    async def install(self, handle: SandboxHandle) -> None:
        # the agent binary ships with the sandbox image; only project tooling is installed
        result = await self._backend.exec(handle, self._profile.install_command, self._repo_path)
        if not result.ok:
            raise AgentError(
                f"`{self._profile.install_command}` exited with code {result.exit_code}: "
                f"{result.output.strip()[-500:]}"
            )

    async def configure(self, handle: SandboxHandle) -> None:
        content = json.dumps(self._profile.config, indent=2)
        for path in self._profile.config_paths:
            try:
                await self._backend.make_dir(handle, posixpath.dirname(path))
                await self._backend.write_file(handle, path, content)
            except SandboxError as exc:
                raise AgentError(f"Unable to write agent configuration to {path}: {exc}") from exc
        logger.debug(
            "Wrote agent configuration",
            extra={"sandbox_id": handle.id, "paths": list(self._profile.config_paths)},
        )

    async def create_session(self, handle: SandboxHandle) -> None:
        await self._backend.create_session(handle, self._profile.session_name, self._repo_path)

    async def send_prompt(self, handle: SandboxHandle, prompt: str, on_chunk: ChunkCallback) -> int:
        """Run one instruction, streaming output to ``on_chunk``; returns the exit code."""

        profile = self._profile
        command = build_run_command(profile, prompt)
        on_chunk(f"[{profile.id}] PATH prefix: {profile.path_prefix}\n")
        on_chunk(f"[{profile.id}] command: {command}\n")

        try:
            which = await self._backend.exec(
                handle, f'PATH="{profile.path_prefix}:$PATH" which {profile.binary}', self._repo_path
            )
            located = which.output.strip() or "(not found)"
            on_chunk(f"[{profile.id}] which {profile.binary}: {located}\n")
        except SandboxError as exc:
            on_chunk(f"[{profile.id}] which lookup failed: {exc}\n")

        exit_code = await self._backend.exec_streaming(
            handle, profile.session_name, command, on_chunk, cwd=self._repo_path
        )
        on_chunk(f"[{profile.id}] exit code: {exit_code}\n")
        return exit_code

    async def cleanup(self, handle: SandboxHandle) -> None:
        try:
            await self._backend.delete_session(handle, self._profile.session_name)
        except SandboxError as exc:
            logger.debug(
                "Agent session already gone",
                extra={"sandbox_id": handle.id, "error": str(exc)},
            )


__all__ = ["AgentController", "AgentError", "build_run_command", "escape_prompt"]
