"""Git operations executed inside a session sandbox."""

from __future__ import annotations

import logging
import posixpath
import shlex
from typing import Awaitable, Callable, Iterable
from urllib.parse import urlsplit, urlunsplit

from ..sandbox import ExecResult, ExecutionBackend, SandboxHandle

logger = logging.getLogger(__name__)

GIT_USER = "x-access-token"

TokenProvider = Callable[[], Awaitable[str]]


class GitCommandError(RuntimeError):
    """Raised when a git command exits non-zero inside the sandbox."""

    def __init__(self, command: str, exit_code: int, output: str) -> None:
        super().__init__(f"`{command}` failed with exit code {exit_code}: {output.strip()}")
        self.command = command
        self.exit_code = exit_code
        self.output = output


def public_url(repo_url: str) -> str:
    """The https form of ``repo_url`` without any credentials."""

    if repo_url.startswith("git@github.com:"):
        repo_url = "https://github.com/" + repo_url[len("git@github.com:") :]
    parts = urlsplit(repo_url)
    netloc = parts.hostname or ""
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def authenticated_url(repo_url: str, token: str) -> str:
    """Embed installation credentials into an https remote URL."""

    parts = urlsplit(public_url(repo_url))
    netloc = f"{GIT_USER}:{token}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class GitWorkspace:
    """Clone, branch, commit and push the session repository."""

    def __init__(
        self,
        backend: ExecutionBackend,
        *,
        repo_url: str,
        default_branch: str,
        repo_path: str,
        token_provider: TokenProvider,
        author_email: str,
    ) -> None:
        self._backend = backend
        self._repo_url = repo_url
        self._default_branch = default_branch
        self._repo_path = repo_path
        self._token_provider = token_provider
        self._author_email = author_email

    @property
    def repo_path(self) -> str:
        return self._repo_path

    async def _run(
        self,
        handle: SandboxHandle,
        command: str,
        *,
        cwd: str | None = None,
        check: bool = True,
        secrets: Iterable[str] = (),
    ) -> ExecResult:
        result = await self._backend.exec(handle, command, cwd or self._repo_path)
        if check and not result.ok:
            shown_command, shown_output = command, result.output
            for secret in secrets:
                shown_command = shown_command.replace(secret, "***")
                shown_output = shown_output.replace(secret, "***")
            raise GitCommandError(shown_command, result.exit_code, shown_output)
        return result

    async def clone(self, handle: SandboxHandle) -> None:
        token = await self._token_provider()
        parent, target = posixpath.split(self._repo_path.rstrip("/"))
        await self._backend.make_dir(handle, parent or "/")
        command = " ".join(
            [
                "git clone --single-branch",
                f"--branch {shlex.quote(self._default_branch)}",
                shlex.quote(authenticated_url(self._repo_url, token)),
                shlex.quote(target),
            ]
        )
        await self._run(handle, command, cwd=parent or "/", secrets=[token])
        await self._reset_remote(handle)
        logger.info("Cloned repository", extra={"sandbox_id": handle.id, "path": self._repo_path})

    async def protect(self, handle: SandboxHandle, paths: Iterable[str]) -> None:
        """Make ``paths`` read-only for the agent and hide them from commits."""

        for path in paths:
            quoted = shlex.quote(path)
            await self._run(handle, f"chmod -R a-w {quoted} || true", check=False)
            await self._run(handle, f"git update-index --skip-worktree {quoted} || true", check=False)

    async def create_branch(self, handle: SandboxHandle, name: str) -> None:
        await self._run(handle, f"git checkout -b {shlex.quote(name)}")

    async def push(self, handle: SandboxHandle) -> None:
        token = await self._token_provider()
        remote = authenticated_url(self._repo_url, token)
        await self._run(
            handle, f"git remote set-url origin {shlex.quote(remote)}", secrets=[token]
        )
        try:
            await self._run(handle, "git push -u origin HEAD", secrets=[token])
        finally:
            await self._reset_remote(handle)

    async def _reset_remote(self, handle: SandboxHandle) -> None:
        # origin holds credentials only for the duration of a clone or push
        await self._run(handle, f"git remote set-url origin {shlex.quote(public_url(self._repo_url))}")

    async def commit_all(
        self,
        handle: SandboxHandle,
        message: str,
        author_name: str,
        *,
        allow_empty: bool = False,
    ) -> str | None:
        """Stage and commit every change, then push.

        Returns the new commit sha, or ``None`` when there was nothing to
        commit.
        """

        await self._run(handle, f"git config user.name {shlex.quote(author_name)}")
        await self._run(handle, f"git config user.email {shlex.quote(self._author_email)}")

        status = await self._run(handle, "git status --porcelain")
        has_changes = bool(status.output.strip())
        if not has_changes and not allow_empty:
            return None

        if has_changes:
            await self._run(handle, "git add -A")
        flags = "--allow-empty " if allow_empty else ""
        await self._run(handle, f"git commit {flags}-m {shlex.quote(message)}")
        sha = (await self._run(handle, "git rev-parse HEAD")).output.strip()

        await self.push(handle)
        logger.info("Committed and pushed", extra={"sandbox_id": handle.id, "sha": sha})
        return sha


__all__ = ["GitCommandError", "GitWorkspace", "authenticated_url", "public_url"]
