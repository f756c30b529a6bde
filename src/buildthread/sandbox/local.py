"""Host-local sandbox backend for development and tests."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Mapping

from .base import (
    DEFAULT_CWD,
    ChunkCallback,
    ExecResult,
    ExecutionBackend,
    SandboxHandle,
    SandboxError,
)

logger = logging.getLogger(__name__)

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "GIT_DIR",
    "GIT_WORK_TREE",
}

READ_SIZE = 4096


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


class LocalSandboxBackend(ExecutionBackend):
    """Run sandbox commands as subprocesses inside a per-sandbox directory.

    Absolute sandbox paths such as ``/workspace/repo`` are mapped under
    ``<root>/<sandbox id>/``, and ``HOME`` points at ``<sandbox>/root`` so
    agent configuration written to ``/root/...`` is picked up by the agent.
    """

    name = "local"

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._sessions: dict[str, set[str]] = {}

    def sandbox_dir(self, handle: SandboxHandle) -> Path:
        return self._root / handle.id

    def resolve(self, handle: SandboxHandle, path: str) -> Path:
        base = self.sandbox_dir(handle)
        resolved = (base / path.lstrip("/")).resolve()
        if resolved != base.resolve() and base.resolve() not in resolved.parents:
            raise SandboxError(f"Path {path!r} escapes the sandbox")
        return resolved

    def _environment(self, handle: SandboxHandle) -> dict[str, str]:
        return sanitize_environment({"HOME": str(self.resolve(handle, "/root"))})

    def _require(self, handle: SandboxHandle) -> None:
        if not self.sandbox_dir(handle).is_dir():
            raise SandboxError(f"Sandbox {handle.id} is not provisioned")

    async def provision(self, session_id: str, owner_id: str) -> SandboxHandle:
        handle = SandboxHandle(id=f"build-{session_id}-{owner_id}", backend=self.name)
        base = self.sandbox_dir(handle)
        await asyncio.to_thread(self._create_layout, base)
        logger.debug("Provisioned local sandbox", extra={"sandbox_id": handle.id, "path": str(base)})
        return handle

    @staticmethod
    def _create_layout(base: Path) -> None:
        for relative in ("workspace", "root"):
            (base / relative).mkdir(parents=True, exist_ok=True)

    async def _spawn(self, handle: SandboxHandle, command: str, cwd: str | None) -> asyncio.subprocess.Process:
        self._require(handle)
        workdir = self.resolve(handle, cwd or DEFAULT_CWD)
        if not workdir.is_dir():
            raise SandboxError(f"Working directory {cwd or DEFAULT_CWD} does not exist in {handle.id}")
        return await asyncio.create_subprocess_shell(
            command,
            cwd=str(workdir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=self._environment(handle),
        )

    async def exec(self, handle: SandboxHandle, command: str, cwd: str | None = None) -> ExecResult:
        process = await self._spawn(handle, command, cwd)
        stdout_bytes, _ = await process.communicate()
        output = stdout_bytes.decode("utf-8", errors="replace")
        return ExecResult(output=output, exit_code=process.returncode)

    async def exec_streaming(
        self,
        handle: SandboxHandle,
        session_name: str,
        command: str,
        on_chunk: ChunkCallback,
        cwd: str | None = None,
    ) -> int:
        process = await self._spawn(handle, command, cwd)
        assert process.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await process.stdout.read(READ_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                on_chunk(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            on_chunk(tail)
        return await process.wait()

    async def make_dir(self, handle: SandboxHandle, path: str) -> None:
        self._require(handle)
        self.resolve(handle, path).mkdir(parents=True, exist_ok=True)

    async def write_file(self, handle: SandboxHandle, path: str, content: str) -> None:
        self._require(handle)
        target = self.resolve(handle, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")

    async def create_session(self, handle: SandboxHandle, name: str, cwd: str) -> None:
        self._require(handle)
        self._sessions.setdefault(handle.id, set()).add(name)

    async def delete_session(self, handle: SandboxHandle, name: str) -> None:
        self._sessions.get(handle.id, set()).discard(name)

    def sessions(self, handle: SandboxHandle) -> set[str]:
        return set(self._sessions.get(handle.id, set()))

    async def destroy(self, handle: SandboxHandle) -> None:
        self._sessions.pop(handle.id, None)
        base = self.sandbox_dir(handle)
        if not base.exists():
            return
        await asyncio.to_thread(_remove_tree, base)
        logger.debug("Destroyed local sandbox", extra={"sandbox_id": handle.id})


def _remove_tree(base: Path) -> None:
    # protected paths are chmod a-w inside the sandbox; restore write bits first
    for dirpath, dirnames, _ in os.walk(base):
        for name in dirnames:
            target = os.path.join(dirpath, name)
            if not os.path.islink(target):
                os.chmod(target, os.stat(target).st_mode | stat.S_IWUSR | stat.S_IXUSR)
    os.chmod(base, os.stat(base).st_mode | stat.S_IWUSR)
    shutil.rmtree(base, ignore_errors=True)


__all__ = ["LocalSandboxBackend", "sanitize_environment"]
