"""Abstract remote execution capability shared by all sandbox backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

ChunkCallback = Callable[[str], None]

DEFAULT_CWD = "/workspace"


class SandboxError(RuntimeError):
    """Base class for sandbox backend errors."""


class SandboxUnavailableError(SandboxError):
    """Raised when a backend cannot be constructed from the current settings."""


class SandboxRequestError(SandboxError):
    """Raised when the sandbox service rejects a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SandboxStreamError(SandboxError):
    """Raised when a streamed command cannot be started or reports an error."""


@dataclass(slots=True, frozen=True)
class SandboxHandle:
    """Opaque ownership token for one provisioned execution environment."""

    id: str
    backend: str
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(slots=True)
class ExecResult:
    """Outcome of a synchronous command execution."""

    output: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ExecutionBackend(ABC):
    """Contract the build-session orchestrator requires from a sandbox provider.

    Implementations own the transport to the execution environment. They must
    not keep session bookkeeping of their own; the caller owns the handle and
    decides when it is released.
    """

    name: str = "abstract"

    @abstractmethod
    async def provision(self, session_id: str, owner_id: str) -> SandboxHandle:
        """Create or reserve an execution environment for one session."""

    @abstractmethod
    async def exec(self, handle: SandboxHandle, command: str, cwd: str | None = None) -> ExecResult:
        """Run ``command`` to completion and return its combined output."""

    @abstractmethod
    async def exec_streaming(
        self,
        handle: SandboxHandle,
        session_name: str,
        command: str,
        on_chunk: ChunkCallback,
        cwd: str | None = None,
    ) -> int:
        """Run a long-lived command, delivering output chunks as they arrive.

        Resolves with the command's exit code once it terminates.
        """

    @abstractmethod
    async def make_dir(self, handle: SandboxHandle, path: str) -> None:
        """Create ``path`` (and parents) inside the sandbox."""

    @abstractmethod
    async def write_file(self, handle: SandboxHandle, path: str, content: str) -> None:
        """Write ``content`` to ``path`` inside the sandbox."""

    @abstractmethod
    async def create_session(self, handle: SandboxHandle, name: str, cwd: str) -> None:
        """Open a named shell session used by streamed agent commands."""

    @abstractmethod
    async def delete_session(self, handle: SandboxHandle, name: str) -> None:
        """Close a named shell session."""

    @abstractmethod
    async def destroy(self, handle: SandboxHandle) -> None:
        """Tear the environment down. Calling this twice must not raise."""

    async def aclose(self) -> None:
        """Release transport resources held by the backend."""


__all__ = [
    "ChunkCallback",
    "DEFAULT_CWD",
    "ExecResult",
    "ExecutionBackend",
    "SandboxError",
    "SandboxHandle",
    "SandboxRequestError",
    "SandboxStreamError",
    "SandboxUnavailableError",
]
