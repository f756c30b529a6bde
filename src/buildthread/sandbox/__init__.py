"""Remote execution backends for build sessions."""

from __future__ import annotations

from ..config import BuildSettings
from .base import (
    ChunkCallback,
    ExecResult,
    ExecutionBackend,
    SandboxError,
    SandboxHandle,
    SandboxRequestError,
    SandboxStreamError,
    SandboxUnavailableError,
)
from .container import ContainerSandboxBackend
from .local import LocalSandboxBackend


def create_backend(settings: BuildSettings) -> ExecutionBackend:
    """Instantiate the backend selected by ``SANDBOX_BACKEND``."""

    if settings.sandbox_backend == "local":
        return LocalSandboxBackend(settings.local_sandbox_root)
    return ContainerSandboxBackend(
        settings.sandbox_url or "",
        settings.sandbox_token or "",
        timeout=settings.sandbox_request_timeout,
    )


__all__ = [
    "ChunkCallback",
    "ContainerSandboxBackend",
    "ExecResult",
    "ExecutionBackend",
    "LocalSandboxBackend",
    "SandboxError",
    "SandboxHandle",
    "SandboxRequestError",
    "SandboxStreamError",
    "SandboxUnavailableError",
    "create_backend",
]
