"""Conversation sink contract used by the session orchestrator."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Conversation(Protocol):
    """A chat thread or channel the orchestrator can post into."""

    @property
    def id(self) -> int: ...

    async def send(self, text: str) -> Any:
        """Post ``text`` and return an opaque message reference for later edits."""

    async def edit(self, message: Any, text: str) -> None:
        """Replace the content of a message previously returned by :meth:`send`."""

    async def typing(self) -> None:
        """Emit a single typing pulse."""


__all__ = ["Conversation"]
