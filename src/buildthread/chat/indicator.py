"""Periodic typing indicator."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from .base import Conversation

logger = logging.getLogger(__name__)


class TypingIndicator:
    """Pulse the typing indicator until stopped or ``timeout`` elapses.

    Discord clears the indicator roughly ten seconds after each pulse, so the
    default interval keeps it visible while an agent turn runs.
    """

    def __init__(self, conversation: Conversation, interval: float = 8.0, timeout: float = 60.0) -> None:
        self._conversation = conversation
        self._interval = interval
        self._timeout = timeout
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._pulse())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _pulse(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        while True:
            try:
                await self._conversation.typing()
            except Exception as exc:  # noqa: BLE001 - indicator is cosmetic
                logger.debug(
                    "Typing pulse failed",
                    extra={"conversation_id": self._conversation.id, "error": str(exc)},
                )
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(self._interval, remaining))
            if loop.time() >= deadline:
                return

    async def __aenter__(self) -> "TypingIndicator":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()


__all__ = ["TypingIndicator"]
