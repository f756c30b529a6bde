"""Throttled relay of streamed agent output into one editable message."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from ..chat import Conversation
from .progress import fence

logger = logging.getLogger(__name__)


class OutputRelay:
    """Buffer output chunks and render the tail at most once per ``interval``.

    ``feed`` is a plain callback so it can be handed to a streaming backend.
    The first chunk is shown at once and creates the turn's output message;
    later flushes edit it.
    """

    def __init__(
        self,
        conversation: Conversation,
        *,
        interval: float = 0.5,
        tail_chars: int = 1800,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._conversation = conversation
        self._interval = interval
        self._tail_chars = tail_chars
        self._clock = clock
        self._buffer = ""
        self._received = 0
        self._shown = 0
        self._last_flush = float("-inf")
        self._message: Any = None
        self._pending: asyncio.Task[None] | None = None

    @property
    def text(self) -> str:
        return self._buffer

    @property
    def message(self) -> Any:
        return self._message

    def feed(self, chunk: str) -> None:
        if not chunk:
            return
        self._buffer = (self._buffer + chunk)[-self._tail_chars :]
        self._received += 1
        if self._pending is not None and not self._pending.done():
            return
        now = self._clock()
        if now - self._last_flush < self._interval:
            return
        self._last_flush = now
        self._pending = asyncio.get_running_loop().create_task(self._flush())

    async def close(self) -> None:
        """Wait for any in-flight flush, then show whatever is still unseen."""

        if self._pending is not None:
            await self._pending
            self._pending = None
        if self._received != self._shown:
            self._last_flush = self._clock()
            await self._flush()

    async def _flush(self) -> None:
        received = self._received
        text = fence(self._buffer)
        try:
            if self._message is None:
                self._message = await self._conversation.send(text)
            else:
                await self._conversation.edit(self._message, text)
        except Exception as exc:  # noqa: BLE001 - streamed output is best-effort
            logger.debug(
                "Output flush failed",
                extra={"conversation_id": self._conversation.id, "error": str(exc)},
            )
        self._shown = received


__all__ = ["OutputRelay"]
