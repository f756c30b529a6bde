"""Bootstrap progress rendering."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Sequence

from ..chat import Conversation
from .models import ProgressStep, StepStatus

logger = logging.getLogger(__name__)

STEP_ICONS = {
    StepStatus.DONE: "✓",
    StepStatus.ACTIVE: "►",
    StepStatus.ERROR: "✗",
    StepStatus.PENDING: "○",
}


def render_progress(steps: Sequence[ProgressStep], description: str) -> str:
    lines = [f"**Building:** {description}\n"]
    for step in steps:
        style = "**" if step.status is StepStatus.ACTIVE else ""
        lines.append(f"{STEP_ICONS[step.status]} {style}{step.label}{style}")
    return "\n".join(lines)


def render_ready(pr_url: str, done_keyword: str, agent_title: str = "OpenCode") -> str:
    return (
        "✓ **Ready!**\n\n"
        f"**PR:** {pr_url}\n\n"
        f"Send messages to instruct {agent_title}.\n"
        f"Say `{done_keyword}` when finished."
    )


def fence(text: str) -> str:
    return f"```\n{text}\n```"


def bootstrap_steps(branch: str, agent_title: str = "OpenCode") -> list[ProgressStep]:
    """Ordered bootstrap steps, first one already active."""

    labels = [
        "Creating sandbox",
        "Cloning repository",
        f"Creating branch `{branch}`",
        "Pushing branch",
        "Creating draft PR",
        "Installing dependencies",
        f"Configuring {agent_title}",
    ]
    steps = [ProgressStep(label) for label in labels]
    steps[0].status = StepStatus.ACTIVE
    return steps


class ProgressTracker:
    """Owns the step list and the single message it is rendered into.

    Edits are best-effort: a deleted or uneditable message never aborts the
    bootstrap.
    """

    def __init__(self, conversation: Conversation, steps: list[ProgressStep], description: str) -> None:
        self._conversation = conversation
        self._steps = steps
        self._description = description
        self._message: Any = None
        self._index = -1

    @property
    def steps(self) -> list[ProgressStep]:
        return self._steps

    @property
    def active_index(self) -> int | None:
        for index, step in enumerate(self._steps):
            if step.status is StepStatus.ACTIVE:
                return index
        return None

    def render(self) -> str:
        return render_progress(self._steps, self._description)

    async def post(self) -> None:
        self._message = await self._conversation.send(self.render())

    async def advance(self) -> ProgressStep:
        """Mark the next step active, completing the current one first."""

        if self._index >= 0 and self._steps[self._index].status is StepStatus.ACTIVE:
            self._steps[self._index].status = StepStatus.DONE
        self._index += 1
        if self._index >= len(self._steps):
            raise IndexError("no bootstrap steps left")
        step = self._steps[self._index]
        if step.status is not StepStatus.PENDING and not (
            self._index == 0 and step.status is StepStatus.ACTIVE
        ):
            raise RuntimeError(f"step {step.label!r} already {step.status.value}")
        step.status = StepStatus.ACTIVE
        await self.refresh()
        return step

    @asynccontextmanager
    async def step(self) -> AsyncIterator[ProgressStep]:
        """Run the body as the next step; the step is completed only if the body succeeds."""

        current = await self.advance()
        yield current
        await self.complete()

    async def complete(self) -> None:
        index = self.active_index
        if index is not None:
            self._steps[index].status = StepStatus.DONE
            await self.refresh()

    async def fail_active(self) -> ProgressStep | None:
        index = self.active_index
        if index is None:
            return None
        step = self._steps[index]
        step.status = StepStatus.ERROR
        await self.refresh()
        return step

    async def replace(self, text: str) -> None:
        await self._edit(text)

    async def refresh(self) -> None:
        await self._edit(self.render())

    async def _edit(self, text: str) -> None:
        if self._message is None:
            return
        try:
            await self._conversation.edit(self._message, text)
        except Exception as exc:  # noqa: BLE001 - progress edits are cosmetic
            logger.debug(
                "Progress edit failed",
                extra={"conversation_id": self._conversation.id, "error": str(exc)},
            )


__all__ = [
    "ProgressTracker",
    "STEP_ICONS",
    "bootstrap_steps",
    "fence",
    "render_progress",
    "render_ready",
]
