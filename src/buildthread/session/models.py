"""Session aggregate and bootstrap progress types."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..sandbox import SandboxHandle


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    ERROR = "error"


class InvalidTransitionError(RuntimeError):
    """Raised when a status change would leave a terminal state."""


_TERMINAL = {SessionStatus.COMPLETED, SessionStatus.ERROR}


@dataclass(slots=True, frozen=True)
class Requester:
    """Chat identity that asked for a build."""

    id: str
    name: str

    @property
    def mention(self) -> str:
        return f"<@{self.id}>"


@dataclass(slots=True)
class BuildSession:
    """One build engagement bound to a thread, a sandbox, a branch and a pull request."""

    id: str
    thread_id: int
    requester_id: str
    requester_name: str
    sandbox: SandboxHandle
    branch: str
    pr_number: int
    pr_url: str
    repo_path: str
    description: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: SessionStatus = SessionStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    def mark(self, status: SessionStatus) -> None:
        if self.status in _TERMINAL or status is SessionStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Session {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def age(self, now: datetime | None = None) -> float:
        """Seconds elapsed since the session was created."""

        current = now or datetime.now(timezone.utc)
        return (current - self.created_at).total_seconds()


@dataclass(slots=True)
class ProgressStep:
    label: str
    status: StepStatus = StepStatus.PENDING


_last_issued_ms = 0


def new_session_id(now_ms: int | None = None) -> str:
    """Return ``build-<epoch ms>``, suffixed when the millisecond was already issued."""

    global _last_issued_ms
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    if stamp <= _last_issued_ms:
        return f"build-{stamp}-{uuid.uuid4().hex[:6]}"
    _last_issued_ms = stamp
    return f"build-{stamp}"


def branch_for(session_id: str) -> str:
    return f"build/{session_id}"


__all__ = [
    "BuildSession",
    "InvalidTransitionError",
    "ProgressStep",
    "Requester",
    "SessionStatus",
    "StepStatus",
    "branch_for",
    "new_session_id",
]
