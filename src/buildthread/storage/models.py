"""Data models for the session journal."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

SESSION_STARTED = "session_started"
SESSION_ENDED = "session_ended"
SESSION_REAPED = "session_reaped"

SESSION_EVENTS = (SESSION_STARTED, SESSION_ENDED, SESSION_REAPED)


@dataclass(slots=True)
class SessionRecord:
    session_id: str
    event_type: str
    thread_id: int
    sandbox_id: str
    backend: str
    branch: str
    pr_number: int
    pr_url: str
    status: str
    recorded_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "SESSION_ENDED",
    "SESSION_EVENTS",
    "SESSION_REAPED",
    "SESSION_STARTED",
    "SessionRecord",
]
