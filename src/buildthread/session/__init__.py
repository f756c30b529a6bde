"""Build session orchestration."""

from .manager import BuildSessionManager
from .models import (
    BuildSession,
    InvalidTransitionError,
    ProgressStep,
    Requester,
    SessionStatus,
    StepStatus,
    branch_for,
    new_session_id,
)
from .progress import ProgressTracker, bootstrap_steps, fence, render_progress, render_ready
from .relay import OutputRelay
from .store import DuplicateSessionError, SessionStore

__all__ = [
    "BuildSession",
    "BuildSessionManager",
    "DuplicateSessionError",
    "InvalidTransitionError",
    "OutputRelay",
    "ProgressStep",
    "ProgressTracker",
    "Requester",
    "SessionStatus",
    "SessionStore",
    "StepStatus",
    "bootstrap_steps",
    "branch_for",
    "fence",
    "new_session_id",
    "render_progress",
    "render_ready",
]
