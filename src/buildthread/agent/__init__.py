"""Coding-agent orchestration utilities."""

from .controller import AgentController, AgentError, build_run_command, escape_prompt
from .profiles import AgentProfile, ProfileLoadError, ProfileLoader

__all__ = [
    "AgentController",
    "AgentError",
    "AgentProfile",
    "ProfileLoadError",
    "ProfileLoader",
    "build_run_command",
    "escape_prompt",
]
