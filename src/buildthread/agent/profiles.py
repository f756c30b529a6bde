"""Coding-agent profiles loaded from YAML."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


class ProfileLoadError(RuntimeError):
    """Raised when one or more profile files cannot be parsed."""


class AgentProfile(BaseModel):
    """How to install, configure and invoke a coding agent inside a sandbox."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(..., description="Display name used in commit messages and notices.")
    binary: str = Field(default="opencode", description="Agent executable name or path.")
    run_flags: str = Field(
        default="--print-logs --log-level DEBUG --format json",
        description="Flags passed to the non-interactive run subcommand.",
    )
    path_prefix: str = Field(
        default="/root/.opencode/bin:/root/.local/bin",
        description="Directories prepended to PATH when locating the binary.",
    )
    install_command: str = Field(
        default="bun install",
        description="Command run in the repository to install project tooling.",
    )
    session_name: str = Field(default="opencode-session")
    config: dict[str, Any] = Field(
        default_factory=dict,
        description="Agent configuration document, written as JSON.",
    )
    config_paths: list[str] = Field(
        default_factory=lambda: [
            "/root/.opencode/config.json",
            "/root/.config/opencode/opencode.json",
        ],
        description="Absolute sandbox paths the configuration is written to.",
    )

    @field_validator("id", "binary", "session_name")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must not be empty")
        return normalized

    @field_validator("config_paths", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("config_paths must be a path or a sequence of paths")

    def with_overrides(
        self,
        *,
        binary: str | None = None,
        run_flags: str | None = None,
        path_prefix: str | None = None,
    ) -> "AgentProfile":
        updates = {
            key: value
            for key, value in {
                "binary": binary,
                "run_flags": run_flags,
                "path_prefix": path_prefix,
            }.items()
            if value
        }
        return self.model_copy(update=updates)


class ProfileLoader:
    """Loads agent profiles from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, AgentProfile]:
        """Load profiles from all configured search paths.

        Later search paths override earlier ones when profile ids collide.
        """

        profiles: dict[str, AgentProfile] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:  # pragma: no cover - library type
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    profile = AgentProfile.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Profile validation error in {path}: {exc}")
                    continue

                profiles[profile.id] = profile

        if errors:
            raise ProfileLoadError("; ".join(errors))

        return profiles

    def get(self, profile_id: str) -> AgentProfile:
        profiles = self.load_all()
        try:
            return profiles[profile_id]
        except KeyError as exc:
            raise ProfileLoadError(f"Profile '{profile_id}' not found in search paths") from exc


__all__ = ["AgentProfile", "ProfileLoadError", "ProfileLoader"]
