"""Configuration management for buildthread."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated
from pathlib import Path
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

SANDBOX_BACKENDS = {"container", "local"}


class BuildSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    discord_token: str | None = Field(default=None, validation_alias="DISCORD_TOKEN")
    build_command_prefix: str = Field(default="!build", validation_alias="BUILD_COMMAND_PREFIX")
    status_command: str = Field(default="!builds", validation_alias="BUILD_STATUS_COMMAND")

    sandbox_backend: str = Field(default="container", validation_alias="SANDBOX_BACKEND")
    sandbox_url: str | None = Field(default=None, validation_alias="CLOUDFLARE_SANDBOX_URL")
    sandbox_token: str | None = Field(default=None, validation_alias="SANDBOX_AUTH_TOKEN")
    sandbox_request_timeout: float = Field(default=300.0, validation_alias="SANDBOX_REQUEST_TIMEOUT")
    local_sandbox_root: Path = Field(
        default=Path("./storage/sandboxes"), validation_alias="LOCAL_SANDBOX_ROOT"
    )

    repo_url: str = Field(
        default="https://github.com/gursheyss/boneralbot.git", validation_alias="BUILD_REPO_URL"
    )
    repo_owner: str = Field(default="gursheyss", validation_alias="BUILD_REPO_OWNER")
    repo_name: str = Field(default="boneralbot", validation_alias="BUILD_REPO_NAME")
    default_branch: str = Field(default="main", validation_alias="BUILD_DEFAULT_BRANCH")
    repo_path: str = Field(default="/workspace/repo", validation_alias="BUILD_REPO_PATH")
    protected_paths: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("sandbox",), validation_alias="BUILD_PROTECTED_PATHS"
    )
    git_author_email: str = Field(
        default="bot@boneralbot.com", validation_alias="BUILD_GIT_AUTHOR_EMAIL"
    )

    github_app_id: str | None = Field(default=None, validation_alias="GITHUB_APP_ID")
    github_app_private_key: str | None = Field(
        default=None, validation_alias="GITHUB_APP_PRIVATE_KEY"
    )
    github_app_installation_id: str | None = Field(
        default=None, validation_alias="GITHUB_APP_INSTALLATION_ID"
    )
    github_api_url: str = Field(default="https://api.github.com", validation_alias="GITHUB_API_URL")

    agent_profile: str = Field(default="opencode", validation_alias="BUILD_AGENT_PROFILE")
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="BUILD_PROFILE_PATHS"
    )
    agent_bin: str | None = Field(default=None, validation_alias="OPENCODE_BIN")
    agent_path_prefix: str | None = Field(default=None, validation_alias="OPENCODE_PATH_PREFIX")
    agent_run_flags: str | None = Field(default=None, validation_alias="OPENCODE_RUN_FLAGS")

    done_keyword: str = Field(default="done", validation_alias="BUILD_DONE_KEYWORD")
    max_session_age: float = Field(default=2 * 60 * 60, validation_alias="BUILD_MAX_SESSION_AGE")
    sweep_interval: float = Field(default=300.0, validation_alias="BUILD_SWEEP_INTERVAL")
    flush_interval: float = Field(default=0.5, validation_alias="BUILD_FLUSH_INTERVAL")
    output_tail_chars: int = Field(default=1800, validation_alias="BUILD_OUTPUT_TAIL_CHARS")
    rollback_on_bootstrap_failure: bool = Field(
        default=True, validation_alias="BUILD_ROLLBACK_ON_FAILURE"
    )

    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="BUILD_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "BUILD_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("sandbox_backend")
    @classmethod
    def _validate_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SANDBOX_BACKENDS:
            raise ValueError(f"SANDBOX_BACKEND must be one of {sorted(SANDBOX_BACKENDS)}")
        return normalized

    @field_validator("done_keyword")
    @classmethod
    def _normalize_done_keyword(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("BUILD_DONE_KEYWORD must not be empty")
        return normalized

    @field_validator("github_app_private_key")
    @classmethod
    def _expand_private_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.replace("\\n", "\n")

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError("BUILD_PROFILE_PATHS must be a list of paths or a path-separated string")

    @field_validator("protected_paths", mode="before")
    @classmethod
    def _parse_protected_paths(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(os.pathsep) if part.strip())
        raise TypeError("BUILD_PROTECTED_PATHS must be a list or a path-separated string")

    @field_validator("max_session_age", "flush_interval", "sweep_interval", "sandbox_request_timeout")
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("durations must be > 0 seconds")
        return value

    @field_validator("output_tail_chars")
    @classmethod
    def _validate_tail_chars(cls, value: int) -> int:
        if value < 1:
            raise ValueError("BUILD_OUTPUT_TAIL_CHARS must be >= 1")
        return value


@lru_cache(maxsize=1)
def get_settings() -> BuildSettings:
    """Return cached settings instance."""

    settings = BuildSettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.local_sandbox_root = settings.local_sandbox_root.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["BuildSettings", "SANDBOX_BACKENDS", "get_settings"]
