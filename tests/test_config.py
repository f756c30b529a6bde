from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from buildthread.config import BuildSettings, get_settings


def test_defaults_match_build_policy() -> None:
    settings = BuildSettings(_env_file=None)

    assert settings.done_keyword == "done"
    assert settings.max_session_age == 7200
    assert settings.flush_interval == 0.5
    assert settings.output_tail_chars == 1800
    assert settings.protected_paths == ("sandbox",)
    assert settings.sandbox_backend == "container"
    assert settings.rollback_on_bootstrap_failure is True


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BUILD_DONE_KEYWORD", "  Ship ")
    monkeypatch.setenv("BUILD_LOG_LEVEL", "debug")
    monkeypatch.setenv("SANDBOX_BACKEND", "LOCAL")
    monkeypatch.setenv("BUILD_PROTECTED_PATHS", "sandbox:infra")
    monkeypatch.setenv("BUILD_PROFILE_PATHS", "profiles:extra")

    settings = BuildSettings(_env_file=None)

    assert settings.done_keyword == "ship"
    assert settings.log_level == "DEBUG"
    assert settings.sandbox_backend == "local"
    assert settings.protected_paths == ("sandbox", "infra")
    assert settings.profile_paths == (Path("profiles"), Path("extra"))


def test_private_key_newlines_are_expanded() -> None:
    settings = BuildSettings(_env_file=None, github_app_private_key="line1\\nline2")

    assert settings.github_app_private_key == "line1\nline2"


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_session_age": 0},
        {"flush_interval": -1},
        {"output_tail_chars": 0},
        {"sandbox_backend": "daytona"},
        {"log_level": "chatty"},
        {"done_keyword": "   "},
    ],
)
def test_invalid_values_are_rejected(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        BuildSettings(_env_file=None, **overrides)


def test_get_settings_resolves_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CHROMA_PERSIST_PATH", str(tmp_path / "chroma"))
    monkeypatch.setenv("LOCAL_SANDBOX_ROOT", str(tmp_path / "sandboxes"))
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.chroma_persist_path == (tmp_path / "chroma").resolve()
        assert settings.local_sandbox_root.is_absolute()
        assert all(path.is_absolute() for path in settings.profile_paths)
    finally:
        get_settings.cache_clear()
