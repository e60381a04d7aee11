from __future__ import annotations

from pathlib import Path
import os

import pytest
from pydantic import ValidationError

from ralph_fleet.config import FleetSettings, get_settings
from ralph_fleet.errors import CapacityError, FleetError, StuckStateError, error_payload


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RALPH_FLEET_MAX_SESSIONS", "3")
    monkeypatch.setenv("RALPH_FLEET_AGENT_ARGS", "--dangerously-skip-permissions --verbose")
    monkeypatch.setenv("RALPH_FLEET_WORKDIRS", os.pathsep.join(["/repo/a", "/repo/b"]))
    monkeypatch.setenv("RALPH_FLEET_LOG_LEVEL", "debug")
    monkeypatch.setenv("RALPH_FLEET_NICE", "99")

    settings = FleetSettings()

    assert settings.max_concurrent_sessions == 3
    assert settings.agent_args == ("--dangerously-skip-permissions", "--verbose")
    assert settings.workdirs == (Path("/repo/a"), Path("/repo/b"))
    assert settings.log_level == "DEBUG"
    assert settings.nice_value == 19


def test_settings_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("RALPH_FLEET_"):
            monkeypatch.delenv(name)

    settings = FleetSettings()

    assert settings.max_concurrent_sessions == 5
    assert settings.poll_interval_ms == 1000
    assert settings.preset_paths == (Path("presets"),)
    assert settings.workdirs == ()
    assert settings.agent_path is None


def test_invalid_settings_rejected(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RALPH_FLEET_MAX_SESSIONS", "0")
    with pytest.raises(ValidationError):
        FleetSettings()

    monkeypatch.setenv("RALPH_FLEET_MAX_SESSIONS", "2")
    monkeypatch.setenv("RALPH_FLEET_LOG_LEVEL", "chatty")
    with pytest.raises(ValidationError):
        FleetSettings()


def test_get_settings_resolves_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RALPH_FLEET_STATE_PATH", "state")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.state_path == (tmp_path / "state").resolve()
        assert settings.preset_paths == ((tmp_path / "presets").resolve(),)
    finally:
        get_settings.cache_clear()


def test_error_payload_codes() -> None:
    assert error_payload(CapacityError("full")) == {"code": "capacity_exceeded", "detail": "full"}
    assert error_payload(StuckStateError("blocked"))["code"] == "stuck_state"
    assert error_payload(KeyError()) == {"code": FleetError.code, "detail": "KeyError"}
