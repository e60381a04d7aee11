from pathlib import Path
import textwrap

import pytest

from ralph_fleet.presets import BUILTIN_PRESETS, PresetLoadError, PresetLoader, load_presets


def write_preset(path: Path, *, name: str, idle_timeout_ms: int = 4000) -> None:
    path.write_text(
        textwrap.dedent(
            """
            id: nightly
            name: {name}
            description: Overnight run with a custom update prompt
            duration_minutes: 240
            config:
              idle_timeout_ms: {idle}
              update_prompt: summarize progress in NOTES.md
              kickstart_prompt: keep going
            """
        ).strip().format(name=name, idle=idle_timeout_ms),
        encoding="utf-8",
    )


def test_builtin_presets_always_available(tmp_path: Path) -> None:
    presets = PresetLoader([tmp_path]).load_all()

    assert {"solo-work", "team-lead", "overnight-autonomous"} <= set(presets)
    assert all(preset.built_in for preset in BUILTIN_PRESETS)
    assert presets["overnight-autonomous"].config.adaptive_timing_enabled is True


def test_loader_merges_paths(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    override = tmp_path / "override"
    override.mkdir()

    write_preset(base / "nightly.yaml", name="Base")
    write_preset(override / "nightly.yml", name="Override", idle_timeout_ms=9000)

    presets = PresetLoader([base, override]).load_all()

    assert presets["nightly"].name == "Override"
    assert presets["nightly"].config.idle_timeout_ms == 9000
    assert presets["nightly"].config.kickstart_prompt == "keep going"
    assert presets["nightly"].built_in is False


def test_file_overrides_builtin_and_lists_are_accepted(tmp_path: Path) -> None:
    (tmp_path / "many.yaml").write_text(
        textwrap.dedent(
            """
            - id: solo-work
              name: Solo (tuned)
              config:
                idle_timeout_ms: 2500
            - id: bare
              name: Bare
            """
        ).strip(),
        encoding="utf-8",
    )

    presets = load_presets([tmp_path])

    assert presets["solo-work"].name == "Solo (tuned)"
    assert presets["solo-work"].built_in is False
    assert presets["bare"].config.idle_timeout_ms == 5000


def test_missing_paths_are_ignored(tmp_path: Path) -> None:
    loader = PresetLoader([tmp_path / "absent"], include_builtin=False)
    assert loader.search_paths == []
    assert loader.load_all() == {}


def test_loader_reports_validation_error(tmp_path: Path) -> None:
    invalid = tmp_path / "invalid"
    invalid.mkdir()
    (invalid / "broken.yaml").write_text("id: x\nname: X\nconfig:\n  idle_timeout_ms: -1\n", encoding="utf-8")
    (invalid / "typo.yaml").write_text("id: y\nname: Y\nconfig:\n  idle_timout_ms: 10\n", encoding="utf-8")

    with pytest.raises(PresetLoadError) as excinfo:
        PresetLoader([invalid]).load_all()

    assert "broken.yaml" in str(excinfo.value)
    assert "typo.yaml" in str(excinfo.value)


def test_loader_reports_yaml_error(tmp_path: Path) -> None:
    (tmp_path / "bad.yaml").write_text("id: [unclosed", encoding="utf-8")

    with pytest.raises(PresetLoadError):
        PresetLoader([tmp_path]).load_all()


def test_get_unknown_preset(tmp_path: Path) -> None:
    with pytest.raises(PresetLoadError):
        PresetLoader([tmp_path]).get("does-not-exist")
