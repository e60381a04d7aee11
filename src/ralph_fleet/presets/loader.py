"""Preset loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import BUILTIN_PRESETS, RespawnPreset


class PresetLoadError(RuntimeError):
    """Raised when one or more preset files cannot be parsed."""


class PresetLoader:
    """Loads respawn presets from YAML files on disk, on top of the built-ins."""

    def __init__(
        self,
        search_paths: Iterable[Path] | None = None,
        *,
        include_builtin: bool = True,
    ) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]
        self._include_builtin = include_builtin

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, RespawnPreset]:
        """Load presets from all configured search paths.

        Later search paths override earlier ones, and files override built-in
        presets, when preset ids collide. A file may hold one preset mapping or
        a list of them.
        """

        presets: dict[str, RespawnPreset] = {}
        if self._include_builtin:
            presets.update({preset.id: preset for preset in BUILTIN_PRESETS})

        errors: list[str] = []
        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                entries = document if isinstance(document, list) else [document]
                for entry in entries:
                    try:
                        preset = RespawnPreset.model_validate(entry)
                    except ValidationError as exc:
                        errors.append(f"Preset validation error in {path}: {exc}")
                        continue
                    presets[preset.id] = preset.model_copy(update={"built_in": False})

        if errors:
            raise PresetLoadError("; ".join(errors))

        return presets

    def get(self, preset_id: str) -> RespawnPreset:
        presets = self.load_all()
        try:
            return presets[preset_id]
        except KeyError as exc:
            raise PresetLoadError(f"Preset '{preset_id}' not found") from exc


def load_presets(search_paths: Iterable[Path] | None = None) -> dict[str, RespawnPreset]:
    """Convenience wrapper for loading presets from the provided paths."""

    return PresetLoader(search_paths).load_all()


__all__ = ["PresetLoadError", "PresetLoader", "RespawnPreset", "load_presets"]
