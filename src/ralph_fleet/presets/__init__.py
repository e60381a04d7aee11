"""Respawn preset models and loader exports."""

from .loader import PresetLoadError, PresetLoader, RespawnPreset, load_presets
from .models import BUILTIN_PRESETS

__all__ = [
    "BUILTIN_PRESETS",
    "PresetLoadError",
    "PresetLoader",
    "RespawnPreset",
    "load_presets",
]
