from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping

SETTINGS_FILENAME = ".folio-settings.json"
_HEX_COLOR_CHARS = set("0123456789abcdefABCDEF")


def _is_color(value: object) -> bool:
    return (
        isinstance(value, str)
        and value.startswith("#")
        and len(value) in (4, 7)
        and all(ch in _HEX_COLOR_CHARS for ch in value[1:])
    )


@dataclass
class ReaderSettings:
    speech_rate: float = 1.0
    speech_language: str = "en-US"
    speech_voice: str | None = None
    font_size: int = 16
    background_color: str = "#ffffff"
    text_color: str = "#000000"
    auto_bookmark: bool = True

    def as_payload(self) -> dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_payload(cls, payload: object) -> "ReaderSettings":
        """Build settings from a mapping, keeping defaults for bad values."""
        settings = cls()
        if not isinstance(payload, Mapping):
            return settings
        settings.update(payload)
        return settings

    def update(self, payload: Mapping[str, object]) -> list[str]:
        """Apply the valid entries of ``payload``; returns the names that changed."""
        changed: list[str] = []
        rate = payload.get("speech_rate")
        if isinstance(rate, (int, float)) and not isinstance(rate, bool) and 0 < rate <= 4:
            self.speech_rate = float(rate)
            changed.append("speech_rate")
        language = payload.get("speech_language")
        if isinstance(language, str) and language.strip():
            self.speech_language = language.strip()
            changed.append("speech_language")
        if "speech_voice" in payload:
            voice = payload.get("speech_voice")
            if isinstance(voice, str):
                self.speech_voice = voice.strip() or None
                changed.append("speech_voice")
            elif voice is None:
                self.speech_voice = None
                changed.append("speech_voice")
        font_size = payload.get("font_size")
        if isinstance(font_size, (int, float)) and not isinstance(font_size, bool) and 8 <= font_size <= 72:
            self.font_size = int(font_size)
            changed.append("font_size")
        for name in ("background_color", "text_color"):
            value = payload.get(name)
            if _is_color(value):
                setattr(self, name, value)
                changed.append(name)
        auto_bookmark = payload.get("auto_bookmark")
        if isinstance(auto_bookmark, bool):
            self.auto_bookmark = auto_bookmark
            changed.append("auto_bookmark")
        return changed


def settings_path(root: Path) -> Path:
    return root / SETTINGS_FILENAME


def _apply_env_overrides(settings: ReaderSettings, env: Mapping[str, str]) -> None:
    font_size = env.get("FOLIO_FONT_SIZE")
    if font_size:
        try:
            settings.update({"font_size": int(font_size)})
        except ValueError:
            pass
    speech_rate = env.get("FOLIO_SPEECH_RATE")
    if speech_rate:
        try:
            settings.update({"speech_rate": float(speech_rate)})
        except ValueError:
            pass


def load_settings(root: Path, *, env: Mapping[str, str] | None = None) -> ReaderSettings:
    path = settings_path(root)
    payload: object = None
    if path.exists():
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            payload = None
    settings = ReaderSettings.from_payload(payload)
    _apply_env_overrides(settings, os.environ if env is None else env)
    return settings


def save_settings(root: Path, settings: ReaderSettings) -> Path:
    path = settings_path(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings.as_payload(), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    return path


__all__ = [
    "ReaderSettings",
    "SETTINGS_FILENAME",
    "load_settings",
    "save_settings",
    "settings_path",
]
