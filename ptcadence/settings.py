"""Player settings snapshot and providers.

The settings UI lives outside this package. The engine only ever reads an
immutable :class:`PlayerSettings` snapshot, taken at session start and
replaced wholesale when the host pushes new values.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlayerSettings:
    """
    Read-only snapshot of the user's playback preferences.

    Attributes:
        sound_enabled: Master switch for every audio cue
        master_volume: Volume applied to all tones (0.0 to 1.0)
        haptics_enabled: Fire haptic pulses alongside tones
        lead_in_enabled: 3-2-1 rising countdown before an exercise starts
        exercise_about_to_end_enabled: 3-2-1 descending countdown at the end of duration exercises
        continuous_tick_enabled: Tick every second while an exercise is active
        per_rep_tone_enabled: Ping when a rep completes (rep-pause entry)
        per_set_tone_enabled: Rest tones at the start and end of set/exercise rests
        warning_enabled: Double chirp shortly before a rest ends
        warning_seconds: How long before the end of a rest the warning fires
        start_countdown_duration: Lead-in length in seconds
        default_duration: Fallback duration for duration exercises
        default_rep_duration: Fallback seconds per rep
        default_pause_between_reps: Fallback pause between reps
        rest_between_sets: Fallback rest between sets
        pause_between_exercises: Fallback rest between exercises
        starting_side: First side for unilateral/alternating exercises
        checkpoint_interval_seconds: Periodic checkpoint interval during long phases
        tick_interval_seconds: Nominal tick source interval
        auto_pause_on_hidden: Pause when the app is backgrounded
        auto_resume_on_visible: Resume automatically when it comes back
    """
    sound_enabled: bool = True
    master_volume: float = 0.7
    haptics_enabled: bool = False

    lead_in_enabled: bool = True
    exercise_about_to_end_enabled: bool = True
    continuous_tick_enabled: bool = False
    per_rep_tone_enabled: bool = False
    per_set_tone_enabled: bool = True
    warning_enabled: bool = True
    warning_seconds: float = 3.0

    start_countdown_duration: float = 3.0
    default_duration: float = 30.0
    default_rep_duration: float = 2.0
    default_pause_between_reps: float = 0.5
    rest_between_sets: float = 30.0
    pause_between_exercises: float = 15.0
    starting_side: str = "left"

    checkpoint_interval_seconds: float = 15.0
    tick_interval_seconds: float = 0.1
    auto_pause_on_hidden: bool = True
    auto_resume_on_visible: bool = False

    def validate(self) -> tuple[bool, str]:
        """
        Validate settings ranges.

        Returns:
            (is_valid, error_message)
        """
        if not (0.0 <= self.master_volume <= 1.0):
            return False, f"master_volume must be 0.0-1.0, got {self.master_volume}"

        for name in (
            "warning_seconds",
            "start_countdown_duration",
            "default_pause_between_reps",
            "rest_between_sets",
            "pause_between_exercises",
        ):
            value = getattr(self, name)
            if value < 0:
                return False, f"{name} must be non-negative, got {value}"

        for name in ("default_duration", "default_rep_duration", "checkpoint_interval_seconds"):
            value = getattr(self, name)
            if value <= 0:
                return False, f"{name} must be positive, got {value}"

        if not (0.01 <= self.tick_interval_seconds <= 1.0):
            return False, f"tick_interval_seconds must be 0.01-1.0, got {self.tick_interval_seconds}"

        if self.starting_side not in ("left", "right"):
            return False, f"starting_side must be 'left' or 'right', got {self.starting_side!r}"

        return True, ""

    def with_overrides(self, **changes: Any) -> PlayerSettings:
        """Return a copy with *changes* applied."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PlayerSettings:
        """Deserialize from dict.

        Missing keys fall back to defaults; unknown keys are ignored so older
        and newer settings files both load.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.debug("[settings] Ignoring unknown keys: %s", unknown)
        return cls(**{k: v for k, v in data.items() if k in known})


class SettingsProvider(ABC):
    """Source of settings snapshots (the settings UI's data store)."""

    @abstractmethod
    def snapshot(self) -> PlayerSettings:
        """Return the current settings as an immutable snapshot."""


class StaticSettingsProvider(SettingsProvider):
    """Serves a fixed snapshot; :meth:`update` swaps it."""

    def __init__(self, settings: PlayerSettings | None = None) -> None:
        self._settings = settings or PlayerSettings()

    def snapshot(self) -> PlayerSettings:
        return self._settings

    def update(self, settings: PlayerSettings) -> None:
        self._settings = settings


class JsonSettingsProvider(SettingsProvider):
    """Reads settings from a JSON file on every snapshot.

    A missing file yields defaults; an unreadable or invalid file is logged
    and also yields defaults so playback is never blocked by preferences.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def snapshot(self) -> PlayerSettings:
        if not self.path.exists():
            return PlayerSettings()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            settings = PlayerSettings.from_dict(data)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("[settings] Failed to read %s: %s - using defaults", self.path, exc)
            return PlayerSettings()

        is_valid, msg = settings.validate()
        if not is_valid:
            logger.warning("[settings] Invalid settings in %s: %s - using defaults", self.path, msg)
            return PlayerSettings()
        return settings

    def save(self, settings: PlayerSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(settings.to_dict(), f, indent=2, ensure_ascii=False)
