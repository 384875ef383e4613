"""
Exercise Data Models - catalog records and immutable plan steps.

Catalog side (owned by the template store, editable):
- Exercise: a single exercise with its default timing
- SessionExercise: an exercise reference inside a session with overrides
- SessionDefinition: a named, ordered list of session exercises

Playback side (frozen at session start):
- ExercisePlanStep: one scheduling unit with every default and override
  resolved, decoupled from later template edits
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..settings import PlayerSettings
from .errors import ConfigurationError


class ExerciseType(str, Enum):
    """How an exercise is timed."""
    DURATION = "duration"  # Hold / perform for a fixed time
    REPS = "reps"          # Repetitions grouped into sets


class SideMode(str, Enum):
    """Left/right handling for an exercise."""
    BILATERAL = "bilateral"      # Both sides at once, no side tracking
    UNILATERAL = "unilateral"    # Every set performed once per side
    ALTERNATING = "alternating"  # Side flips on every rep


@dataclass
class Exercise:
    """
    Exercise definition as stored in the catalog.

    Attributes:
        id: Catalog identifier
        name: Display name
        type: Duration or reps based
        default_duration: Seconds for duration exercises
        default_reps: Reps per set
        default_sets: Number of sets
        default_rep_duration: Seconds per rep
        pause_between_reps: Seconds between individual reps (None = app default)
        rest_between_sets: Seconds between sets (None = app default)
        side_mode: Left/right handling
        instructions: Free text shown by the UI
    """
    id: int
    name: str
    type: ExerciseType
    default_duration: Optional[float] = None
    default_reps: Optional[int] = None
    default_sets: Optional[int] = None
    default_rep_duration: Optional[float] = None
    pause_between_reps: Optional[float] = None
    rest_between_sets: Optional[float] = None
    side_mode: SideMode = SideMode.BILATERAL
    instructions: str = ""

    def __post_init__(self):
        """Coerce string enum values loaded from JSON."""
        if isinstance(self.type, str):
            self.type = ExerciseType(self.type)
        if isinstance(self.side_mode, str):
            self.side_mode = SideMode(self.side_mode)

    def validate(self) -> tuple[bool, str]:
        """
        Validate exercise defaults.

        Returns:
            (is_valid, error_message)
        """
        if not self.name or not self.name.strip():
            return False, "Exercise name cannot be empty"

        if self.default_duration is not None and self.default_duration <= 0:
            return False, f"default_duration must be positive, got {self.default_duration}"

        for attr in ("default_reps", "default_sets"):
            value = getattr(self, attr)
            if value is not None and value < 1:
                return False, f"{attr} must be at least 1, got {value}"

        if self.default_rep_duration is not None and self.default_rep_duration <= 0:
            return False, f"default_rep_duration must be positive, got {self.default_rep_duration}"

        for attr in ("pause_between_reps", "rest_between_sets"):
            value = getattr(self, attr)
            if value is not None and value < 0:
                return False, f"{attr} must be non-negative, got {value}"

        return True, ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "side_mode": self.side_mode.value,
        }
        for attr in (
            "default_duration",
            "default_reps",
            "default_sets",
            "default_rep_duration",
            "pause_between_reps",
            "rest_between_sets",
        ):
            value = getattr(self, attr)
            if value is not None:
                data[attr] = value
        if self.instructions:
            data["instructions"] = self.instructions
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Exercise:
        """Deserialize from dict."""
        return cls(
            id=int(data["id"]),
            name=data["name"],
            type=ExerciseType(data.get("type", "duration")),
            default_duration=data.get("default_duration"),
            default_reps=data.get("default_reps"),
            default_sets=data.get("default_sets"),
            default_rep_duration=data.get("default_rep_duration"),
            pause_between_reps=data.get("pause_between_reps"),
            rest_between_sets=data.get("rest_between_sets"),
            side_mode=SideMode(data.get("side_mode", "bilateral")),
            instructions=data.get("instructions", ""),
        )


@dataclass
class SessionExercise:
    """Exercise reference within a session definition, with optional overrides."""
    exercise_id: int
    duration: Optional[float] = None
    reps: Optional[int] = None
    sets: Optional[int] = None
    rep_duration: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"exercise_id": self.exercise_id}
        for attr in ("duration", "reps", "sets", "rep_duration"):
            value = getattr(self, attr)
            if value is not None:
                data[attr] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SessionExercise:
        return cls(
            exercise_id=int(data["exercise_id"]),
            duration=data.get("duration"),
            reps=data.get("reps"),
            sets=data.get("sets"),
            rep_duration=data.get("rep_duration"),
        )


@dataclass
class SessionDefinition:
    """
    Named, ordered collection of exercises (like a playlist).

    Attributes:
        id: Catalog identifier
        name: "Morning Routine", "Post-Workout", ...
        exercises: Ordered exercise references
        pause_between_exercises: Rest between exercises (None = app default)
    """
    id: int
    name: str
    exercises: List[SessionExercise] = field(default_factory=list)
    pause_between_exercises: Optional[float] = None

    def validate(self) -> tuple[bool, str]:
        if not self.name or not self.name.strip():
            return False, "Session name cannot be empty"
        if not self.exercises:
            return False, "Session must contain at least one exercise"
        if self.pause_between_exercises is not None and self.pause_between_exercises < 0:
            return False, f"pause_between_exercises must be non-negative, got {self.pause_between_exercises}"
        return True, ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "exercises": [entry.to_dict() for entry in self.exercises],
        }
        if self.pause_between_exercises is not None:
            data["pause_between_exercises"] = self.pause_between_exercises
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SessionDefinition:
        return cls(
            id=int(data["id"]),
            name=data["name"],
            exercises=[SessionExercise.from_dict(entry) for entry in data.get("exercises", [])],
            pause_between_exercises=data.get("pause_between_exercises"),
        )


@dataclass(frozen=True)
class ExercisePlanStep:
    """
    One scheduling unit, resolved from an exercise plus session overrides.

    Duration steps only use ``duration_seconds``; reps steps use the
    reps/sets block. ``rest_after_seconds`` is the gap before the next
    exercise (0 for the last one).
    """
    exercise_id: int
    name: str
    kind: ExerciseType
    duration_seconds: float = 0.0
    reps: int = 0
    sets: int = 0
    rep_duration_seconds: float = 0.0
    pause_between_reps_seconds: float = 0.0
    rest_between_sets_seconds: float = 0.0
    side_mode: SideMode = SideMode.BILATERAL
    rest_after_seconds: float = 0.0

    @property
    def effective_sets(self) -> int:
        """Sets actually performed (unilateral runs every set once per side)."""
        if self.kind is not ExerciseType.REPS:
            return 0
        return self.sets * 2 if self.side_mode is SideMode.UNILATERAL else self.sets

    @property
    def side_passes(self) -> int:
        """Times a duration hold is performed (once per side unless bilateral)."""
        return 1 if self.side_mode is SideMode.BILATERAL else 2

    def active_seconds(self) -> float:
        """Time spent moving (excludes pauses and rests)."""
        if self.kind is ExerciseType.DURATION:
            return self.duration_seconds * self.side_passes
        return self.effective_sets * self.reps * self.rep_duration_seconds

    def validate(self) -> tuple[bool, str]:
        if self.kind is ExerciseType.DURATION:
            if self.duration_seconds <= 0:
                return False, f"duration_seconds must be positive, got {self.duration_seconds}"
        else:
            if self.reps < 1 or self.sets < 1:
                return False, f"reps and sets must be at least 1, got reps={self.reps} sets={self.sets}"
            if self.rep_duration_seconds <= 0:
                return False, f"rep_duration_seconds must be positive, got {self.rep_duration_seconds}"
            if self.pause_between_reps_seconds < 0 or self.rest_between_sets_seconds < 0:
                return False, "pauses and rests must be non-negative"
        if self.rest_after_seconds < 0:
            return False, f"rest_after_seconds must be non-negative, got {self.rest_after_seconds}"
        return True, ""

    def targets(self) -> Dict[str, Any]:
        """Target snapshot stored with the exercise's log entry."""
        if self.kind is ExerciseType.DURATION:
            return {"target_duration": self.duration_seconds}
        return {
            "target_reps": self.reps,
            "target_sets": self.sets,
            "target_rep_duration": self.rep_duration_seconds,
        }


def build_plan_steps(
    definition: SessionDefinition,
    exercises: Mapping[int, Exercise],
    settings: PlayerSettings,
) -> tuple[ExercisePlanStep, ...]:
    """Resolve a session definition into immutable plan steps.

    Precedence for every value: session override, then exercise default,
    then app setting.

    Raises:
        ConfigurationError: If the definition is empty, references an unknown
            exercise, or resolves to invalid timing
    """
    is_valid, msg = definition.validate()
    if not is_valid:
        raise ConfigurationError(f"Session '{definition.name}': {msg}")

    rest_between_exercises = (
        definition.pause_between_exercises
        if definition.pause_between_exercises is not None
        else settings.pause_between_exercises
    )

    steps: list[ExercisePlanStep] = []
    last = len(definition.exercises) - 1
    for position, entry in enumerate(definition.exercises):
        exercise = exercises.get(entry.exercise_id)
        if exercise is None:
            raise ConfigurationError(
                f"Session '{definition.name}' references unknown exercise {entry.exercise_id}"
            )
        is_valid, msg = exercise.validate()
        if not is_valid:
            raise ConfigurationError(f"Exercise {exercise.id} ('{exercise.name}'): {msg}")

        rest_after = float(rest_between_exercises) if position < last else 0.0
        if exercise.type is ExerciseType.DURATION:
            step = ExercisePlanStep(
                exercise_id=exercise.id,
                name=exercise.name,
                kind=ExerciseType.DURATION,
                duration_seconds=float(_first(entry.duration, exercise.default_duration, settings.default_duration)),
                side_mode=exercise.side_mode,
                rest_after_seconds=rest_after,
            )
        else:
            step = ExercisePlanStep(
                exercise_id=exercise.id,
                name=exercise.name,
                kind=ExerciseType.REPS,
                reps=int(_first(entry.reps, exercise.default_reps, 10)),
                sets=int(_first(entry.sets, exercise.default_sets, 1)),
                rep_duration_seconds=float(
                    _first(entry.rep_duration, exercise.default_rep_duration, settings.default_rep_duration)
                ),
                pause_between_reps_seconds=float(
                    _first(exercise.pause_between_reps, settings.default_pause_between_reps)
                ),
                rest_between_sets_seconds=float(_first(exercise.rest_between_sets, settings.rest_between_sets)),
                side_mode=exercise.side_mode,
                rest_after_seconds=rest_after,
            )

        is_valid, msg = step.validate()
        if not is_valid:
            raise ConfigurationError(f"Exercise {exercise.id} ('{exercise.name}'): {msg}")
        steps.append(step)

    return tuple(steps)


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None
