"""Runtime state owned by the sequencer and the snapshots it publishes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .plan import Phase, PhasePlan


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ABORTED)


class ExerciseOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class ExerciseLogEntry:
    """
    Outcome of one exercise in a session.

    Attributes:
        exercise_index: Position in the session
        exercise_id: Catalog id (snapshotted at session start)
        name: Exercise name (snapshotted at session start)
        outcome: completed / skipped / incomplete
        actual_duration: Seconds spent in active, rep-pause and set-rest phases
        targets: Target reps/sets/duration the exercise was planned with
    """
    exercise_index: int
    exercise_id: int
    name: str
    outcome: ExerciseOutcome
    actual_duration: float
    targets: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exercise_index": self.exercise_index,
            "exercise_id": self.exercise_id,
            "name": self.name,
            "outcome": self.outcome.value,
            "actual_duration": round(self.actual_duration, 3),
            "targets": dict(self.targets),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ExerciseLogEntry:
        return cls(
            exercise_index=int(data["exercise_index"]),
            exercise_id=int(data["exercise_id"]),
            name=data.get("name", ""),
            outcome=ExerciseOutcome(data["outcome"]),
            actual_duration=float(data.get("actual_duration", 0.0)),
            targets=dict(data.get("targets", {})),
        )


@dataclass
class SessionRuntimeState:
    """
    Mutable playback core. Written only by the sequencer.

    ``phase_started_at`` is the clock reference of the last start/resume and
    is None whenever the session is not running; ``phase_elapsed_seconds``
    is authoritative only while paused.
    """
    current_phase_index: int = 0
    phase_started_at: Optional[float] = None
    phase_elapsed_seconds: float = 0.0
    status: SessionStatus = SessionStatus.IDLE
    completed_exercise_log: Dict[int, ExerciseLogEntry] = field(default_factory=dict)
    # Exercises whose current attempt has concluded (logged and not re-armed)
    concluded: set[int] = field(default_factory=set)
    # Per exercise seconds accumulated in timed phases during the current attempt
    exercise_seconds: Dict[int, float] = field(default_factory=dict)
    # Running time across all concluded phases (excludes pauses)
    session_elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable projection of the runtime state for UI and persistence."""
    session_id: str
    status: SessionStatus
    phase_index: int
    phase: Phase
    phase_elapsed: float
    phase_remaining: float
    total_phases: int
    exercise_name: Optional[str]
    session_elapsed: float
    planned_duration: float
    completed_exercise_log: tuple[ExerciseLogEntry, ...]
    concluded: frozenset[int]
    exercise_seconds: tuple[tuple[int, float], ...]
    plan_fingerprint: str
    audio_available: bool = True

    @property
    def exercise_index(self) -> Optional[int]:
        return self.phase.exercise_index

    @property
    def progress(self) -> float:
        """Fraction of the planned session covered so far (0.0 to 1.0)."""
        if self.planned_duration <= 0:
            return 1.0 if self.status is SessionStatus.COMPLETED else 0.0
        return min(1.0, (self.session_elapsed + self.phase_elapsed) / self.planned_duration)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "phase_index": self.phase_index,
            "phase": self.phase.to_dict(),
            "phase_elapsed": round(self.phase_elapsed, 3),
            "phase_remaining": round(self.phase_remaining, 3),
            "total_phases": self.total_phases,
            "exercise_name": self.exercise_name,
            "session_elapsed": round(self.session_elapsed, 3),
            "completed_exercise_log": [entry.to_dict() for entry in self.completed_exercise_log],
            "audio_available": self.audio_available,
        }


def log_entry_for(
    plan: PhasePlan,
    exercise_index: int,
    outcome: ExerciseOutcome,
    actual_duration: float,
) -> ExerciseLogEntry:
    """Build the log entry for *exercise_index* with its target snapshot."""
    step = plan.steps[exercise_index]
    return ExerciseLogEntry(
        exercise_index=exercise_index,
        exercise_id=step.exercise_id,
        name=step.name,
        outcome=outcome,
        actual_duration=actual_duration,
        targets=step.targets(),
    )
