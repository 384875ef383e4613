"""Phase plan expansion.

A :class:`PhasePlan` is the flat, ordered list of timed phases the sequencer
walks. It is derived deterministically from the frozen exercise plan steps,
so rebuilding it from the same steps always yields the same fingerprint.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Optional, Sequence

from .errors import ConfigurationError
from .exercise import ExercisePlanStep, ExerciseType, SideMode


class PhaseType(str, Enum):
    """Kinds of phases in a plan."""
    LEAD_IN = "lead-in"
    ACTIVE = "active"
    REP_PAUSE = "rep-pause"
    SET_REST = "set-rest"
    EXERCISE_REST = "exercise-rest"
    COMPLETE = "complete"

    @property
    def is_rest(self) -> bool:
        return self in (PhaseType.SET_REST, PhaseType.EXERCISE_REST)


class Side(str, Enum):
    LEFT = "left"
    RIGHT = "right"

    @property
    def other(self) -> Side:
        return Side.RIGHT if self is Side.LEFT else Side.LEFT


# Phases whose elapsed time counts toward an exercise's actual duration.
TIMED_PHASES = frozenset({PhaseType.ACTIVE, PhaseType.REP_PAUSE, PhaseType.SET_REST})


@dataclass(frozen=True)
class Phase:
    """
    One timed entry of a plan.

    Attributes:
        type: Phase kind
        exercise_index: Position of the owning step (None for ``complete``)
        duration_seconds: Declared length
        set_index: Set number within the exercise (reps steps, 0-based)
        rep_index: Rep number within the set (active/rep-pause, 0-based)
        side: Side being worked, if the exercise tracks sides
    """
    type: PhaseType
    exercise_index: Optional[int]
    duration_seconds: float
    set_index: Optional[int] = None
    rep_index: Optional[int] = None
    side: Optional[Side] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "exercise_index": self.exercise_index,
            "duration_seconds": self.duration_seconds,
            "set_index": self.set_index,
            "rep_index": self.rep_index,
            "side": self.side.value if self.side else None,
        }

    def label(self) -> str:
        """Short human readable description (used by the CLI and logs)."""
        parts = [self.type.value]
        if self.set_index is not None:
            parts.append(f"set {self.set_index + 1}")
        if self.rep_index is not None:
            parts.append(f"rep {self.rep_index + 1}")
        if self.side is not None:
            parts.append(self.side.value)
        return " ".join(parts)


@dataclass(frozen=True)
class PhasePlan:
    """Immutable ordered phases plus the steps they were expanded from."""
    steps: tuple[ExercisePlanStep, ...]
    phases: tuple[Phase, ...]

    def __len__(self) -> int:
        return len(self.phases)

    def __getitem__(self, index: int) -> Phase:
        return self.phases[index]

    def __iter__(self) -> Iterator[Phase]:
        return iter(self.phases)

    @property
    def exercise_count(self) -> int:
        return len(self.steps)

    @property
    def complete_index(self) -> int:
        return len(self.phases) - 1

    def total_duration(self) -> float:
        return sum(phase.duration_seconds for phase in self.phases)

    def first_phase_of_exercise(self, exercise_index: int) -> int:
        """Index of the first phase belonging to *exercise_index*.

        An index past the last exercise maps to the ``complete`` phase.
        """
        for index, phase in enumerate(self.phases):
            if phase.exercise_index == exercise_index:
                return index
        return self.complete_index

    def last_active_of_exercise(self, exercise_index: int) -> int:
        found = -1
        for index, phase in enumerate(self.phases):
            if phase.exercise_index == exercise_index and phase.type is PhaseType.ACTIVE:
                found = index
        if found < 0:
            raise IndexError(f"exercise {exercise_index} has no active phase")
        return found

    def fingerprint(self) -> str:
        """Stable digest of steps and phases, used to detect stale checkpoints."""
        payload = {
            "steps": [
                [step.exercise_id, step.kind.value, step.side_mode.value] for step in self.steps
            ],
            "phases": [
                [
                    phase.type.value,
                    phase.exercise_index,
                    round(phase.duration_seconds, 3),
                    phase.set_index,
                    phase.rep_index,
                    phase.side.value if phase.side else None,
                ]
                for phase in self.phases
            ],
        }
        raw = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def build_phase_plan(
    steps: Sequence[ExercisePlanStep],
    *,
    lead_in_seconds: float = 3.0,
    starting_side: Side | str = Side.LEFT,
) -> PhasePlan:
    """Expand plan steps into a :class:`PhasePlan`.

    Per exercise: a lead-in, then either one active hold (per side for
    sided duration exercises) or every set's reps with rep-pauses between
    reps and set-rests between sets. The final set is followed by the
    exercise rest; the last exercise has none. Zero-length phases are
    dropped and a single zero-length ``complete`` phase closes the plan.

    Raises:
        ConfigurationError: If there are no steps
    """
    if not steps:
        raise ConfigurationError("Cannot build a phase plan from an empty session")

    first_side = Side(starting_side)
    phases: list[Phase] = []

    def add(phase: Phase) -> None:
        if phase.duration_seconds > 0:
            phases.append(phase)

    for ex_idx, step in enumerate(steps):
        add(Phase(PhaseType.LEAD_IN, ex_idx, float(lead_in_seconds)))

        if step.kind is ExerciseType.DURATION:
            if step.side_mode is SideMode.BILATERAL:
                add(Phase(PhaseType.ACTIVE, ex_idx, step.duration_seconds))
            else:
                side = first_side
                for _ in range(step.side_passes):
                    add(Phase(PhaseType.ACTIVE, ex_idx, step.duration_seconds, side=side))
                    side = side.other
        else:
            phases.extend(_expand_sets(ex_idx, step, first_side))

        add(Phase(PhaseType.EXERCISE_REST, ex_idx, step.rest_after_seconds))

    phases.append(Phase(PhaseType.COMPLETE, None, 0.0))
    return PhasePlan(steps=tuple(steps), phases=tuple(phases))


def _expand_sets(ex_idx: int, step: ExercisePlanStep, first_side: Side) -> Iterable[Phase]:
    total_sets = step.effective_sets
    for effective in range(total_sets):
        if step.side_mode is SideMode.UNILATERAL:
            set_index = effective // 2
            set_side: Optional[Side] = first_side if effective % 2 == 0 else first_side.other
        else:
            set_index = effective
            set_side = None

        for rep in range(step.reps):
            side = set_side
            if step.side_mode is SideMode.ALTERNATING:
                side = first_side if rep % 2 == 0 else first_side.other
            yield Phase(PhaseType.ACTIVE, ex_idx, step.rep_duration_seconds, set_index, rep, side)
            if rep < step.reps - 1 and step.pause_between_reps_seconds > 0:
                yield Phase(
                    PhaseType.REP_PAUSE, ex_idx, step.pause_between_reps_seconds, set_index, rep, side
                )

        if effective < total_sets - 1 and step.rest_between_sets_seconds > 0:
            yield Phase(PhaseType.SET_REST, ex_idx, step.rest_between_sets_seconds, set_index, side=set_side)


def planned_duration(steps: Sequence[ExercisePlanStep], lead_in_seconds: float = 3.0) -> float:
    """Declared session length computed directly from the steps."""
    total = 0.0
    for step in steps:
        total += lead_in_seconds + step.active_seconds() + step.rest_after_seconds
        if step.kind is ExerciseType.REPS:
            sets = step.effective_sets
            total += sets * (step.reps - 1) * step.pause_between_reps_seconds
            total += (sets - 1) * step.rest_between_sets_seconds
    return total
