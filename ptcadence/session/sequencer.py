"""
Phase sequencer - the playback state machine.

Walks a PhasePlan one phase at a time:
- drives the SessionClock for the current phase
- emits cues for entries, exits and in-phase countdowns
- keeps the exercise log (completed / skipped / incomplete)
- hands snapshots to the checkpointer and the event emitter

The sequencer is the only writer of :class:`SessionRuntimeState`. It never
spawns timers; an external tick source calls :meth:`PhaseSequencer.tick`.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Optional

from ..settings import PlayerSettings
from .checkpoint import ProgressCheckpointer, ReconciledPosition
from .clock import SessionClock
from .cues import COUNTDOWN_CUES, ENDING_CUES, CueDispatcher, CueName
from .errors import ConfigurationError
from .events import SessionEvent, SessionEventEmitter, SessionEventType
from .exercise import ExerciseType, SideMode
from .plan import TIMED_PHASES, Phase, PhasePlan, PhaseType, Side
from .state import (
    ExerciseOutcome,
    SessionRuntimeState,
    SessionSnapshot,
    SessionStatus,
    log_entry_for,
)

# Skip-back within this much of an exercise's start goes to the previous one
SKIP_BACK_GRACE_SECONDS = 2.0


class PhaseSequencer:
    """
    State machine over a :class:`PhasePlan`.

    Lifecycle:
        1. start() or restore() - enter the first (or restored) phase
        2. tick() - called by the tick source; advances on expiry
        3. pause()/resume()/skip_forward()/skip_backward() - user intents
        4. end_early() or natural completion - terminal

    Commands that do not apply to the current status return False and log a
    warning instead of raising.
    """

    def __init__(
        self,
        plan: PhasePlan,
        dispatcher: Optional[CueDispatcher] = None,
        *,
        session_id: str,
        settings: Optional[PlayerSettings] = None,
        emitter: Optional[SessionEventEmitter] = None,
        checkpointer: Optional[ProgressCheckpointer] = None,
        clock: Optional[SessionClock] = None,
    ):
        if plan.exercise_count == 0 or len(plan) == 0:
            raise ConfigurationError("Cannot sequence an empty phase plan")

        self.plan = plan
        self.dispatcher = dispatcher
        self.session_id = session_id
        self.settings = settings or (dispatcher.settings if dispatcher else PlayerSettings())
        self.emitter = emitter or SessionEventEmitter()
        self.checkpointer = checkpointer
        self.clock = clock or SessionClock()
        self.state = SessionRuntimeState()

        self._fingerprint = plan.fingerprint()
        self._planned = plan.total_duration()
        self._fired: set[Any] = set()
        self._last_whole_second = 0
        self._last_side: Optional[Side] = None
        self._last_checkpoint_at: Optional[float] = None

        self.logger = logging.getLogger(__name__)

    # ===== Properties =====

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    @property
    def current_phase(self) -> Phase:
        return self.plan[self.state.current_phase_index]

    def is_running(self) -> bool:
        return self.state.status is SessionStatus.RUNNING

    def is_paused(self) -> bool:
        return self.state.status is SessionStatus.PAUSED

    def is_finished(self) -> bool:
        return self.state.status.is_terminal

    # ===== Lifecycle commands =====

    def start(self) -> bool:
        """Enter the first phase and start running."""
        if self.state.status is not SessionStatus.IDLE:
            self.logger.warning(f"[sequencer] start() ignored in status {self.state.status.value}")
            return False

        self.state.status = SessionStatus.RUNNING
        self.logger.info(
            f"[sequencer] Starting {self.session_id}: {self.plan.exercise_count} exercises, "
            f"{len(self.plan)} phases, {self._planned:.1f}s planned"
        )
        self._emit(SessionEventType.SESSION_START, resumed=False)
        self._enter_phase(0)
        return True

    def restore(self, position: ReconciledPosition) -> bool:
        """Load a reconciled checkpoint position. The session is left paused."""
        if self.state.status is not SessionStatus.IDLE:
            self.logger.warning(f"[sequencer] restore() ignored in status {self.state.status.value}")
            return False

        state = self.state
        state.completed_exercise_log = dict(position.completed_exercise_log)
        state.concluded = set(position.concluded)
        state.exercise_seconds = dict(position.exercise_seconds)
        state.session_elapsed_seconds = position.session_elapsed
        state.current_phase_index = position.phase_index
        state.status = SessionStatus.PAUSED

        phase = self.current_phase
        self.clock.load(phase.duration_seconds, position.elapsed)
        state.phase_started_at = None
        state.phase_elapsed_seconds = self.clock.elapsed
        self._reset_phase_cues(state.phase_elapsed_seconds)
        self._last_side = phase.side

        self.logger.info(
            f"[sequencer] Restored {self.session_id} at phase {position.phase_index} "
            f"({phase.label()}) elapsed={state.phase_elapsed_seconds:.2f}s"
        )
        self._emit(SessionEventType.SESSION_START, resumed=True)
        return True

    def pause(self) -> bool:
        if self.state.status is not SessionStatus.RUNNING:
            self.logger.warning(f"[sequencer] pause() ignored in status {self.state.status.value}")
            return False

        self.clock.pause()
        self.state.phase_elapsed_seconds = self.clock.elapsed
        self.state.phase_started_at = None
        self.state.status = SessionStatus.PAUSED
        self.logger.info(
            f"[sequencer] Paused at phase {self.state.current_phase_index} "
            f"elapsed={self.state.phase_elapsed_seconds:.2f}s"
        )
        self._emit(SessionEventType.SESSION_PAUSE)
        self._checkpoint()
        return True

    def resume(self) -> bool:
        if self.state.status is not SessionStatus.PAUSED:
            self.logger.warning(f"[sequencer] resume() ignored in status {self.state.status.value}")
            return False

        self.clock.resume()
        self.state.phase_started_at = self.clock.last_resume
        self.state.status = SessionStatus.RUNNING
        self.logger.info(f"[sequencer] Resumed at phase {self.state.current_phase_index}")
        self._emit(SessionEventType.SESSION_RESUME)
        self._checkpoint()
        return True

    def skip_forward(self) -> bool:
        """End the current exercise and move to the next exercise's lead-in."""
        if not self._can_navigate("skip_forward"):
            return False

        phase = self.current_phase
        ex_idx = phase.exercise_index
        self._conclude_phase(phase, self.clock.elapsed, natural=False)
        if ex_idx not in self.state.concluded:
            self._log_exercise(ex_idx, ExerciseOutcome.SKIPPED)

        target = self.plan.first_phase_of_exercise(ex_idx + 1)
        self.logger.info(f"[sequencer] Skip forward from exercise {ex_idx} to phase {target}")
        self._enter_phase(target, paused=self.state.status is SessionStatus.PAUSED)
        return True

    def skip_backward(self) -> bool:
        """Restart the current exercise, or the previous one near its start."""
        if not self._can_navigate("skip_backward"):
            return False

        phase = self.current_phase
        ex_idx = phase.exercise_index
        first = self.plan.first_phase_of_exercise(ex_idx)
        position = sum(
            self.plan[i].duration_seconds for i in range(first, self.state.current_phase_index)
        ) + self.clock.elapsed

        target_ex = ex_idx - 1 if (position < SKIP_BACK_GRACE_SECONDS and ex_idx > 0) else ex_idx
        self._conclude_phase(phase, self.clock.elapsed, natural=False)

        # Re-arm: entries stay in the log until the next outcome replaces them
        for idx in range(target_ex, ex_idx + 1):
            self.state.concluded.discard(idx)
            self.state.exercise_seconds[idx] = 0.0

        target = self.plan.first_phase_of_exercise(target_ex)
        self.logger.info(
            f"[sequencer] Skip backward to exercise {target_ex} (phase {target}, position was {position:.2f}s)"
        )
        self._enter_phase(target, paused=self.state.status is SessionStatus.PAUSED)
        return True

    def end_early(self) -> bool:
        """Abort. The interrupted exercise is logged as incomplete."""
        if self.state.status not in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            self.logger.warning(f"[sequencer] end_early() ignored in status {self.state.status.value}")
            return False

        phase = self.current_phase
        self.clock.pause()
        elapsed = self.clock.elapsed
        self._account(phase, elapsed)

        ex_idx = phase.exercise_index
        if ex_idx is not None and ex_idx not in self.state.concluded:
            self._log_exercise(ex_idx, ExerciseOutcome.INCOMPLETE)

        self.state.phase_elapsed_seconds = elapsed
        self.state.phase_started_at = None
        self.state.status = SessionStatus.ABORTED
        self.logger.info(
            f"[sequencer] Ended early at phase {self.state.current_phase_index} "
            f"({len(self.state.completed_exercise_log)} exercises logged)"
        )
        self._emit(SessionEventType.SESSION_STOP, snapshot=self.snapshot())
        return True

    def update_settings(self, settings: PlayerSettings) -> None:
        """Apply new settings to cue gating from the next cue on."""
        self.settings = settings
        if self.dispatcher:
            self.dispatcher.update_settings(settings)

    # ===== Tick =====

    def tick(self) -> Optional[SessionSnapshot]:
        """Sample the clock, fire due cues and advance on expiry.

        Returns:
            Snapshot after the tick, or None when not running
        """
        if self.state.status is not SessionStatus.RUNNING:
            return None

        phase = self.current_phase
        if phase.type is PhaseType.COMPLETE:
            self._complete()
            return self.snapshot()

        reading = self.clock.tick()
        self.logger.debug(
            f"[tick.trace] phase={self.state.current_phase_index} "
            f"elapsed={reading.elapsed:.3f} remaining={reading.remaining:.3f}"
        )

        if not reading.expired:
            self._phase_cues(phase, reading.elapsed, reading.remaining)
            self._maybe_periodic_checkpoint()
            snapshot = self.snapshot()
            self._emit(SessionEventType.PHASE_PROGRESS, snapshot=snapshot)
            return snapshot

        self._conclude_phase(phase, reading.elapsed, natural=True)
        self._enter_phase(self.state.current_phase_index + 1)
        return self.snapshot()

    # ===== Snapshot =====

    def snapshot(self) -> SessionSnapshot:
        state = self.state
        phase = self.current_phase
        elapsed = self.clock.elapsed if state.status is SessionStatus.RUNNING else state.phase_elapsed_seconds
        ex_idx = phase.exercise_index
        return SessionSnapshot(
            session_id=self.session_id,
            status=state.status,
            phase_index=state.current_phase_index,
            phase=phase,
            phase_elapsed=elapsed,
            phase_remaining=max(0.0, phase.duration_seconds - elapsed),
            total_phases=len(self.plan),
            exercise_name=self.plan.steps[ex_idx].name if ex_idx is not None else None,
            session_elapsed=state.session_elapsed_seconds,
            planned_duration=self._planned,
            completed_exercise_log=tuple(
                state.completed_exercise_log[i] for i in sorted(state.completed_exercise_log)
            ),
            concluded=frozenset(state.concluded),
            exercise_seconds=tuple(sorted(state.exercise_seconds.items())),
            plan_fingerprint=self._fingerprint,
            audio_available=self.dispatcher.audio_available if self.dispatcher else True,
        )

    # ===== Internals =====

    def _can_navigate(self, command: str) -> bool:
        if self.state.status not in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            self.logger.warning(f"[sequencer] {command}() ignored in status {self.state.status.value}")
            return False
        if self.current_phase.exercise_index is None:
            self.logger.warning(f"[sequencer] {command}() ignored on the complete phase")
            return False
        return True

    def _enter_phase(self, index: int, elapsed: float = 0.0, *, paused: bool = False) -> None:
        self.state.current_phase_index = index
        phase = self.plan[index]

        if phase.type is PhaseType.COMPLETE:
            self._complete()
            return

        switched = self._track_side(phase)
        if not paused:
            self._entry_cues(phase, switched)

        if paused:
            self.clock.load(phase.duration_seconds, elapsed)
            self.state.phase_started_at = None
            self.state.phase_elapsed_seconds = self.clock.elapsed
        else:
            self.clock.start(phase.duration_seconds, elapsed)
            self.state.phase_started_at = self.clock.last_resume
            self.state.phase_elapsed_seconds = 0.0

        self._reset_phase_cues(elapsed)
        self.logger.info(
            f"[sequencer] Phase {index}/{len(self.plan) - 1}: {phase.label()} "
            f"({phase.duration_seconds:.1f}s, exercise {phase.exercise_index})"
        )
        self._emit(SessionEventType.PHASE_START, phase_index=index, phase=phase.type.value)
        if not paused:
            self._phase_cues(phase, elapsed, phase.duration_seconds - elapsed)
        self._checkpoint()

    def _track_side(self, phase: Phase) -> bool:
        """Record the side of an active phase; True if it switched mid-exercise."""
        if phase.type is PhaseType.LEAD_IN:
            self._last_side = None
            return False
        if phase.type is not PhaseType.ACTIVE:
            return False
        step = self.plan.steps[phase.exercise_index]
        switched = (
            phase.side is not None
            and self._last_side is not None
            and phase.side is not self._last_side
            and step.side_mode is not SideMode.ALTERNATING
        )
        self._last_side = phase.side
        return switched

    def _entry_cues(self, phase: Phase, switched: bool) -> None:
        if phase.type is PhaseType.ACTIVE:
            step = self.plan.steps[phase.exercise_index]
            if switched:
                self._cue(CueName.SWITCH_SIDES, phase)
            self._cue(CueName.EXERCISE_START if step.kind is ExerciseType.DURATION else CueName.REP_START, phase)
        elif phase.type is PhaseType.REP_PAUSE:
            self._cue(CueName.REP_COMPLETE, phase)
        elif phase.type.is_rest:
            self._cue(CueName.REST_TONE, phase)

    def _reset_phase_cues(self, elapsed: float) -> None:
        self._fired = set()
        self._last_whole_second = int(math.floor(elapsed))
        self._last_checkpoint_at = self.clock.now()

    def _phase_cues(self, phase: Phase, elapsed: float, remaining: float) -> None:
        """Fire countdown, warning and tick cues due at this point in the phase."""
        if remaining <= 0:
            return

        if phase.type is PhaseType.LEAD_IN:
            self._countdown(COUNTDOWN_CUES, phase, remaining, inclusive=True)
        elif phase.type is PhaseType.ACTIVE:
            if self.plan.steps[phase.exercise_index].kind is ExerciseType.DURATION:
                self._countdown(ENDING_CUES, phase, remaining, inclusive=False)
            whole = int(math.floor(elapsed))
            if whole > self._last_whole_second:
                self._last_whole_second = whole
                self._cue(CueName.TICK, phase)
        elif phase.type.is_rest:
            warn_at = self.settings.warning_seconds
            if (
                "warning" not in self._fired
                and 0 < warn_at < phase.duration_seconds
                and remaining <= warn_at
            ):
                self._fired.add("warning")
                self._cue(CueName.WARNING, phase)

    def _countdown(self, cues: dict[int, CueName], phase: Phase, remaining: float, *, inclusive: bool) -> None:
        # A late tick can cross several marks at once; only the latest one sounds.
        due = [
            n for n in cues
            if n not in self._fired
            and remaining <= n
            and (n <= phase.duration_seconds if inclusive else n < phase.duration_seconds)
        ]
        if not due:
            return
        latest = min(due)
        self._fired.update(due)
        self._cue(cues[latest], phase)

    def _conclude_phase(self, phase: Phase, elapsed: float, *, natural: bool) -> None:
        if natural:
            if phase.type is PhaseType.ACTIVE:
                step = self.plan.steps[phase.exercise_index]
                self._cue(CueName.EXERCISE_END if step.kind is ExerciseType.DURATION else CueName.REP_END, phase)
            elif phase.type.is_rest:
                self._cue(CueName.REST_END, phase)

        self._account(phase, elapsed)
        self._emit(
            SessionEventType.PHASE_END,
            phase_index=self.state.current_phase_index,
            phase=phase.type.value,
            elapsed=elapsed,
            skipped=not natural,
        )

        ex_idx = phase.exercise_index
        if (
            natural
            and phase.type is PhaseType.ACTIVE
            and self.state.current_phase_index == self.plan.last_active_of_exercise(ex_idx)
        ):
            self._log_exercise(ex_idx, ExerciseOutcome.COMPLETED)

    def _account(self, phase: Phase, elapsed: float) -> None:
        elapsed = min(max(0.0, elapsed), phase.duration_seconds)
        self.state.session_elapsed_seconds += elapsed
        if phase.type in TIMED_PHASES and phase.exercise_index is not None:
            seconds = self.state.exercise_seconds
            seconds[phase.exercise_index] = seconds.get(phase.exercise_index, 0.0) + elapsed

    def _log_exercise(self, ex_idx: int, outcome: ExerciseOutcome) -> None:
        entry = log_entry_for(self.plan, ex_idx, outcome, self.state.exercise_seconds.get(ex_idx, 0.0))
        self.state.completed_exercise_log[ex_idx] = entry
        self.state.concluded.add(ex_idx)
        self.logger.info(
            f"[sequencer] Exercise {ex_idx} ('{entry.name}') {outcome.value} "
            f"after {entry.actual_duration:.1f}s"
        )
        self._emit(SessionEventType.EXERCISE_LOGGED, entry=entry)

    def _complete(self) -> None:
        self.state.current_phase_index = self.plan.complete_index
        self.clock.reset()
        self.state.phase_started_at = None
        self.state.phase_elapsed_seconds = 0.0
        self.state.status = SessionStatus.COMPLETED
        self._cue(CueName.SESSION_COMPLETE, self.current_phase)
        self.logger.info(
            f"[sequencer] Session {self.session_id} complete "
            f"({self.state.session_elapsed_seconds:.1f}s of {self._planned:.1f}s planned)"
        )
        self._emit(SessionEventType.SESSION_END, snapshot=self.snapshot())

    def _cue(self, name: CueName, phase: Phase) -> None:
        if self.dispatcher is None or not self.dispatcher.is_enabled(name):
            return
        self.dispatcher.dispatch(
            name,
            {"phase_index": self.state.current_phase_index, "phase": phase.type.value},
        )

    def _maybe_periodic_checkpoint(self) -> None:
        if self.checkpointer is None or self._last_checkpoint_at is None:
            return
        if self.clock.now() - self._last_checkpoint_at >= self.settings.checkpoint_interval_seconds:
            self._checkpoint()

    def _checkpoint(self) -> None:
        self._last_checkpoint_at = self.clock.now()
        if self.checkpointer is not None and not self.state.status.is_terminal:
            self.checkpointer.checkpoint(self.snapshot())

    def _emit(self, event_type: SessionEventType, **data: Any) -> None:
        data.setdefault("session_id", self.session_id)
        self.emitter.emit(SessionEvent(event_type, data=data))
