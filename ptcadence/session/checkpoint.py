"""Crash-safe progress checkpoints and resume reconciliation."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from .errors import PersistenceWriteError, StaleResumeState
from .events import SessionEvent, SessionEventEmitter, SessionEventType
from .plan import TIMED_PHASES, PhasePlan, PhaseType
from .state import (
    ExerciseLogEntry,
    ExerciseOutcome,
    SessionSnapshot,
    SessionStatus,
    log_entry_for,
)

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from ..session_store import CheckpointStore


@dataclass(frozen=True)
class CheckpointRecord:
    """
    Persisted playback position.

    Attributes:
        session_id: Session instance id
        sequence: Logical clock assigned when the record was issued
        phase_index: Phase being played
        status: Status at the time of the checkpoint
        accumulated_seconds: Elapsed time within that phase
        completed_exercise_log: Log entries so far
        plan_fingerprint: Digest of the plan the position refers to
        saved_at: Wall-clock time the record was issued
        concluded: Exercises whose current attempt is concluded
        exercise_seconds: Timed seconds per exercise in the current attempt
        session_elapsed: Running time of all concluded phases
        metadata: Session-level fields (definition id/name, start time)
    """
    session_id: str
    sequence: int
    phase_index: int
    status: SessionStatus
    accumulated_seconds: float
    completed_exercise_log: tuple[ExerciseLogEntry, ...]
    plan_fingerprint: str
    saved_at: float
    concluded: tuple[int, ...] = ()
    exercise_seconds: tuple[tuple[int, float], ...] = ()
    session_elapsed: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_snapshot(
        cls,
        snapshot: SessionSnapshot,
        *,
        sequence: int,
        saved_at: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CheckpointRecord:
        return cls(
            session_id=snapshot.session_id,
            sequence=sequence,
            phase_index=snapshot.phase_index,
            status=snapshot.status,
            accumulated_seconds=snapshot.phase_elapsed,
            completed_exercise_log=snapshot.completed_exercise_log,
            plan_fingerprint=snapshot.plan_fingerprint,
            saved_at=saved_at,
            concluded=tuple(sorted(snapshot.concluded)),
            exercise_seconds=snapshot.exercise_seconds,
            session_elapsed=snapshot.session_elapsed,
            metadata=dict(metadata or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "sequence": self.sequence,
            "phase_index": self.phase_index,
            "status": self.status.value,
            "accumulated_seconds": self.accumulated_seconds,
            "completed_exercise_log": [entry.to_dict() for entry in self.completed_exercise_log],
            "plan_fingerprint": self.plan_fingerprint,
            "saved_at": self.saved_at,
            "concluded": list(self.concluded),
            "exercise_seconds": {str(k): v for k, v in self.exercise_seconds},
            "session_elapsed": self.session_elapsed,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CheckpointRecord:
        return cls(
            session_id=data["session_id"],
            sequence=int(data["sequence"]),
            phase_index=int(data["phase_index"]),
            status=SessionStatus(data["status"]),
            accumulated_seconds=float(data.get("accumulated_seconds", 0.0)),
            completed_exercise_log=tuple(
                ExerciseLogEntry.from_dict(entry) for entry in data.get("completed_exercise_log", [])
            ),
            plan_fingerprint=data.get("plan_fingerprint", ""),
            saved_at=float(data.get("saved_at", 0.0)),
            concluded=tuple(int(i) for i in data.get("concluded", [])),
            exercise_seconds=tuple(
                sorted((int(k), float(v)) for k, v in data.get("exercise_seconds", {}).items())
            ),
            session_elapsed=float(data.get("session_elapsed", 0.0)),
            metadata=dict(data.get("metadata", {})),
        )


class ProgressCheckpointer:
    """
    Issues checkpoint records and writes them on a background worker.

    Every record gets the next sequence number when it is issued. A queued
    write that is older than the newest issued record is dropped before it
    reaches the store, so a slow write can never replace newer progress.

    A failed write is logged, reported as ``CHECKPOINT_FAILED`` and turns
    :attr:`resume_available` off until a later write succeeds.
    """

    def __init__(
        self,
        store: CheckpointStore,
        *,
        emitter: Optional[SessionEventEmitter] = None,
        wall_clock: Callable[[], float] = time.time,
        thread_name_prefix: str = "checkpoint",
    ) -> None:
        self.store = store
        self.emitter = emitter
        self.metadata: Dict[str, Any] = {}
        self._wall_clock = wall_clock
        self._lock = Lock()
        self._sequence = 0
        self._latest_issued = 0
        self._pending: set[Future] = set()
        self._resume_available = False
        self._last_record: Optional[CheckpointRecord] = None
        self._shutdown = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=thread_name_prefix)
        self.logger = logging.getLogger(__name__)

    @property
    def resume_available(self) -> bool:
        return self._resume_available

    @property
    def last_record(self) -> Optional[CheckpointRecord]:
        return self._last_record

    @property
    def sequence(self) -> int:
        return self._sequence

    def seed(self, sequence: int) -> None:
        """Continue numbering after a loaded record."""
        with self._lock:
            self._sequence = max(self._sequence, int(sequence))
            self._latest_issued = max(self._latest_issued, self._sequence)

    def _issue(self, snapshot: SessionSnapshot) -> CheckpointRecord:
        with self._lock:
            self._sequence += 1
            self._latest_issued = self._sequence
            return CheckpointRecord.from_snapshot(
                snapshot,
                sequence=self._sequence,
                saved_at=self._wall_clock(),
                metadata=self.metadata,
            )

    def checkpoint(self, snapshot: SessionSnapshot) -> Optional[Future]:
        """Queue a write of *snapshot*. Returns immediately."""
        if self._shutdown:
            return None
        record = self._issue(snapshot)
        future = self._executor.submit(self._write, record, False)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def checkpoint_now(self, snapshot: SessionSnapshot) -> bool:
        """Write *snapshot* on the calling thread (terminal checkpoint)."""
        record = self._issue(snapshot)
        return self._write(record, True)

    def _write(self, record: CheckpointRecord, synchronous: bool) -> bool:
        if not synchronous and record.sequence < self._latest_issued:
            self.logger.debug(
                "[checkpoint] Dropping superseded record seq=%d (latest=%d)",
                record.sequence, self._latest_issued,
            )
            return False
        try:
            saved = self.store.save_checkpoint(record.session_id, record)
        except Exception as exc:
            error = exc if isinstance(exc, PersistenceWriteError) else PersistenceWriteError(str(exc))
            self._resume_available = False
            self.logger.error("[checkpoint] Write failed for %s seq=%d: %s", record.session_id, record.sequence, error)
            if self.emitter:
                self.emitter.emit(SessionEvent(
                    SessionEventType.CHECKPOINT_FAILED,
                    data={"session_id": record.session_id, "sequence": record.sequence, "error": str(error)},
                ))
            return False

        if saved:
            self._resume_available = True
            self._last_record = record
            self.logger.debug(
                "[checkpoint] Saved %s seq=%d phase=%d elapsed=%.2f",
                record.session_id, record.sequence, record.phase_index, record.accumulated_seconds,
            )
        return bool(saved)

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def cancel_pending(self) -> int:
        """Cancel queued writes that have not started. Returns how many."""
        with self._lock:
            pending = list(self._pending)
            # Anything still queued is superseded by whatever comes next.
            self._latest_issued = self._sequence + 1
        cancelled = sum(1 for future in pending if future.cancel())
        if cancelled:
            self.logger.debug("[checkpoint] Cancelled %d queued writes", cancelled)
        return cancelled

    def wait_idle(self, timeout: float = 2.0) -> bool:
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait: bool = True) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        self._executor.shutdown(wait=wait)


@dataclass(frozen=True)
class ReconciledPosition:
    """Where a restored sequencer should land."""
    phase_index: int
    elapsed: float
    completed_exercise_log: Dict[int, ExerciseLogEntry]
    concluded: set[int]
    exercise_seconds: Dict[int, float]
    session_elapsed: float
    advanced: bool = False


def reconcile(record: CheckpointRecord, plan: PhasePlan, now: float) -> ReconciledPosition:
    """Replay the time since *record* was saved against *plan*.

    Elapsed time in the checkpointed phase is the persisted value plus, for
    a record saved while running, the wall-clock gap up to *now*. If that
    reaches the phase duration the position moves to the following phase at
    0 elapsed; passing an exercise's final active phase logs the exercise as
    completed. Otherwise the position stays in the same phase.

    Raises:
        StaleResumeState: If the record was made for a different plan
    """
    if record.plan_fingerprint != plan.fingerprint():
        raise StaleResumeState(
            f"checkpoint for {record.session_id} does not match the current plan",
            session_id=record.session_id,
        )
    if not 0 <= record.phase_index < len(plan):
        raise StaleResumeState(
            f"checkpoint phase {record.phase_index} is outside the plan ({len(plan)} phases)",
            session_id=record.session_id,
        )

    log = {entry.exercise_index: entry for entry in record.completed_exercise_log}
    concluded = set(record.concluded)
    exercise_seconds = dict(record.exercise_seconds)
    session_elapsed = record.session_elapsed

    elapsed = max(0.0, record.accumulated_seconds)
    if record.status is SessionStatus.RUNNING:
        elapsed += max(0.0, now - record.saved_at)

    index = record.phase_index
    phase = plan[index]
    if phase.type is PhaseType.COMPLETE or elapsed < phase.duration_seconds:
        return ReconciledPosition(
            phase_index=index,
            elapsed=min(elapsed, phase.duration_seconds),
            completed_exercise_log=log,
            concluded=concluded,
            exercise_seconds=exercise_seconds,
            session_elapsed=session_elapsed,
        )

    ex_idx = phase.exercise_index
    session_elapsed += phase.duration_seconds
    if phase.type in TIMED_PHASES and ex_idx is not None:
        exercise_seconds[ex_idx] = exercise_seconds.get(ex_idx, 0.0) + phase.duration_seconds
    if (
        phase.type is PhaseType.ACTIVE
        and ex_idx is not None
        and ex_idx not in concluded
        and index == plan.last_active_of_exercise(ex_idx)
    ):
        log[ex_idx] = log_entry_for(plan, ex_idx, ExerciseOutcome.COMPLETED, exercise_seconds[ex_idx])
        concluded.add(ex_idx)

    return ReconciledPosition(
        phase_index=index + 1,
        elapsed=0.0,
        completed_exercise_log=log,
        concluded=concluded,
        exercise_seconds=exercise_seconds,
        session_elapsed=session_elapsed,
        advanced=True,
    )
