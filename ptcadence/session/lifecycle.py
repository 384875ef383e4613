"""
Session lifecycle controller - the surface the UI talks to.

Builds the plan from the catalog and settings, wires the sequencer to the
cue dispatcher and checkpointer, owns the wake lock and reacts to the app
being hidden or shown. Finished sessions are archived through the store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional

from ..engine.haptics import HapticSink
from ..engine.tone import ToneSynthesizer
from ..settings import PlayerSettings, SettingsProvider, StaticSettingsProvider
from .checkpoint import ProgressCheckpointer, reconcile
from .clock import SessionClock
from .cues import CueDispatcher
from .errors import PersistenceWriteError, StaleResumeState
from .events import SessionEvent, SessionEventEmitter, SessionEventType
from .exercise import SessionDefinition, build_plan_steps
from .plan import PhasePlan, build_phase_plan
from .sequencer import PhaseSequencer
from .state import ExerciseLogEntry, SessionSnapshot, SessionStatus

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from ..catalog import CatalogStore
    from ..session_store import CheckpointStore


class ResumeResult(str, Enum):
    RESUMED = "resumed"    # Restored and paused, ready for resume()
    NONE = "none"          # No checkpoint stored
    STALE = "stale"        # Checkpoint no longer matches the plan; start fresh
    FINISHED = "finished"  # Checkpoint belonged to a finished session; archived


class PlatformHooks(ABC):
    """Wake-lock collaborator provided by the host platform."""

    @abstractmethod
    def acquire_wake_lock(self) -> None:
        ...

    @abstractmethod
    def release_wake_lock(self) -> None:
        ...


class NullPlatformHooks(PlatformHooks):
    """Records wake-lock state without touching the platform."""

    def __init__(self):
        self.held = False
        self.acquired = 0

    def acquire_wake_lock(self) -> None:
        self.held = True
        self.acquired += 1

    def release_wake_lock(self) -> None:
        self.held = False


def default_instance_id(definition: SessionDefinition, day: Optional[date] = None) -> str:
    """One instance per definition per day unless the caller chooses otherwise."""
    return f"{definition.id}-{(day or date.today()).isoformat()}"


def build_session_record(
    *,
    session_id: str,
    status: SessionStatus,
    log: Iterable[ExerciseLogEntry],
    elapsed_seconds: float,
    metadata: Dict[str, Any],
    ended_at: float,
) -> Dict[str, Any]:
    """Journal entry for a finished session."""
    return {
        "id": session_id,
        "date": metadata.get("date"),
        "session_definition_id": metadata.get("definition_id"),
        "session_name": metadata.get("definition_name"),
        "status": "completed" if status is SessionStatus.COMPLETED else "ended-early",
        "start_time": metadata.get("start_time"),
        "end_time": datetime.fromtimestamp(ended_at).isoformat(timespec="seconds"),
        "cumulative_elapsed_seconds": round(elapsed_seconds, 3),
        "planned_duration_seconds": metadata.get("planned_duration"),
        "completed_exercises": [entry.to_dict() for entry in log],
    }


class SessionLifecycleController:
    """
    Start, pause, resume, skip and end sessions.

    Usage:
        controller = SessionLifecycleController(catalog, store)
        controller.start(definition_id=1)
        ticker = AsyncTicker(controller)
        await ticker.run()

    Every command returns a bool; commands that do not apply to the current
    state return False and log a warning. Only plan construction raises
    (:class:`ConfigurationError`).
    """

    def __init__(
        self,
        catalog: CatalogStore,
        store: CheckpointStore,
        *,
        settings_provider: Optional[SettingsProvider] = None,
        synthesizer: Optional[ToneSynthesizer] = None,
        haptics: Optional[HapticSink] = None,
        platform: Optional[PlatformHooks] = None,
        emitter: Optional[SessionEventEmitter] = None,
        time_provider: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.catalog = catalog
        self.store = store
        self.settings_provider = settings_provider or StaticSettingsProvider()
        self.synthesizer = synthesizer or ToneSynthesizer()
        self.haptics = haptics
        self.platform = platform or NullPlatformHooks()
        self.emitter = emitter or SessionEventEmitter()
        self._time = time_provider
        self._wall_clock = wall_clock
        self._sleep = sleep

        self.sequencer: Optional[PhaseSequencer] = None
        self.dispatcher: Optional[CueDispatcher] = None
        self.checkpointer: Optional[ProgressCheckpointer] = None
        self.settings: PlayerSettings = self.settings_provider.snapshot()
        self.session_record: Optional[Dict[str, Any]] = None
        self._wake_lock_held = False
        self._auto_paused = False
        # When set, end-of-session flushing waits for finalize_pending()
        self.defer_finalize = False
        self._final_snapshot: Optional[SessionSnapshot] = None

        self.emitter.subscribe(SessionEventType.SESSION_END, self._on_session_end)
        self.logger = logging.getLogger(__name__)

    # ===== Properties =====

    @property
    def session_id(self) -> Optional[str]:
        return self.sequencer.session_id if self.sequencer else None

    @property
    def status(self) -> SessionStatus:
        return self.sequencer.status if self.sequencer else SessionStatus.IDLE

    @property
    def resume_available(self) -> bool:
        return bool(self.checkpointer and self.checkpointer.resume_available)

    @property
    def audio_available(self) -> bool:
        return self.dispatcher.audio_available if self.dispatcher else True

    def has_active_session(self) -> bool:
        return self.sequencer is not None and not self.sequencer.is_finished()

    def is_finished(self) -> bool:
        return self.sequencer is None or self.sequencer.is_finished()

    def snapshot(self) -> Optional[SessionSnapshot]:
        return self.sequencer.snapshot() if self.sequencer else None

    # ===== Session setup =====

    def prepare(self, definition_id: int) -> tuple[SessionDefinition, PhasePlan]:
        """Build the frozen plan for *definition_id* from the current settings.

        Raises:
            ConfigurationError: If the definition or its exercises are invalid
        """
        self.settings = self.settings_provider.snapshot()
        definition = self.catalog.get_session_definition(definition_id)
        exercises = self.catalog.exercises_for(definition)
        steps = build_plan_steps(definition, exercises, self.settings)
        plan = build_phase_plan(
            steps,
            lead_in_seconds=self.settings.start_countdown_duration,
            starting_side=self.settings.starting_side,
        )
        return definition, plan

    def start(self, definition_id: int, *, instance_id: Optional[str] = None) -> bool:
        """Start a fresh session. Any old checkpoint for the instance is dropped."""
        if self.has_active_session():
            self.logger.warning(f"[lifecycle] start() ignored: session {self.session_id} is active")
            return False

        definition, plan = self.prepare(definition_id)
        session_id = instance_id or default_instance_id(definition)
        self._clear_checkpoint(session_id)

        self._build(definition, plan, session_id, started_at=self._wall_clock())
        self.logger.info(f"[lifecycle] Starting session {session_id} ('{definition.name}')")
        self.sequencer.start()
        self._acquire_wake_lock()
        return True

    def resume_session(self, definition_id: int, *, instance_id: Optional[str] = None) -> ResumeResult:
        """Restore a checkpointed session. On success the session is paused."""
        if self.has_active_session():
            self.logger.warning(f"[lifecycle] resume_session() ignored: session {self.session_id} is active")
            return ResumeResult.NONE

        definition, plan = self.prepare(definition_id)
        session_id = instance_id or default_instance_id(definition)
        record = self.store.load_checkpoint(session_id)
        if record is None:
            self.logger.info(f"[lifecycle] No checkpoint for {session_id}")
            return ResumeResult.NONE

        if record.status.is_terminal:
            self.logger.info(f"[lifecycle] Checkpoint for {session_id} is {record.status.value}; archiving")
            self._archive(
                session_id,
                build_session_record(
                    session_id=session_id,
                    status=record.status,
                    log=record.completed_exercise_log,
                    elapsed_seconds=record.session_elapsed + record.accumulated_seconds,
                    metadata=record.metadata,
                    ended_at=record.saved_at,
                ),
            )
            return ResumeResult.FINISHED

        try:
            position = reconcile(record, plan, self._wall_clock())
        except StaleResumeState as e:
            self.logger.warning(f"[lifecycle] Cannot resume {session_id}: {e}; start fresh")
            self._clear_checkpoint(session_id)
            return ResumeResult.STALE

        started_at = record.metadata.get("started_at", record.saved_at)
        self._build(definition, plan, session_id, started_at=started_at)
        self.checkpointer.seed(record.sequence)
        self.sequencer.restore(position)
        self.logger.info(
            f"[lifecycle] Resumable session {session_id} restored at phase {position.phase_index}"
            f"{' (advanced past expired phase)' if position.advanced else ''}"
        )
        return ResumeResult.RESUMED

    def _build(self, definition: SessionDefinition, plan: PhasePlan, session_id: str, *, started_at: float) -> None:
        self.finalize_pending()
        self._teardown_workers()
        self.session_record = None
        self._auto_paused = False

        self.dispatcher = CueDispatcher(
            self.synthesizer,
            self.settings,
            haptics=self.haptics,
            emitter=self.emitter,
            time_provider=self._time,
            sleep=self._sleep,
        )
        self.checkpointer = ProgressCheckpointer(self.store, emitter=self.emitter, wall_clock=self._wall_clock)
        started = datetime.fromtimestamp(started_at)
        self.checkpointer.metadata = {
            "definition_id": definition.id,
            "definition_name": definition.name,
            "started_at": started_at,
            "start_time": started.isoformat(timespec="seconds"),
            "date": started.date().isoformat(),
            "planned_duration": plan.total_duration(),
        }
        self.sequencer = PhaseSequencer(
            plan,
            self.dispatcher,
            session_id=session_id,
            settings=self.settings,
            emitter=self.emitter,
            checkpointer=self.checkpointer,
            clock=SessionClock(self._time),
        )

    # ===== User intents =====

    def pause(self) -> bool:
        if not self._require_session("pause"):
            return False
        if not self.sequencer.pause():
            return False
        self._auto_paused = False
        self._release_wake_lock()
        return True

    def resume(self) -> bool:
        if not self._require_session("resume"):
            return False
        if not self.sequencer.resume():
            return False
        self._auto_paused = False
        self._acquire_wake_lock()
        return True

    def skip_forward(self) -> bool:
        return self._require_session("skip_forward") and self.sequencer.skip_forward()

    def skip_backward(self) -> bool:
        return self._require_session("skip_backward") and self.sequencer.skip_backward()

    def end_early(self) -> bool:
        """Abort, write a terminal checkpoint, then archive the session."""
        if not self._require_session("end_early"):
            return False
        if not self.sequencer.end_early():
            return False

        self._conclude(self.sequencer.snapshot())
        return True

    def update_settings(self, settings: PlayerSettings) -> None:
        """Push new settings; cue gating changes from the next cue on."""
        self.settings = settings
        if self.sequencer:
            self.sequencer.update_settings(settings)

    def on_visibility_changed(self, visible: bool) -> None:
        """Host notification that the app was hidden or shown."""
        if not visible:
            if self.sequencer and self.sequencer.is_running() and self.settings.auto_pause_on_hidden:
                self.logger.info("[lifecycle] App hidden; auto-pausing")
                self.pause()
                self._auto_paused = True
            else:
                self._release_wake_lock()
            return

        if self._auto_paused and self.settings.auto_resume_on_visible and self.sequencer and self.sequencer.is_paused():
            self.logger.info("[lifecycle] App visible again; auto-resuming")
            self.resume()
        elif self.sequencer and self.sequencer.is_running():
            self._acquire_wake_lock()

    def tick(self) -> Optional[SessionSnapshot]:
        """Forward one tick to the sequencer (called by the tick source)."""
        if self.sequencer is None:
            return None
        return self.sequencer.tick()

    def shutdown(self) -> None:
        """Stop background workers, flushing queued checkpoints."""
        self.finalize_pending()
        self._teardown_workers()
        self._release_wake_lock()

    # ===== Internals =====

    def _require_session(self, command: str) -> bool:
        if self.sequencer is None:
            self.logger.warning(f"[lifecycle] {command}() ignored: no session")
            return False
        return True

    def _on_session_end(self, event: SessionEvent) -> None:
        if self.sequencer is None or event.data.get("session_id") != self.sequencer.session_id:
            return
        self._conclude(event.data["snapshot"])

    def _conclude(self, snapshot: SessionSnapshot) -> None:
        if self.defer_finalize:
            self._final_snapshot = snapshot
            return
        self._flush_final(snapshot)

    def finalize_pending(self) -> bool:
        """Run an end-of-session flush held back by ``defer_finalize``.

        Blocks on the checkpoint worker, so async hosts call it from an executor.
        """
        snapshot, self._final_snapshot = self._final_snapshot, None
        if snapshot is None:
            return False
        self._flush_final(snapshot)
        return True

    def _flush_final(self, snapshot: SessionSnapshot) -> None:
        # Terminal record first, so a failed archive still leaves a finished checkpoint
        self.checkpointer.cancel_pending()
        self.checkpointer.wait_idle()
        self.checkpointer.checkpoint_now(snapshot)
        self._finalize(snapshot)

    def _finalize(self, snapshot: SessionSnapshot) -> None:
        record = build_session_record(
            session_id=snapshot.session_id,
            status=snapshot.status,
            log=snapshot.completed_exercise_log,
            elapsed_seconds=snapshot.session_elapsed,
            metadata=self.checkpointer.metadata,
            ended_at=self._wall_clock(),
        )
        self._archive(snapshot.session_id, record)
        self._release_wake_lock()

    def _archive(self, session_id: str, record: Dict[str, Any]) -> None:
        try:
            self.store.finalize_session(session_id, record)
        except PersistenceWriteError as e:
            self.logger.error(f"[lifecycle] Failed to archive session {session_id}: {e}")
            self.emitter.emit(SessionEvent(
                SessionEventType.ERROR,
                data={"session_id": session_id, "error": str(e)},
            ))
            return
        self.session_record = record
        self.logger.info(
            f"[lifecycle] Archived {session_id}: {record['status']}, "
            f"{len(record['completed_exercises'])} exercises logged"
        )

    def _clear_checkpoint(self, session_id: str) -> None:
        try:
            self.store.clear_checkpoint(session_id)
        except PersistenceWriteError as e:
            self.logger.warning(f"[lifecycle] Could not clear checkpoint for {session_id}: {e}")

    def _acquire_wake_lock(self) -> None:
        if self._wake_lock_held:
            return
        try:
            self.platform.acquire_wake_lock()
            self._wake_lock_held = True
        except Exception as e:
            self.logger.warning(f"[lifecycle] Wake lock unavailable: {e}")

    def _release_wake_lock(self) -> None:
        if not self._wake_lock_held:
            return
        self._wake_lock_held = False
        try:
            self.platform.release_wake_lock()
        except Exception as e:
            self.logger.warning(f"[lifecycle] Wake lock release failed: {e}")

    def _teardown_workers(self) -> None:
        if self.checkpointer is not None:
            self.checkpointer.shutdown(wait=True)
        if self.dispatcher is not None:
            self.dispatcher.shutdown(wait=False)


class AsyncTicker:
    """Drives a controller from an asyncio loop.

    ``run()`` returns once the session is finished or :meth:`stop` is called.
    The end-of-session checkpoint flush and archive run in the loop's default
    executor so they never block the event loop.
    """

    def __init__(
        self,
        controller: SessionLifecycleController,
        interval: Optional[float] = None,
        on_tick: Optional[Callable[[Optional[SessionSnapshot]], None]] = None,
    ):
        self.controller = controller
        self.interval = interval if interval is not None else controller.settings.tick_interval_seconds
        self.on_tick = on_tick
        self._stopped = False
        self.ticks = 0

    def stop(self) -> None:
        self._stopped = True

    async def run(self) -> Optional[SessionSnapshot]:
        controller = self.controller
        deferred = controller.defer_finalize
        controller.defer_finalize = True
        try:
            while not self._stopped and not controller.is_finished():
                snapshot = controller.tick()
                self.ticks += 1
                if self.on_tick is not None:
                    self.on_tick(snapshot)
                await asyncio.sleep(self.interval)
        finally:
            controller.defer_finalize = deferred
        await asyncio.get_running_loop().run_in_executor(None, controller.finalize_pending)
        return controller.snapshot()
