"""Session playback: plan, clock, cues, sequencer, checkpoints, lifecycle."""

from .errors import (
    AudioUnavailableError,
    ConfigurationError,
    PersistenceWriteError,
    PlaybackError,
    StaleResumeState,
)
from .exercise import (
    Exercise,
    ExercisePlanStep,
    ExerciseType,
    SessionDefinition,
    SessionExercise,
    SideMode,
    build_plan_steps,
)
from .plan import Phase, PhasePlan, PhaseType, Side, build_phase_plan, planned_duration
from .clock import ClockReading, SessionClock
from .events import SessionEvent, SessionEventEmitter, SessionEventType
from .state import (
    ExerciseLogEntry,
    ExerciseOutcome,
    SessionRuntimeState,
    SessionSnapshot,
    SessionStatus,
)
from .cues import DEFAULT_CUE_TABLE, CueDispatcher, CueName, CueSpec, ToneSpec
from .checkpoint import CheckpointRecord, ProgressCheckpointer, ReconciledPosition, reconcile
from .sequencer import SKIP_BACK_GRACE_SECONDS, PhaseSequencer
from .lifecycle import (
    AsyncTicker,
    NullPlatformHooks,
    PlatformHooks,
    ResumeResult,
    SessionLifecycleController,
)

__all__ = [
    'AudioUnavailableError', 'ConfigurationError', 'PersistenceWriteError',
    'PlaybackError', 'StaleResumeState',
    'Exercise', 'ExercisePlanStep', 'ExerciseType', 'SessionDefinition',
    'SessionExercise', 'SideMode', 'build_plan_steps',
    'Phase', 'PhasePlan', 'PhaseType', 'Side', 'build_phase_plan', 'planned_duration',
    'ClockReading', 'SessionClock',
    'SessionEvent', 'SessionEventEmitter', 'SessionEventType',
    'ExerciseLogEntry', 'ExerciseOutcome', 'SessionRuntimeState',
    'SessionSnapshot', 'SessionStatus',
    'DEFAULT_CUE_TABLE', 'CueDispatcher', 'CueName', 'CueSpec', 'ToneSpec',
    'CheckpointRecord', 'ProgressCheckpointer', 'ReconciledPosition', 'reconcile',
    'SKIP_BACK_GRACE_SECONDS', 'PhaseSequencer',
    'AsyncTicker', 'NullPlatformHooks', 'PlatformHooks', 'ResumeResult',
    'SessionLifecycleController',
]
