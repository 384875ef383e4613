"""pytest configuration and shared fixtures."""

import logging
import os

import pytest

from ptcadence.catalog import MemoryCatalogStore
from ptcadence.engine.output import NullOutput
from ptcadence.engine.tone import ToneSynthesizer
from ptcadence.session.cues import CueDispatcher, CueName
from ptcadence.session.exercise import (
    Exercise,
    ExerciseType,
    SessionDefinition,
    SessionExercise,
    build_plan_steps,
)
from ptcadence.session.plan import build_phase_plan
from ptcadence.session.sequencer import PhaseSequencer
from ptcadence.session.clock import SessionClock
from ptcadence.settings import PlayerSettings

pytest_plugins = [
    "pytest_asyncio",
]


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (may take several seconds)"
    )


@pytest.fixture(autouse=True, scope="session")
def _quiet_environment(tmp_path_factory):
    os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "1"
    os.environ.setdefault("PTCADENCE_DATA_DIR", str(tmp_path_factory.mktemp("ptcadence-data")))
    logging.getLogger("asyncio").setLevel(logging.ERROR)
    yield


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDispatcher(CueDispatcher):
    """Keeps the real gating but records cue names instead of playing them."""

    def __init__(self, settings: PlayerSettings):
        super().__init__(ToneSynthesizer(NullOutput()), settings)
        self.dispatched: list[CueName] = []

    def dispatch(self, cue, context=None):
        self.dispatched.append(CueName(cue))
        return None

    def count(self, cue: CueName) -> int:
        return self.dispatched.count(cue)


def run_for(sequencer, clock: FakeClock, seconds: float, step: float = 0.1) -> None:
    """Advance *clock* by *seconds* in *step* increments, ticking each time."""
    for _ in range(int(round(seconds / step))):
        clock.advance(step)
        sequencer.tick()


def run_to_end(sequencer, clock: FakeClock, step: float = 0.1, limit: int = 100_000) -> int:
    ticks = 0
    while not sequencer.is_finished() and ticks < limit:
        clock.advance(step)
        sequencer.tick()
        ticks += 1
    return ticks


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def settings():
    return PlayerSettings(start_countdown_duration=3.0)


@pytest.fixture
def scenario_catalog():
    """30 s hold + 10 s rest, then 3 reps x 2 sets (2 s/rep, 1 s pause, 5 s set rest)."""
    exercises = [
        Exercise(id=1, name="Wall Sit", type=ExerciseType.DURATION, default_duration=30.0),
        Exercise(
            id=2,
            name="Heel Raise",
            type=ExerciseType.REPS,
            default_reps=3,
            default_sets=2,
            default_rep_duration=2.0,
            pause_between_reps=1.0,
            rest_between_sets=5.0,
        ),
    ]
    definition = SessionDefinition(
        id=7,
        name="Knee Rehab",
        exercises=[SessionExercise(exercise_id=1), SessionExercise(exercise_id=2)],
        pause_between_exercises=10.0,
    )
    return MemoryCatalogStore(exercises, [definition])


@pytest.fixture
def scenario_steps(scenario_catalog, settings):
    definition = scenario_catalog.get_session_definition(7)
    return build_plan_steps(definition, scenario_catalog.exercises_for(definition), settings)


@pytest.fixture
def scenario_plan(scenario_steps, settings):
    return build_phase_plan(scenario_steps, lead_in_seconds=settings.start_countdown_duration)


@pytest.fixture
def make_sequencer(scenario_plan, settings, fake_clock):
    def _make(plan=None, dispatcher=None, **kwargs):
        return PhaseSequencer(
            plan or scenario_plan,
            dispatcher,
            session_id=kwargs.pop("session_id", "test-session"),
            settings=kwargs.pop("settings", settings),
            clock=SessionClock(fake_clock),
            **kwargs,
        )
    return _make
