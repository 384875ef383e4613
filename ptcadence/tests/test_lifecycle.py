"""Tests for the session lifecycle controller and the asyncio ticker."""

import asyncio
import threading

import pytest

from ptcadence.catalog import MemoryCatalogStore
from ptcadence.engine.output import NullOutput
from ptcadence.engine.tone import ToneSynthesizer
from ptcadence.session.errors import ConfigurationError
from ptcadence.session.events import SessionEventEmitter, SessionEventType
from ptcadence.session.exercise import Exercise, ExerciseType, SessionDefinition, SessionExercise
from ptcadence.session.lifecycle import (
    AsyncTicker,
    NullPlatformHooks,
    ResumeResult,
    SessionLifecycleController,
    default_instance_id,
)
from ptcadence.session.state import SessionStatus
from ptcadence.session_store import MemoryCheckpointStore
from ptcadence.settings import PlayerSettings, StaticSettingsProvider

INSTANCE = "knee-rehab-1"
WALL = 1_700_000_000.0


@pytest.fixture
def store():
    return MemoryCheckpointStore()


@pytest.fixture
def make_controller(scenario_catalog, store, settings, fake_clock):
    created = []

    def _make(settings_override=None, **kwargs):
        kwargs.setdefault("platform", NullPlatformHooks())
        controller = SessionLifecycleController(
            kwargs.pop("catalog", scenario_catalog),
            kwargs.pop("store", store),
            settings_provider=StaticSettingsProvider(settings_override or settings),
            synthesizer=ToneSynthesizer(NullOutput()),
            time_provider=fake_clock,
            wall_clock=lambda: WALL,
            **kwargs,
        )
        created.append(controller)
        return controller

    yield _make
    for controller in created:
        controller.shutdown()


def drive(controller, clock, seconds, step=0.25):
    for _ in range(int(round(seconds / step))):
        clock.advance(step)
        controller.tick()


def drive_to_end(controller, clock, step=0.25, limit=10_000):
    for _ in range(limit):
        if controller.is_finished():
            return
        clock.advance(step)
        controller.tick()


def test_wake_lock_follows_running_state(make_controller, fake_clock):
    controller = make_controller()
    platform = controller.platform
    assert controller.start(7, instance_id=INSTANCE)
    assert platform.held and platform.acquired == 1

    drive(controller, fake_clock, 1.0)
    assert controller.pause()
    assert not platform.held
    assert controller.resume()
    assert platform.held and platform.acquired == 2

    drive_to_end(controller, fake_clock)
    assert not platform.held


def test_completion_archives_record(make_controller, fake_clock, store):
    controller = make_controller()
    controller.start(7, instance_id=INSTANCE)
    drive_to_end(controller, fake_clock)

    assert controller.status is SessionStatus.COMPLETED
    record = store.sessions[INSTANCE]
    assert controller.session_record == record
    assert record["status"] == "completed"
    assert record["session_definition_id"] == 7
    assert record["session_name"] == "Knee Rehab"
    assert record["cumulative_elapsed_seconds"] == pytest.approx(67.0)
    assert record["planned_duration_seconds"] == pytest.approx(67.0)
    assert [e["outcome"] for e in record["completed_exercises"]] == ["completed", "completed"]
    assert [e["actual_duration"] for e in record["completed_exercises"]] == [30.0, 21.0]
    assert INSTANCE not in store.checkpoints


def test_end_early_archives_incomplete(make_controller, fake_clock, store):
    controller = make_controller()
    controller.start(7, instance_id=INSTANCE)
    drive(controller, fake_clock, 47.0)
    assert controller.end_early()

    record = store.sessions[INSTANCE]
    assert record["status"] == "ended-early"
    assert [e["outcome"] for e in record["completed_exercises"]] == ["completed", "incomplete"]
    assert record["completed_exercises"][1]["actual_duration"] == 1.0
    assert INSTANCE not in store.checkpoints
    assert not controller.end_early()


def test_commands_without_session(make_controller):
    controller = make_controller()
    assert not controller.pause()
    assert not controller.resume()
    assert not controller.skip_forward()
    assert not controller.end_early()
    assert controller.tick() is None
    assert controller.status is SessionStatus.IDLE


def test_start_while_active_is_refused(make_controller):
    controller = make_controller()
    assert controller.start(7, instance_id=INSTANCE)
    assert not controller.start(7, instance_id="other")
    assert controller.session_id == INSTANCE


def test_unknown_definition_raises(make_controller):
    controller = make_controller()
    with pytest.raises(ConfigurationError):
        controller.start(999)


def test_default_instance_id(scenario_catalog):
    from datetime import date

    definition = scenario_catalog.get_session_definition(7)
    assert default_instance_id(definition, date(2026, 10, 18)) == "7-2026-10-18"


def _checkpointed_session(make_controller, fake_clock, seconds=50.0):
    first = make_controller()
    first.start(7, instance_id=INSTANCE)
    drive(first, fake_clock, seconds)
    first.pause()
    first.checkpointer.wait_idle()
    first.shutdown()
    return first


def test_resume_restores_paused_session(make_controller, fake_clock, store):
    _checkpointed_session(make_controller, fake_clock)
    assert store.load_checkpoint(INSTANCE).status is SessionStatus.PAUSED

    controller = make_controller()
    assert controller.resume_session(7, instance_id=INSTANCE) is ResumeResult.RESUMED
    assert controller.status is SessionStatus.PAUSED
    snap = controller.snapshot()
    assert snap.phase_index == 6
    assert snap.phase_elapsed == pytest.approx(1.0)

    assert controller.resume()
    drive_to_end(controller, fake_clock)
    record = store.sessions[INSTANCE]
    assert record["status"] == "completed"
    assert [e["actual_duration"] for e in record["completed_exercises"]] == [30.0, 21.0]
    assert record["cumulative_elapsed_seconds"] == pytest.approx(67.0)


def test_resume_continues_sequence_numbers(make_controller, fake_clock, store):
    _checkpointed_session(make_controller, fake_clock)
    stored = store.load_checkpoint(INSTANCE).sequence

    controller = make_controller()
    controller.resume_session(7, instance_id=INSTANCE)
    controller.resume()
    controller.checkpointer.wait_idle()
    assert store.load_checkpoint(INSTANCE).sequence > stored


def test_resume_with_changed_plan_is_stale(make_controller, fake_clock, store):
    _checkpointed_session(make_controller, fake_clock)

    controller = make_controller(PlayerSettings(start_countdown_duration=5.0))
    assert controller.resume_session(7, instance_id=INSTANCE) is ResumeResult.STALE
    assert store.load_checkpoint(INSTANCE) is None
    assert controller.status is SessionStatus.IDLE


def test_resume_without_checkpoint(make_controller):
    controller = make_controller()
    assert controller.resume_session(7, instance_id=INSTANCE) is ResumeResult.NONE


def test_resume_of_finished_checkpoint_archives_it(make_controller, fake_clock, store):
    first = make_controller()
    first.start(7, instance_id=INSTANCE)
    drive(first, fake_clock, 47.0)
    first.sequencer.end_early()
    first.checkpointer.wait_idle()
    first.checkpointer.checkpoint_now(first.snapshot())
    first.shutdown()
    assert INSTANCE not in store.sessions

    controller = make_controller()
    assert controller.resume_session(7, instance_id=INSTANCE) is ResumeResult.FINISHED
    assert store.sessions[INSTANCE]["status"] == "ended-early"
    assert INSTANCE not in store.checkpoints


def test_hidden_app_auto_pauses(make_controller, fake_clock):
    controller = make_controller()
    controller.start(7, instance_id=INSTANCE)
    drive(controller, fake_clock, 1.0)

    controller.on_visibility_changed(False)
    assert controller.status is SessionStatus.PAUSED
    assert not controller.platform.held

    controller.on_visibility_changed(True)
    assert controller.status is SessionStatus.PAUSED


def test_visible_app_auto_resumes_when_enabled(make_controller, fake_clock):
    controller = make_controller(PlayerSettings(start_countdown_duration=3.0, auto_resume_on_visible=True))
    controller.start(7, instance_id=INSTANCE)
    drive(controller, fake_clock, 1.0)

    controller.on_visibility_changed(False)
    controller.on_visibility_changed(True)
    assert controller.status is SessionStatus.RUNNING
    assert controller.platform.held


def test_manual_pause_is_not_auto_resumed(make_controller, fake_clock):
    controller = make_controller(PlayerSettings(start_countdown_duration=3.0, auto_resume_on_visible=True))
    controller.start(7, instance_id=INSTANCE)
    controller.pause()

    controller.on_visibility_changed(False)
    controller.on_visibility_changed(True)
    assert controller.status is SessionStatus.PAUSED


def test_archive_failure_emits_error(make_controller, fake_clock):
    from ptcadence.session.errors import PersistenceWriteError

    class BrokenArchive(MemoryCheckpointStore):
        def finalize_session(self, session_id, record):
            raise PersistenceWriteError("read-only filesystem")

    emitter = SessionEventEmitter()
    errors = []
    emitter.subscribe(SessionEventType.ERROR, errors.append)

    controller = make_controller(store=BrokenArchive(), emitter=emitter)
    controller.start(7, instance_id=INSTANCE)
    drive(controller, fake_clock, 5.0)
    assert controller.end_early()

    assert controller.session_record is None
    assert len(errors) == 1
    assert "read-only" in errors[0].data["error"]


def test_completion_leaves_finished_checkpoint_when_archive_fails(make_controller, fake_clock):
    from ptcadence.session.errors import PersistenceWriteError

    class FlakyArchive(MemoryCheckpointStore):
        broken = True

        def finalize_session(self, session_id, record):
            if self.broken:
                raise PersistenceWriteError("read-only filesystem")
            super().finalize_session(session_id, record)

    store = FlakyArchive()
    controller = make_controller(store=store)
    controller.start(7, instance_id=INSTANCE)
    drive_to_end(controller, fake_clock)

    assert controller.session_record is None
    assert store.load_checkpoint(INSTANCE).status is SessionStatus.COMPLETED

    store.broken = False
    again = make_controller(store=store)
    assert again.resume_session(7, instance_id=INSTANCE) is ResumeResult.FINISHED
    assert store.sessions[INSTANCE]["status"] == "completed"
    assert INSTANCE not in store.checkpoints


def _quick_catalog():
    return MemoryCatalogStore(
        [Exercise(id=1, name="Quick Hold", type=ExerciseType.DURATION, default_duration=0.05)],
        [SessionDefinition(id=1, name="Smoke", exercises=[SessionExercise(exercise_id=1)])],
    )


def _quick_controller(store):
    return SessionLifecycleController(
        _quick_catalog(),
        store,
        settings_provider=StaticSettingsProvider(PlayerSettings(start_countdown_duration=0.0)),
        synthesizer=ToneSynthesizer(NullOutput()),
    )


@pytest.mark.asyncio
async def test_async_ticker_runs_session_to_completion(tmp_path):
    store = MemoryCheckpointStore()
    controller = _quick_controller(store)
    seen = []
    try:
        controller.start(1, instance_id="smoke")
        ticker = AsyncTicker(controller, interval=0.01, on_tick=seen.append)
        snapshot = await asyncio.wait_for(ticker.run(), timeout=5.0)
    finally:
        controller.shutdown()

    assert snapshot.status is SessionStatus.COMPLETED
    assert ticker.ticks >= 2
    assert len(seen) == ticker.ticks
    assert store.sessions["smoke"]["status"] == "completed"


@pytest.mark.asyncio
async def test_async_ticker_stop(make_controller):
    controller = make_controller()
    controller.start(7, instance_id=INSTANCE)
    ticker = AsyncTicker(controller, interval=0.01)

    async def stop_soon():
        await asyncio.sleep(0.05)
        ticker.stop()

    await asyncio.gather(ticker.run(), stop_soon())
    assert not controller.is_finished()
    assert ticker.ticks >= 1


@pytest.mark.asyncio
async def test_async_ticker_archives_off_the_event_loop():
    class SlowArchive(MemoryCheckpointStore):
        def __init__(self):
            super().__init__()
            self.release = threading.Event()
            self.released_in_time = None

        def finalize_session(self, session_id, record):
            # Only another coroutine can set the event
            self.released_in_time = self.release.wait(2.0)
            super().finalize_session(session_id, record)

    store = SlowArchive()
    controller = _quick_controller(store)
    ticker = AsyncTicker(controller, interval=0.01)

    async def release_when_finished():
        while not controller.is_finished():
            await asyncio.sleep(0.005)
        store.release.set()

    try:
        controller.start(1, instance_id="smoke")
        await asyncio.wait_for(asyncio.gather(ticker.run(), release_when_finished()), timeout=5.0)
    finally:
        controller.shutdown()

    assert store.released_in_time is True
    assert store.sessions["smoke"]["status"] == "completed"
    assert controller.defer_finalize is False
