"""Tests for the phase sequencer state machine."""

import pytest

from ptcadence.session.checkpoint import CheckpointRecord, reconcile
from ptcadence.session.cues import CueName
from ptcadence.session.events import SessionEventEmitter, SessionEventType
from ptcadence.session.plan import PhaseType
from ptcadence.session.state import ExerciseOutcome, SessionStatus
from ptcadence.settings import PlayerSettings

from .conftest import RecordingDispatcher, run_for, run_to_end

# Quarter-second ticks keep the fake clock exact in binary floating point
STEP = 0.25


def _outcomes(seq):
    return [(e.exercise_index, e.outcome, e.actual_duration) for e in seq.snapshot().completed_exercise_log]


def test_full_replay_completes(make_sequencer, fake_clock, settings):
    dispatcher = RecordingDispatcher(settings)
    seq = make_sequencer(dispatcher=dispatcher)
    assert seq.start()
    run_to_end(seq, fake_clock, STEP)

    assert seq.status is SessionStatus.COMPLETED
    snap = seq.snapshot()
    assert snap.phase.type is PhaseType.COMPLETE
    assert snap.session_elapsed == pytest.approx(67.0)
    assert _outcomes(seq) == [
        (0, ExerciseOutcome.COMPLETED, pytest.approx(30.0)),
        (1, ExerciseOutcome.COMPLETED, pytest.approx(21.0)),
    ]
    assert dispatcher.count(CueName.SESSION_COMPLETE) == 1


def test_phase_order_is_plan_order(make_sequencer, fake_clock):
    emitter = SessionEventEmitter()
    entered = []
    emitter.subscribe(SessionEventType.PHASE_START, lambda e: entered.append(e.data["phase_index"]))
    ended = []
    emitter.subscribe(SessionEventType.SESSION_END, ended.append)

    seq = make_sequencer(emitter=emitter)
    seq.start()
    run_to_end(seq, fake_clock, STEP)

    assert entered == list(range(15))
    assert len(ended) == 1
    assert ended[0].data["session_id"] == "test-session"


def test_cue_counts_with_defaults(make_sequencer, fake_clock, settings):
    dispatcher = RecordingDispatcher(settings)
    seq = make_sequencer(dispatcher=dispatcher)
    seq.start()
    run_to_end(seq, fake_clock, STEP)

    c = dispatcher.count
    assert [c(CueName.COUNTDOWN_3), c(CueName.COUNTDOWN_2), c(CueName.COUNTDOWN_1)] == [2, 2, 2]
    assert [c(CueName.ENDING_3), c(CueName.ENDING_2), c(CueName.ENDING_1)] == [1, 1, 1]
    assert c(CueName.EXERCISE_START) == 1
    assert c(CueName.EXERCISE_END) == 1
    assert c(CueName.REP_START) == 6
    assert c(CueName.REP_END) == 6
    assert c(CueName.REST_TONE) == 2
    assert c(CueName.REST_END) == 2
    assert c(CueName.WARNING) == 2
    assert c(CueName.REP_COMPLETE) == 0
    assert c(CueName.TICK) == 0
    assert c(CueName.SWITCH_SIDES) == 0


def test_disabled_cues_are_never_dispatched(make_sequencer, fake_clock):
    settings = PlayerSettings(
        start_countdown_duration=3.0,
        continuous_tick_enabled=False,
        per_set_tone_enabled=False,
    )
    dispatcher = RecordingDispatcher(settings)
    seq = make_sequencer(dispatcher=dispatcher, settings=settings)
    seq.start()
    run_to_end(seq, fake_clock, STEP)

    assert dispatcher.count(CueName.TICK) == 0
    assert dispatcher.count(CueName.REST_TONE) == 0
    assert dispatcher.count(CueName.REST_END) == 0


def test_continuous_tick_once_per_whole_second(make_sequencer, fake_clock):
    settings = PlayerSettings(start_countdown_duration=3.0, continuous_tick_enabled=True)
    dispatcher = RecordingDispatcher(settings)
    seq = make_sequencer(dispatcher=dispatcher, settings=settings)
    seq.start()
    run_to_end(seq, fake_clock, STEP)
    # 29 inside the 30 s hold, one inside each 2 s rep
    assert dispatcher.count(CueName.TICK) == 29 + 6


def test_settings_change_mid_session(make_sequencer, fake_clock, settings):
    dispatcher = RecordingDispatcher(settings)
    seq = make_sequencer(dispatcher=dispatcher)
    seq.start()
    run_for(seq, fake_clock, 5.0, STEP)
    seq.update_settings(PlayerSettings(start_countdown_duration=3.0, continuous_tick_enabled=True))
    run_for(seq, fake_clock, 3.0, STEP)
    assert dispatcher.count(CueName.TICK) == 3


def test_late_tick_fires_only_latest_countdown(make_sequencer, fake_clock, settings):
    dispatcher = RecordingDispatcher(settings)
    seq = make_sequencer(dispatcher=dispatcher)
    seq.start()
    assert dispatcher.dispatched == [CueName.COUNTDOWN_3]

    fake_clock.advance(2.5)
    seq.tick()
    assert dispatcher.dispatched == [CueName.COUNTDOWN_3, CueName.COUNTDOWN_1]


def test_late_tick_advances_one_phase(make_sequencer, fake_clock):
    seq = make_sequencer()
    seq.start()

    fake_clock.advance(100.0)
    snap = seq.tick()
    assert snap.phase_index == 1
    assert snap.phase_remaining == pytest.approx(30.0)

    fake_clock.advance(100.0)
    snap = seq.tick()
    assert snap.phase_index == 2
    assert snap.phase_remaining == pytest.approx(10.0)
    assert _outcomes(seq) == [(0, ExerciseOutcome.COMPLETED, pytest.approx(30.0))]


def test_pause_freezes_remaining(make_sequencer, fake_clock):
    seq = make_sequencer()
    seq.start()
    run_for(seq, fake_clock, 5.0, STEP)
    assert seq.pause()
    before = seq.snapshot()
    assert before.phase_index == 1
    assert before.phase_remaining == pytest.approx(28.0)

    fake_clock.advance(600.0)
    assert seq.tick() is None
    assert seq.snapshot().phase_remaining == pytest.approx(28.0)

    assert seq.resume()
    run_for(seq, fake_clock, 1.0, STEP)
    assert seq.snapshot().phase_remaining == pytest.approx(27.0)


def test_invalid_commands_return_false(make_sequencer, fake_clock):
    seq = make_sequencer()
    assert not seq.pause()
    assert not seq.resume()
    assert not seq.skip_forward()
    assert not seq.end_early()

    seq.start()
    assert not seq.start()
    assert not seq.resume()

    run_to_end(seq, fake_clock, STEP)
    assert not seq.pause()
    assert not seq.skip_forward()
    assert not seq.skip_backward()
    assert not seq.end_early()


def test_skip_forward_logs_skipped(make_sequencer, fake_clock):
    seq = make_sequencer()
    seq.start()
    run_for(seq, fake_clock, 5.0, STEP)
    assert seq.skip_forward()

    snap = seq.snapshot()
    assert snap.phase_index == 3
    assert snap.phase.type is PhaseType.LEAD_IN
    assert _outcomes(seq) == [(0, ExerciseOutcome.SKIPPED, pytest.approx(2.0))]


def test_skip_forward_after_completion_keeps_log(make_sequencer, fake_clock):
    seq = make_sequencer()
    seq.start()
    run_for(seq, fake_clock, 35.0, STEP)
    assert seq.snapshot().phase.type is PhaseType.EXERCISE_REST

    assert seq.skip_forward()
    assert seq.snapshot().phase_index == 3
    assert _outcomes(seq) == [(0, ExerciseOutcome.COMPLETED, pytest.approx(30.0))]


def test_skip_forward_from_last_exercise_completes(make_sequencer, fake_clock):
    seq = make_sequencer()
    seq.start()
    run_for(seq, fake_clock, 47.0, STEP)
    assert seq.skip_forward()
    assert seq.status is SessionStatus.COMPLETED
    assert [o[1] for o in _outcomes(seq)] == [ExerciseOutcome.COMPLETED, ExerciseOutcome.SKIPPED]


def test_skip_while_paused_stays_paused_and_silent(make_sequencer, fake_clock, settings):
    dispatcher = RecordingDispatcher(settings)
    seq = make_sequencer(dispatcher=dispatcher)
    seq.start()
    run_for(seq, fake_clock, 5.0, STEP)
    seq.pause()
    fired = len(dispatcher.dispatched)

    assert seq.skip_forward()
    assert seq.status is SessionStatus.PAUSED
    assert seq.snapshot().phase_index == 3
    assert len(dispatcher.dispatched) == fired

    fake_clock.advance(30.0)
    assert seq.snapshot().phase_remaining == pytest.approx(3.0)


def test_skip_back_within_grace_goes_to_previous_exercise(make_sequencer, fake_clock):
    seq = make_sequencer()
    seq.start()
    run_for(seq, fake_clock, 5.0, STEP)
    seq.skip_forward()
    run_for(seq, fake_clock, 0.5, STEP)

    assert seq.skip_backward()
    snap = seq.snapshot()
    assert snap.phase_index == 0
    assert 0 not in snap.concluded

    run_to_end(seq, fake_clock, STEP)
    # The earlier SKIPPED entry is replaced by the new attempt
    assert _outcomes(seq) == [
        (0, ExerciseOutcome.COMPLETED, pytest.approx(30.0)),
        (1, ExerciseOutcome.COMPLETED, pytest.approx(21.0)),
    ]


def test_skip_back_beyond_grace_restarts_exercise(make_sequencer, fake_clock):
    seq = make_sequencer()
    seq.start()
    run_for(seq, fake_clock, 47.0, STEP)
    assert seq.snapshot().phase_index == 4

    assert seq.skip_backward()
    snap = seq.snapshot()
    assert snap.phase_index == 3
    assert dict(snap.exercise_seconds)[1] == 0.0

    run_to_end(seq, fake_clock, STEP)
    assert _outcomes(seq)[1] == (1, ExerciseOutcome.COMPLETED, pytest.approx(21.0))


def test_skip_back_on_first_exercise_restarts_it(make_sequencer, fake_clock):
    seq = make_sequencer()
    seq.start()
    run_for(seq, fake_clock, 1.0, STEP)
    assert seq.skip_backward()
    assert seq.snapshot().phase_index == 0
    assert seq.snapshot().phase_remaining == pytest.approx(3.0)


def test_end_early_logs_incomplete(make_sequencer, fake_clock):
    emitter = SessionEventEmitter()
    stops = []
    emitter.subscribe(SessionEventType.SESSION_STOP, stops.append)

    seq = make_sequencer(emitter=emitter)
    seq.start()
    run_for(seq, fake_clock, 47.0, STEP)
    assert seq.end_early()

    assert seq.status is SessionStatus.ABORTED
    assert _outcomes(seq) == [
        (0, ExerciseOutcome.COMPLETED, pytest.approx(30.0)),
        (1, ExerciseOutcome.INCOMPLETE, pytest.approx(1.0)),
    ]
    assert len(stops) == 1
    assert stops[0].data["snapshot"].status is SessionStatus.ABORTED
    assert seq.tick() is None


def test_restore_continues_from_checkpoint(make_sequencer, fake_clock, scenario_plan):
    first = make_sequencer()
    first.start()
    run_for(first, fake_clock, 50.0, STEP)
    snap = first.snapshot()
    assert snap.phase_index == 6

    record = CheckpointRecord.from_snapshot(snap, sequence=4, saved_at=2000.0)
    position = reconcile(record, scenario_plan, now=2000.0)

    second = make_sequencer(session_id=snap.session_id)
    assert second.restore(position)
    assert second.status is SessionStatus.PAUSED
    restored = second.snapshot()
    assert restored.phase_index == 6
    assert restored.phase_elapsed == pytest.approx(1.0)

    assert second.resume()
    run_to_end(second, fake_clock, STEP)
    assert _outcomes(second) == [
        (0, ExerciseOutcome.COMPLETED, pytest.approx(30.0)),
        (1, ExerciseOutcome.COMPLETED, pytest.approx(21.0)),
    ]
    assert second.snapshot().session_elapsed == pytest.approx(67.0)
