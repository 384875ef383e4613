"""Cue table and dispatcher.

A cue is a named event ("countdown-3", "rest-tone", "warning", ...) that
maps to zero or more tones plus an optional haptic pattern. Every tone and
pulse of a cue carries an offset relative to one reference time, taken when
:meth:`CueDispatcher.dispatch` is called.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from ..engine.haptics import HapticSink, NullHaptics
from ..engine.tone import Envelope, ToneSynthesizer
from ..logging_utils import BurstSampler
from ..settings import PlayerSettings
from .events import SessionEvent, SessionEventEmitter, SessionEventType


class CueName(str, Enum):
    COUNTDOWN_3 = "countdown-3"
    COUNTDOWN_2 = "countdown-2"
    COUNTDOWN_1 = "countdown-1"
    EXERCISE_START = "exercise-start"
    EXERCISE_END = "exercise-end"
    REP_START = "rep-start"
    REP_END = "rep-end"
    ENDING_3 = "ending-3"
    ENDING_2 = "ending-2"
    ENDING_1 = "ending-1"
    REP_COMPLETE = "rep-complete"
    REST_TONE = "rest-tone"
    REST_END = "rest-end"
    WARNING = "warning"
    TICK = "tick"
    SWITCH_SIDES = "switch-sides"
    SESSION_COMPLETE = "session-complete"


@dataclass(frozen=True)
class ToneSpec:
    """One tone of a cue. ``gain`` is relative to the master volume."""
    frequency_hz: float
    duration_seconds: float
    offset_seconds: float = 0.0
    gain: float = 1.0
    envelope: Envelope = Envelope.LINEAR


@dataclass(frozen=True)
class CueSpec:
    """
    Tones and haptic pulses making up a cue.

    Attributes:
        tones: Tones, each with an offset from the dispatch reference
        haptics: ``(offset_seconds, duration_ms)`` pulses
        gate: Name of the ``PlayerSettings`` flag that enables the cue
            (None = always on, subject only to ``sound_enabled``)
    """
    tones: tuple[ToneSpec, ...]
    haptics: tuple[tuple[float, int], ...] = ()
    gate: Optional[str] = None


def _single(freq: float, dur: float, haptic_ms: int, gate: Optional[str] = None, gain: float = 1.0) -> CueSpec:
    return CueSpec(tones=(ToneSpec(freq, dur, gain=gain),), haptics=((0.0, haptic_ms),), gate=gate)


DEFAULT_CUE_TABLE: Mapping[CueName, CueSpec] = MappingProxyType({
    # Rising lead-in, last one louder and longer to mark "go"
    CueName.COUNTDOWN_3: _single(500.0, 0.18, 40, "lead_in_enabled", gain=0.85),
    CueName.COUNTDOWN_2: _single(650.0, 0.18, 40, "lead_in_enabled", gain=0.85),
    CueName.COUNTDOWN_1: _single(800.0, 0.22, 40, "lead_in_enabled"),
    CueName.EXERCISE_START: _single(880.0, 0.20, 50),
    CueName.EXERCISE_END: _single(440.0, 0.20, 50),
    CueName.REP_START: _single(1046.50, 0.12, 30),
    CueName.REP_END: _single(698.46, 0.12, 30),
    # Descending and quieter, mirrors the lead-in
    CueName.ENDING_3: _single(800.0, 0.15, 25, "exercise_about_to_end_enabled", gain=0.3),
    CueName.ENDING_2: _single(650.0, 0.15, 30, "exercise_about_to_end_enabled", gain=0.5),
    CueName.ENDING_1: _single(500.0, 0.15, 40, "exercise_about_to_end_enabled", gain=0.7),
    CueName.REP_COMPLETE: _single(1000.0, 0.06, 25, "per_rep_tone_enabled"),
    CueName.REST_TONE: _single(350.0, 0.20, 50, "per_set_tone_enabled"),
    CueName.REST_END: _single(500.0, 0.20, 50, "per_set_tone_enabled"),
    CueName.WARNING: CueSpec(
        tones=(ToneSpec(900.0, 0.08, 0.0), ToneSpec(900.0, 0.08, 0.15)),
        haptics=((0.0, 20), (0.15, 20)),
        gate="warning_enabled",
    ),
    CueName.TICK: _single(750.0, 0.08, 20, "continuous_tick_enabled"),
    CueName.SWITCH_SIDES: CueSpec(
        tones=(ToneSpec(523.25, 2.0, envelope=Envelope.CHIME),),
        haptics=((0.0, 200), (0.3, 50)),
    ),
    CueName.SESSION_COMPLETE: CueSpec(
        tones=(
            ToneSpec(523.25, 0.15, 0.0),
            ToneSpec(659.25, 0.15, 0.15),
            ToneSpec(783.99, 0.15, 0.30),
        ),
        haptics=((0.0, 50), (0.15, 50), (0.30, 50)),
    ),
})

COUNTDOWN_CUES = {3: CueName.COUNTDOWN_3, 2: CueName.COUNTDOWN_2, 1: CueName.COUNTDOWN_1}
ENDING_CUES = {3: CueName.ENDING_3, 2: CueName.ENDING_2, 1: CueName.ENDING_1}


class CueDispatcher:
    """
    Fire-and-forget cue playback on background workers.

    ``dispatch()`` returns immediately. The worker computes each tone's
    remaining delay from the reference time captured at dispatch, so a
    worker that starts late shortens the leading silence instead of pushing
    the whole cue back. Haptic pulses run on a second worker against the same
    reference, so waiting out a pulse offset never holds back a later tone.
    Tone failures are logged and swallowed; the first one flips
    :attr:`audio_available` and emits ``AUDIO_UNAVAILABLE``.

    Usage:
        dispatcher = CueDispatcher(ToneSynthesizer(PygameOutput()), settings)
        if dispatcher.is_enabled(CueName.TICK):
            dispatcher.dispatch(CueName.TICK)
    """

    def __init__(
        self,
        synthesizer: ToneSynthesizer,
        settings: PlayerSettings,
        *,
        haptics: Optional[HapticSink] = None,
        emitter: Optional[SessionEventEmitter] = None,
        cue_table: Mapping[CueName, CueSpec] = DEFAULT_CUE_TABLE,
        time_provider: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        thread_name_prefix: str = "cue-dispatch",
    ) -> None:
        self.synthesizer = synthesizer
        self.haptics = haptics or NullHaptics()
        self.emitter = emitter
        self.cue_table = cue_table
        self._settings = settings
        self._now = time_provider
        self._sleep = sleep
        self._lock = Lock()
        self._pending: set[Future] = set()
        self._audio_available = True
        self._shutdown = False
        self._sampler = BurstSampler(10.0, time_provider=time_provider)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=thread_name_prefix)
        self._haptic_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{thread_name_prefix}-haptics")
        self.logger = logging.getLogger(__name__)

    @property
    def settings(self) -> PlayerSettings:
        return self._settings

    @property
    def audio_available(self) -> bool:
        return self._audio_available

    def update_settings(self, settings: PlayerSettings) -> None:
        """Swap the settings snapshot. Applies from the next dispatch on."""
        self._settings = settings

    def is_enabled(self, cue: CueName | str) -> bool:
        spec = self.cue_table.get(CueName(cue))
        if spec is None:
            return False
        settings = self._settings
        if not settings.sound_enabled:
            return False
        return spec.gate is None or bool(getattr(settings, spec.gate))

    def dispatch(self, cue: CueName | str, context: Optional[dict[str, Any]] = None) -> Optional[Future]:
        """Queue *cue* for playback. Returns the worker future, or None if dropped."""
        if self._shutdown:
            return None
        name = CueName(cue)
        spec = self.cue_table.get(name)
        if spec is None:
            self.logger.warning("[cues] No cue table entry for %s", name.value)
            return None

        reference = self._now()
        settings = self._settings
        future = self._executor.submit(self._play, name, spec, settings, reference)
        self._track(future)
        if settings.haptics_enabled and spec.haptics:
            self._track(self._haptic_executor.submit(self._pulse, name, spec, reference))

        if name is CueName.TICK:
            summary = self._sampler.record()
            if summary:
                self.logger.debug("[cues] %d ticks dispatched", summary)
        else:
            self.logger.debug("[cues] dispatch %s %s", name.value, context or "")
        return future

    def _play(self, name: CueName, spec: CueSpec, settings: PlayerSettings, reference: float) -> None:
        if self._audio_available:
            lag = max(0.0, self._now() - reference)
            for tone in spec.tones:
                try:
                    self.synthesizer.play(
                        tone.frequency_hz,
                        tone.duration_seconds,
                        settings.master_volume * tone.gain,
                        delay_seconds=max(0.0, tone.offset_seconds - lag),
                        envelope=tone.envelope,
                    )
                except Exception as exc:
                    self._mark_audio_unavailable(name, exc)
                    break

    def _pulse(self, name: CueName, spec: CueSpec, reference: float) -> None:
        for offset, duration_ms in sorted(spec.haptics):
            wait_s = reference + offset - self._now()
            if wait_s > 0:
                self._sleep(wait_s)
            try:
                self.haptics.vibrate(duration_ms)
            except Exception as exc:
                self.logger.warning("[cues] Haptic pulse failed for %s: %s", name.value, exc)
                break

    def _mark_audio_unavailable(self, name: CueName, exc: BaseException) -> None:
        with self._lock:
            first = self._audio_available
            self._audio_available = False
        if first:
            self.logger.error("[cues] Audio unavailable (%s): %s - continuing silently", name.value, exc)
            if self.emitter:
                self.emitter.emit(SessionEvent(
                    SessionEventType.AUDIO_UNAVAILABLE,
                    data={"cue": name.value, "error": str(exc)},
                ))

    def _track(self, future: Future) -> None:
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error("[cues] Cue worker failed: %s", exc)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def wait_idle(self, timeout: float = 2.0) -> bool:
        """Block until queued cues have been handed to the output."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait: bool = False) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        self._haptic_executor.shutdown(wait=wait, cancel_futures=not wait)
