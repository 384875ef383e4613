from __future__ import annotations

import logging
from enum import Enum
from functools import lru_cache
from typing import Optional

import numpy as np

from .output import AudioOutput, NullOutput

_log = logging.getLogger(__name__)

ATTACK_S = 0.015
RELEASE_S = 0.030
CHIME_ATTACK_S = 0.02
CHIME_FLOOR = 0.001


class Envelope(str, Enum):
    """Amplitude shape applied to a tone."""
    LINEAR = "linear"  # 15ms attack, hold, 30ms release
    CHIME = "chime"    # fast attack, exponential decay (gong / wind chime)


def normalize_volume(value: float) -> float:
    """Clamp and normalize arbitrary numeric volume inputs to 0..1."""
    try:
        return max(0.0, min(1.0, float(value)))
    except Exception:
        return 0.0


def envelope_curve(n: int, sample_rate: int, envelope: Envelope = Envelope.LINEAR) -> np.ndarray:
    """Return a 0..1 gain curve of *n* samples.

    The linear envelope ramps silence -> 1 over ``ATTACK_S`` and 1 -> silence
    over ``RELEASE_S``. Tones shorter than attack + release scale both ramps
    down proportionally so the curve still starts and ends at zero.
    """
    if n <= 0:
        return np.zeros(0, dtype=np.float64)

    if envelope is Envelope.CHIME:
        attack_n = max(1, min(n - 1, int(round(CHIME_ATTACK_S * sample_rate))))
        attack = np.linspace(0.0, 1.0, attack_n, endpoint=False, dtype=np.float64)
        decay = np.geomspace(1.0, CHIME_FLOOR, n - attack_n, dtype=np.float64)
        curve = np.concatenate([attack, decay])
        curve[-1] = 0.0
        return curve

    attack_n = int(round(ATTACK_S * sample_rate))
    release_n = int(round(RELEASE_S * sample_rate))
    if attack_n + release_n > n:
        scale = n / float(attack_n + release_n)
        attack_n = int(attack_n * scale)
        release_n = n - attack_n

    curve = np.ones(n, dtype=np.float64)
    if attack_n > 0:
        curve[:attack_n] = np.linspace(0.0, 1.0, attack_n, endpoint=False)
    if release_n > 0:
        curve[n - release_n:] = np.linspace(1.0, 0.0, release_n)
    return curve


@lru_cache(maxsize=64)
def _render_cached(
    frequency_hz: float,
    duration_s: float,
    volume: float,
    sample_rate: int,
    channels: int,
    envelope: Envelope,
) -> np.ndarray:
    n = int(round(duration_s * sample_rate))
    t = np.arange(n, dtype=np.float64) / float(sample_rate)
    mono = np.sin(2.0 * np.pi * frequency_hz * t) * envelope_curve(n, sample_rate, envelope) * volume
    frames = np.repeat(mono[:, None], channels, axis=1)
    pcm = np.clip(frames * 32767.0, -32768.0, 32767.0).astype(np.int16)
    # Shared between callers through the cache.
    pcm.setflags(write=False)
    return pcm


class ToneSynthesizer:
    """
    Generates short envelope-shaped sine tones on demand.

    Every :meth:`play` call renders its own buffer and hands it to the output,
    which plays it on an independent channel. Nothing about a call is kept
    once the buffer is handed off; the only shared state is a bounded cache
    of rendered buffers.

    Usage:
        synth = ToneSynthesizer(PygameOutput())
        synth.play(880.0, 0.2, 0.7)                       # start tone
        synth.play(523.25, 2.0, 0.7, envelope=Envelope.CHIME)
    """

    def __init__(self, output: Optional[AudioOutput] = None) -> None:
        self.output = output or NullOutput()

    @property
    def sample_rate(self) -> int:
        return int(self.output.sample_rate)

    def render(
        self,
        frequency_hz: float,
        duration_seconds: float,
        volume: float,
        *,
        delay_seconds: float = 0.0,
        envelope: Envelope = Envelope.LINEAR,
    ) -> np.ndarray:
        """Render a tone to int16 PCM shaped ``(n, channels)``.

        Args:
            frequency_hz: Tone pitch
            duration_seconds: Audible length (excluding delay)
            volume: Peak gain 0.0-1.0 reached after the attack ramp
            delay_seconds: Leading silence so the tone starts at an offset
                relative to the moment the buffer starts playing
            envelope: Amplitude shape

        Raises:
            ValueError: On non-positive frequency or duration
        """
        if frequency_hz <= 0:
            raise ValueError(f"frequency_hz must be positive, got {frequency_hz}")
        if duration_seconds <= 0:
            raise ValueError(f"duration_seconds must be positive, got {duration_seconds}")

        pcm = _render_cached(
            float(frequency_hz),
            float(duration_seconds),
            round(normalize_volume(volume), 4),
            self.sample_rate,
            int(self.output.channels),
            Envelope(envelope),
        )
        pad = int(round(max(0.0, delay_seconds) * self.sample_rate))
        if pad:
            silence = np.zeros((pad, pcm.shape[1]), dtype=np.int16)
            return np.concatenate([silence, pcm])
        return pcm

    def play(
        self,
        frequency_hz: float,
        duration_seconds: float,
        volume: float,
        *,
        delay_seconds: float = 0.0,
        envelope: Envelope = Envelope.LINEAR,
    ) -> None:
        """Render and start a tone. Errors from the output propagate.

        Raises:
            AudioUnavailableError: If the output cannot play the buffer
        """
        pcm = self.render(
            frequency_hz,
            duration_seconds,
            volume,
            delay_seconds=delay_seconds,
            envelope=envelope,
        )
        _log.debug(
            "[tone] %.2f Hz %.0f ms vol=%.2f delay=%.0f ms",
            frequency_hz,
            duration_seconds * 1000.0,
            volume,
            delay_seconds * 1000.0,
        )
        self.output.write(pcm)
