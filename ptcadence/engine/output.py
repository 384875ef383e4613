"""Audio output backends for synthesized cue tones.

``PygameOutput`` plays int16 PCM buffers through ``pygame.mixer``; each
buffer becomes its own ``Sound`` on its own channel so overlapping tones
never cut each other off. ``NullOutput`` discards audio for headless runs.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from threading import Lock

import numpy as np

try:
    import pygame
except Exception:  # pragma: no cover - pygame may be unavailable in headless docs builds
    pygame = None  # type: ignore

_log = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 44100
DEFAULT_CHANNELS = 2
MIXER_CHANNELS = 16


class AudioOutput(ABC):
    """Sink for rendered PCM buffers."""

    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = DEFAULT_CHANNELS

    @abstractmethod
    def write(self, pcm: np.ndarray) -> None:
        """Start playing *pcm* (int16, shape ``(n, channels)``) immediately.

        Raises:
            AudioUnavailableError: If the buffer cannot be played
        """

    def close(self) -> None:
        """Release the output device (optional)."""


class NullOutput(AudioOutput):
    """Swallows audio. Used with ``--mute`` and when no device exists."""

    def __init__(self, sample_rate: int = DEFAULT_SAMPLE_RATE, channels: int = DEFAULT_CHANNELS) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.frames_written = 0

    def write(self, pcm: np.ndarray) -> None:
        self.frames_written += int(pcm.shape[0])


class PygameOutput(AudioOutput):
    """
    pygame mixer backed output.

    The mixer is initialized lazily on the first write so constructing the
    engine never touches the audio device. A failed init is remembered and
    every later write raises :class:`AudioUnavailableError` without retrying.
    """

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        buffer_size: int = 512,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.buffer_size = buffer_size
        self._lock = Lock()
        self._init_ok: bool | None = None
        self._init_error: str | None = None

    def _ensure_mixer(self) -> None:
        from ..session.errors import AudioUnavailableError

        with self._lock:
            if self._init_ok is None:
                self._init_ok = self._init_mixer()
        if not self._init_ok:
            raise AudioUnavailableError(f"audio output unavailable: {self._init_error}")

    def _init_mixer(self) -> bool:
        if pygame is None:
            self._init_error = "pygame not installed"
            _log.warning("[audio] pygame not available; cues will be silent")
            return False
        try:
            if not pygame.mixer.get_init():
                pygame.mixer.pre_init(self.sample_rate, -16, self.channels, self.buffer_size)
                pygame.mixer.init()
            pygame.mixer.set_num_channels(MIXER_CHANNELS)
            init = pygame.mixer.get_init()
            if init:
                # Mixer may already have been opened with a different layout.
                self.sample_rate, _fmt, self.channels = int(init[0]), init[1], int(init[2])
            _log.info("[audio] pygame mixer initialized (%d Hz, %d ch)", self.sample_rate, self.channels)
            return True
        except Exception as exc:  # pragma: no cover - depends on host audio stack
            self._init_error = str(exc)
            _log.error("[audio] mixer init failed: %s", exc)
            return False

    def prepare(self) -> None:
        """Open the mixer now instead of on the first cue."""
        self._ensure_mixer()

    def write(self, pcm: np.ndarray) -> None:
        from ..session.errors import AudioUnavailableError

        self._ensure_mixer()
        try:
            sound = pygame.sndarray.make_sound(np.ascontiguousarray(pcm))
            channel = sound.play()
            if channel is None:
                # All channels busy: steal the oldest rather than drop the cue.
                channel = pygame.mixer.find_channel(True)
                if channel is None:
                    raise AudioUnavailableError("no free mixer channel")
                channel.play(sound)
        except AudioUnavailableError:
            raise
        except Exception as exc:
            raise AudioUnavailableError(f"tone playback failed: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._init_ok and pygame is not None:
                try:
                    pygame.mixer.quit()
                except Exception as exc:
                    _log.debug("[audio] mixer quit failed: %s", exc)
            self._init_ok = None
