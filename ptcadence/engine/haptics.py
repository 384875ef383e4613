"""Haptic feedback sinks.

The host platform owns the actual vibration motor; the engine only asks for
pulses of a given length.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable

_log = logging.getLogger(__name__)


def clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


class HapticSink(ABC):
    """Receives vibration requests."""

    @abstractmethod
    def vibrate(self, duration_ms: int) -> None:
        """Vibrate for *duration_ms* milliseconds (non-blocking)."""


class NullHaptics(HapticSink):
    """No motor available; requests are dropped."""

    def vibrate(self, duration_ms: int) -> None:
        return None


class CallbackHaptics(HapticSink):
    """Forwards pulses to a host callback (e.g. a platform bridge)."""

    MAX_PULSE_MS = 1000

    def __init__(self, callback: Callable[[int], object]) -> None:
        self._callback = callback

    def vibrate(self, duration_ms: int) -> None:
        ms = int(clamp(duration_ms, 1, self.MAX_PULSE_MS))
        _log.debug("[haptics] pulse %d ms", ms)
        self._callback(ms)
