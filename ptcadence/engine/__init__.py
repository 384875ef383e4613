"""Engine module for ptcadence: tones, audio output and haptics."""

from .output import AudioOutput, NullOutput, PygameOutput
from .tone import Envelope, ToneSynthesizer, normalize_volume
from .haptics import CallbackHaptics, HapticSink, NullHaptics

__all__ = [
    'AudioOutput', 'NullOutput', 'PygameOutput',
    'Envelope', 'ToneSynthesizer', 'normalize_volume',
    'CallbackHaptics', 'HapticSink', 'NullHaptics',
]
