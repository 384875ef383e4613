"""ptcadence - guided physical-therapy session playback engine.

The package is split into:

- ``ptcadence.engine``: tone synthesis, audio output and haptic sinks
- ``ptcadence.session``: plan building, clock, sequencer, cues, checkpoints
  and the lifecycle controller the UI talks to
"""

__version__ = "0.3.0"
