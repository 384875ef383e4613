"""Error taxonomy for session playback.

Only :class:`ConfigurationError` is fatal (a malformed session never starts).
Everything else is recovered locally by the component that hit it.
"""

from __future__ import annotations


class PlaybackError(RuntimeError):
    """Base class for all playback engine errors."""


class ConfigurationError(PlaybackError, ValueError):
    """Empty or invalid plan/definition; raised before the session runs."""


class AudioUnavailableError(PlaybackError):
    """A cue could not be produced (mixer missing, device busy, ...)."""


class PersistenceWriteError(PlaybackError):
    """A checkpoint or session record could not be written."""


class StaleResumeState(PlaybackError):
    """Persisted checkpoint no longer matches the session's phase plan."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id
