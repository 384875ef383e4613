"""Session event system for broadcasting playback state changes.

Provides event types, event data structures, and event emitter for decoupled
communication between the sequencer/controller and UI/logging consumers.

Usage:
    emitter = SessionEventEmitter()
    emitter.subscribe(SessionEventType.PHASE_START, lambda evt: print(evt.data["phase"]))
    emitter.emit(SessionEvent(SessionEventType.PHASE_START, data={"phase": "lead-in"}))
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Optional


class SessionEventType(Enum):
    """Types of events that can occur during playback."""

    # Session lifecycle
    SESSION_START = auto()     # Session started (fresh or resumed)
    SESSION_END = auto()       # Session reached the complete phase
    SESSION_PAUSE = auto()
    SESSION_RESUME = auto()
    SESSION_STOP = auto()      # Ended early by the user

    # Phase lifecycle
    PHASE_START = auto()
    PHASE_END = auto()
    PHASE_PROGRESS = auto()    # Per tick, carries the snapshot for rendering

    EXERCISE_LOGGED = auto()   # Log entry written/overwritten for an exercise

    # Degraded modes (non-blocking UI indicators)
    AUDIO_UNAVAILABLE = auto()
    CHECKPOINT_FAILED = auto()

    ERROR = auto()


@dataclass
class SessionEvent:
    """Represents a session event with optional payload data.

    Attributes:
        event_type: Type of event that occurred
        data: Optional dictionary with event-specific data
        timestamp: Wall-clock time (set by emitter if missing)
    """
    event_type: SessionEventType
    data: Optional[dict[str, Any]] = None
    timestamp: Optional[float] = None

    def __str__(self) -> str:
        if self.data:
            data_str = ", ".join(f"{k}={v}" for k, v in self.data.items() if k != "snapshot")
            return f"SessionEvent({self.event_type.name}, {data_str})"
        return f"SessionEvent({self.event_type.name})"


class SessionEventEmitter:
    """Event bus for playback state changes.

    Subscribers are called synchronously on the emitting thread. Background
    workers (audio, checkpoint writes) also emit through here, so the
    subscriber table is guarded by a lock and each emit iterates over a copy.
    A failing callback is logged and never stops delivery to the others.
    """

    def __init__(self):
        self._subscribers: dict[SessionEventType, list[Callable[[SessionEvent], None]]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def subscribe(
        self,
        event_type: SessionEventType,
        callback: Callable[[SessionEvent], None]
    ) -> None:
        with self._lock:
            callbacks = self._subscribers.setdefault(event_type, [])
            if callback not in callbacks:
                callbacks.append(callback)
                self.logger.debug(f"[events] Subscribed to {event_type.name} (total={len(callbacks)})")

    def unsubscribe(
        self,
        event_type: SessionEventType,
        callback: Callable[[SessionEvent], None]
    ) -> None:
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)
                self.logger.debug(f"[events] Unsubscribed from {event_type.name} (total={len(callbacks)})")

    def emit(self, event: SessionEvent) -> None:
        if event.timestamp is None:
            event.timestamp = time.time()

        if event.event_type is not SessionEventType.PHASE_PROGRESS:
            self.logger.debug(f"[events] Emitting: {event}")

        with self._lock:
            callbacks = list(self._subscribers.get(event.event_type, ()))
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                self.logger.error(f"[events] Callback error for {event.event_type.name}: {e}", exc_info=True)

    def clear_all(self) -> None:
        """Remove all event subscribers (useful for testing/cleanup)."""
        with self._lock:
            self._subscribers.clear()
        self.logger.debug("[events] Cleared all subscribers")
