"""Qt integration: QTimer tick source and application visibility bridge.

Used when the player is embedded in a PyQt6 UI. Headless runs use
:class:`ptcadence.session.lifecycle.AsyncTicker` instead.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from PyQt6.QtCore import QObject, Qt, QTimer, pyqtSignal
from PyQt6.QtGui import QGuiApplication

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from ..session.lifecycle import SessionLifecycleController

_log = logging.getLogger(__name__)


class QtTickDriver(QObject):
    """Calls ``controller.tick()`` from a precise QTimer.

    Emits ``snapshot_ready`` after each tick that produced a snapshot and
    ``finished`` once the session is over (the timer stops itself).
    """

    snapshot_ready = pyqtSignal(object)
    finished = pyqtSignal()

    def __init__(
        self,
        controller: SessionLifecycleController,
        interval_s: Optional[float] = None,
        parent: Optional[QObject] = None,
    ):
        super().__init__(parent)
        self.controller = controller
        interval = interval_s if interval_s is not None else controller.settings.tick_interval_seconds
        self.timer = QTimer(self)
        self.timer.setInterval(max(1, int(round(interval * 1000))))
        try:
            self.timer.setTimerType(Qt.TimerType.PreciseTimer)
        except Exception:
            pass
        self.timer.timeout.connect(self._on_timeout)

    def start(self) -> None:
        self.timer.start()
        _log.debug("[qt] tick driver started (%d ms)", self.timer.interval())

    def stop(self) -> None:
        self.timer.stop()

    def is_active(self) -> bool:
        return self.timer.isActive()

    def _on_timeout(self) -> None:
        snapshot = self.controller.tick()
        if snapshot is not None:
            self.snapshot_ready.emit(snapshot)
        if self.controller.is_finished():
            self.timer.stop()
            self.finished.emit()


class QtVisibilityMonitor(QObject):
    """Forwards ``applicationStateChanged`` to ``controller.on_visibility_changed``.

    Only ``ApplicationActive`` counts as visible; hidden, suspended and
    inactive (e.g. screen locked) all count as backgrounded.
    """

    def __init__(self, controller: SessionLifecycleController, parent: Optional[QObject] = None):
        super().__init__(parent)
        self.controller = controller
        self._visible: Optional[bool] = None

    def attach(self, app: Optional[QGuiApplication] = None) -> bool:
        app = app or QGuiApplication.instance()
        if app is None:
            _log.warning("[qt] No QGuiApplication; visibility changes will not be tracked")
            return False
        app.applicationStateChanged.connect(self.on_application_state_changed)
        return True

    def on_application_state_changed(self, state: Qt.ApplicationState) -> None:
        visible = state == Qt.ApplicationState.ApplicationActive
        if visible == self._visible:
            return
        self._visible = visible
        _log.debug("[qt] application state %s -> visible=%s", state, visible)
        self.controller.on_visibility_changed(visible)
