"""Exercise and session template catalog.

Editing the catalog is the host application's job; playback only reads
definitions from it once, when a session starts.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, Optional

from .session.errors import ConfigurationError
from .session.exercise import Exercise, SessionDefinition

logger = logging.getLogger(__name__)


class CatalogStore(ABC):
    """Read access to exercise and session templates."""

    @abstractmethod
    def get_session_definition(self, session_id: int) -> SessionDefinition:
        """Return the session definition.

        Raises:
            ConfigurationError: If no such session exists
        """

    @abstractmethod
    def get_exercise(self, exercise_id: int) -> Optional[Exercise]:
        """Return the exercise, or None if unknown."""

    def exercises_for(self, definition: SessionDefinition) -> Dict[int, Exercise]:
        """All known exercises referenced by *definition*, keyed by id."""
        found: Dict[int, Exercise] = {}
        for entry in definition.exercises:
            exercise = self.get_exercise(entry.exercise_id)
            if exercise is not None:
                found[exercise.id] = exercise
        return found


class MemoryCatalogStore(CatalogStore):
    """Catalog held in memory."""

    def __init__(
        self,
        exercises: Iterable[Exercise] = (),
        sessions: Iterable[SessionDefinition] = (),
    ):
        self.exercises: Dict[int, Exercise] = {e.id: e for e in exercises}
        self.sessions: Dict[int, SessionDefinition] = {s.id: s for s in sessions}

    def get_session_definition(self, session_id: int) -> SessionDefinition:
        try:
            return self.sessions[session_id]
        except KeyError:
            raise ConfigurationError(f"Unknown session definition: {session_id}") from None

    def get_exercise(self, exercise_id: int) -> Optional[Exercise]:
        return self.exercises.get(exercise_id)


class JsonCatalogStore(MemoryCatalogStore):
    """Catalog loaded from a JSON file.

    Format:
        {"exercises": [{...Exercise...}], "sessions": [{...SessionDefinition...}]}
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"Catalog file not found: {self.path}")

        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        try:
            exercises = [Exercise.from_dict(item) for item in data.get("exercises", [])]
            sessions = [SessionDefinition.from_dict(item) for item in data.get("sessions", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid catalog {self.path}: {e}") from e

        super().__init__(exercises, sessions)
        logger.info(
            f"Loaded catalog {self.path.name}: {len(self.exercises)} exercises, {len(self.sessions)} sessions"
        )
