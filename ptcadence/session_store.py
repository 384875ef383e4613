"""Checkpoint and finished-session persistence.

Checkpoints are small JSON files, one per session instance, replaced
atomically on every write. A finished session (completed or ended early)
is written once as a journal record and its checkpoint removed.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from .platform_paths import ensure_dir, get_checkpoints_dir, get_sessions_dir
from .session.checkpoint import CheckpointRecord
from .session.errors import PersistenceWriteError

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]+")


def _file_stem(session_id: str) -> str:
    stem = _SAFE_ID.sub("_", session_id).strip("._")
    if not stem:
        raise ValueError(f"Invalid session id: {session_id!r}")
    return stem


class CheckpointStore(ABC):
    """Persistence collaborator for the checkpointer and controller."""

    @abstractmethod
    def save_checkpoint(self, session_id: str, record: CheckpointRecord) -> bool:
        """Persist *record*. Returns False if a newer record is already stored.

        Raises:
            PersistenceWriteError: If the write fails
        """

    @abstractmethod
    def load_checkpoint(self, session_id: str) -> Optional[CheckpointRecord]:
        """Return the stored record, or None."""

    @abstractmethod
    def finalize_session(self, session_id: str, record: Dict[str, Any]) -> None:
        """Write the finished session record and drop the checkpoint."""

    @abstractmethod
    def clear_checkpoint(self, session_id: str) -> None:
        """Remove a checkpoint (no error if missing)."""


class MemoryCheckpointStore(CheckpointStore):
    """In-process store for embedding and tests."""

    def __init__(self):
        self._lock = Lock()
        self.checkpoints: Dict[str, CheckpointRecord] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.writes = 0

    def save_checkpoint(self, session_id: str, record: CheckpointRecord) -> bool:
        with self._lock:
            current = self.checkpoints.get(session_id)
            if current is not None and current.sequence > record.sequence:
                return False
            self.checkpoints[session_id] = record
            self.writes += 1
            return True

    def load_checkpoint(self, session_id: str) -> Optional[CheckpointRecord]:
        with self._lock:
            return self.checkpoints.get(session_id)

    def finalize_session(self, session_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self.sessions[session_id] = dict(record)
            self.checkpoints.pop(session_id, None)

    def clear_checkpoint(self, session_id: str) -> None:
        with self._lock:
            self.checkpoints.pop(session_id, None)


class JsonCheckpointStore(CheckpointStore):
    """JSON files under the per-user data directory.

    Layout:
        <checkpoints_dir>/<session_id>.checkpoint.json
        <sessions_dir>/<session_id>.session.json
    """

    def __init__(self, checkpoints_dir: Optional[Path] = None, sessions_dir: Optional[Path] = None):
        self.checkpoints_dir = Path(checkpoints_dir) if checkpoints_dir else get_checkpoints_dir()
        self.sessions_dir = Path(sessions_dir) if sessions_dir else get_sessions_dir()
        ensure_dir(self.checkpoints_dir)
        ensure_dir(self.sessions_dir)
        self._lock = Lock()
        logger.info(f"JsonCheckpointStore initialized: {self.checkpoints_dir}")

    @classmethod
    def in_directory(cls, data_dir: Path) -> "JsonCheckpointStore":
        data_dir = Path(data_dir)
        return cls(data_dir / "checkpoints", data_dir / "sessions")

    def checkpoint_path(self, session_id: str) -> Path:
        return self.checkpoints_dir / f"{_file_stem(session_id)}.checkpoint.json"

    def session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{_file_stem(session_id)}.session.json"

    def save_checkpoint(self, session_id: str, record: CheckpointRecord) -> bool:
        path = self.checkpoint_path(session_id)
        with self._lock:
            current = self._read_checkpoint(path)
            if current is not None and current.sequence > record.sequence:
                logger.debug(
                    f"Refusing checkpoint seq={record.sequence} for {session_id}: "
                    f"stored seq={current.sequence} is newer"
                )
                return False
            self._write_json(path, record.to_dict())
        return True

    def load_checkpoint(self, session_id: str) -> Optional[CheckpointRecord]:
        with self._lock:
            return self._read_checkpoint(self.checkpoint_path(session_id))

    def finalize_session(self, session_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._write_json(self.session_path(session_id), record)
            self._remove(self.checkpoint_path(session_id))
        logger.info(f"Session record saved: {self.session_path(session_id)}")

    def clear_checkpoint(self, session_id: str) -> None:
        with self._lock:
            self._remove(self.checkpoint_path(session_id))

    def list_checkpoints(self) -> List[str]:
        """Session ids that currently have a checkpoint."""
        suffix = ".checkpoint.json"
        return sorted(p.name[: -len(suffix)] for p in self.checkpoints_dir.glob(f"*{suffix}"))

    def load_session_record(self, session_id: str) -> Optional[Dict[str, Any]]:
        path = self.session_path(session_id)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    # ===== Internals =====

    def _read_checkpoint(self, path: Path) -> Optional[CheckpointRecord]:
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return CheckpointRecord.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable checkpoint {path}: {e}")
            return None

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        tmp = path.with_name(path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            raise PersistenceWriteError(f"Failed to write {path}: {e}") from e

    def _remove(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceWriteError(f"Failed to remove {path}: {e}") from e
