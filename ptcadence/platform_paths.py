"""Platform-specific paths.

Goal: keep checkpoints and finished session records out of temp / install
folders.

We intentionally avoid extra dependencies (e.g. platformdirs) and rely on
standard environment variables.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

APP_NAME = "ptcadence"
DATA_DIR_ENV = "PTCADENCE_DATA_DIR"


def is_windows() -> bool:
    return os.name == "nt"


def get_user_data_dir(app_name: str = APP_NAME) -> Path:
    """Return a persistent per-user data directory.

    ``PTCADENCE_DATA_DIR`` wins when set.
    Windows: %APPDATA%\\ptcadence
    Others: $XDG_DATA_HOME/ptcadence, else ~/.ptcadence
    """
    override = os.getenv(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()

    if is_windows():
        base = os.getenv("APPDATA")
        if base:
            return Path(base) / app_name
        return Path.home() / "AppData" / "Roaming" / app_name

    xdg = os.getenv("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / app_name
    return Path.home() / f".{app_name.lower()}"


def get_checkpoints_dir(app_name: str = APP_NAME) -> Path:
    return get_user_data_dir(app_name) / "checkpoints"


def get_sessions_dir(app_name: str = APP_NAME) -> Path:
    return get_user_data_dir(app_name) / "sessions"


def ensure_dir(path: Path) -> Path:
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
