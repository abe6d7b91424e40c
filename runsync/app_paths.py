"""Centralised helpers for managing runsync application directories."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

_APP_ENV_VARS: Iterable[str] = ("RUNSYNC_HOME", "LOCALAPPDATA", "APPDATA")


def _detect_base_directory() -> Path:
    for env_var in _APP_ENV_VARS:
        value = os.environ.get(env_var)
        if not value:
            continue
        base = Path(value).expanduser().resolve()
        if env_var == "RUNSYNC_HOME":
            return base
        return base / "runsync"
    return Path.home().resolve() / ".runsync"


APP_DIR: Path = _detect_base_directory()
DATA_DIR: Path = APP_DIR / "data"
LOG_DIR: Path = APP_DIR / "logs"
CREDENTIALS_DIR: Path = APP_DIR / "credentials"


def ensure_directory(path: Path) -> Path:
    """Ensure that ``path`` exists, returning the :class:`~pathlib.Path`."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_app_structure() -> None:
    """Create the base directories required for application data."""

    for directory in (APP_DIR, DATA_DIR, LOG_DIR):
        ensure_directory(directory)


def data_path(*parts: str) -> Path:
    """Return a path rooted inside :data:`DATA_DIR`, creating parent directories."""

    ensure_app_structure()
    target = DATA_DIR.joinpath(*parts)
    ensure_directory(target.parent)
    return target


def logs_path(*parts: str) -> Path:
    """Return a path rooted inside :data:`LOG_DIR`."""

    ensure_app_structure()
    target = LOG_DIR.joinpath(*parts)
    ensure_directory(target.parent)
    return target


def credentials_path(*parts: str) -> Path:
    """Return a path inside :data:`CREDENTIALS_DIR` without creating it."""

    return CREDENTIALS_DIR.joinpath(*parts)


__all__ = [
    "APP_DIR",
    "DATA_DIR",
    "LOG_DIR",
    "CREDENTIALS_DIR",
    "credentials_path",
    "data_path",
    "ensure_app_structure",
    "ensure_directory",
    "logs_path",
]
