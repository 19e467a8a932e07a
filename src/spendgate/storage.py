"""Local storage hardening helpers."""

from __future__ import annotations

import os
from pathlib import Path


DATA_DIR_ENV = "SPENDGATE_DATA_DIR"


def default_data_dir() -> Path:
    override = os.getenv(DATA_DIR_ENV)
    return Path(override) if override else Path.home() / ".spendgate"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)
