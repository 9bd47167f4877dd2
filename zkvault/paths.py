"""Cross-platform data directory resolution."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import platformdirs

logger = logging.getLogger("zkvault.paths")

_APP_NAME = "zkvault"
_APP_AUTHOR = "zkvault"

DATA_DIR_ENV = "ZKVAULT_HOME"


def get_data_dir() -> Path:
    """Return ``$ZKVAULT_HOME`` or the platform data directory (XDG on Linux)."""
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_data_dir(_APP_NAME, _APP_AUTHOR))


def ensure_data_dir(data_dir: Path) -> Path:
    data_dir.mkdir(parents=True, exist_ok=True)
    if os.name != "nt":
        try:
            os.chmod(data_dir, 0o700)
        except OSError as exc:
            logger.warning("Could not restrict %s: %s", data_dir, exc)
    return data_dir


# -- path helpers -----------------------------------------------------------
def get_store_path(data_dir: Path) -> Path:
    return data_dir / "store.json"


def get_log_dir(data_dir: Path) -> Path:
    return data_dir / "logs"


def get_config_path(data_dir: Path) -> Path:
    return data_dir / "config.ini"
