"""Tunable settings, their defaults, and config.ini I/O."""

from __future__ import annotations

import configparser
import dataclasses
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("zkvault.config")

CONFIG_FILE_NAME = "config.ini"


# ============================================================================
#  Config class
# ============================================================================
class Config:
    """Centralised defaults."""

    # Session
    SESSION_IDLE_TIMEOUT = 300  # seconds, 0 disables

    # Unlock backoff
    MAX_UNLOCK_ATTEMPTS = 5
    UNLOCK_DELAY_BASE = 2  # seconds

    # Storage
    MAX_STORE_SIZE = 50 * 1024 * 1024  # 50 MB
    MAX_IMPORT_SIZE = 10 * 1024 * 1024  # 10 MB

    # Export
    EXPORT_VERSION = 1
    EXPORT_PREFIX = "zkvault-export"

    @staticmethod
    def load(data_dir: Path | None = None) -> Settings:
        """Read config.ini from *data_dir*; missing keys keep their defaults.

        An unreadable file is ignored as a whole.
        """
        if data_dir is None:
            from zkvault.paths import get_data_dir

            data_dir = get_data_dir()

        config_path = data_dir / CONFIG_FILE_NAME
        if not config_path.exists():
            return Settings()

        cfg = configparser.ConfigParser()
        values = {}
        try:
            cfg.read(config_path, encoding="utf-8")
            for attr, (section, option) in _OPTIONS.items():
                if cfg.has_option(section, option):
                    values[attr] = cfg.getint(section, option)
        except (configparser.Error, ValueError) as exc:
            logger.warning("Ignoring invalid %s: %s", config_path, exc)
            return Settings()
        return Settings(**values).clamped()

    @staticmethod
    def config_exists(data_dir: Path) -> bool:
        return (data_dir / CONFIG_FILE_NAME).exists()


@dataclass(frozen=True)
class Settings:
    idle_timeout: int = Config.SESSION_IDLE_TIMEOUT
    max_unlock_attempts: int = Config.MAX_UNLOCK_ATTEMPTS
    unlock_delay_base: int = Config.UNLOCK_DELAY_BASE

    def clamped(self) -> Settings:
        return Settings(
            idle_timeout=max(0, self.idle_timeout),
            max_unlock_attempts=min(max(1, self.max_unlock_attempts), 20),
            unlock_delay_base=max(1, self.unlock_delay_base),
        )


# Settings attribute -> (section, option) in config.ini
_OPTIONS = {
    "idle_timeout": ("session", "idle_timeout"),
    "max_unlock_attempts": ("unlock", "max_attempts"),
    "unlock_delay_base": ("unlock", "delay_base"),
}


# ============================================================================
#  Atomic config writer
# ============================================================================
def write_config(data_dir: Path, settings: Settings) -> Path:
    data_dir.mkdir(parents=True, exist_ok=True)
    if os.name != "nt":
        os.chmod(data_dir, 0o700)

    cfg = configparser.ConfigParser()
    values = dataclasses.asdict(settings)
    for attr, (section, option) in _OPTIONS.items():
        if not cfg.has_section(section):
            cfg.add_section(section)
        cfg.set(section, option, str(values[attr]))

    config_path = data_dir / CONFIG_FILE_NAME
    tmp = tempfile.NamedTemporaryFile(
        mode="w", dir=data_dir, prefix="cfg_tmp_", suffix=".ini", delete=False
    )
    tmp_path = Path(tmp.name)
    try:
        with tmp:
            cfg.write(tmp)
            tmp.flush()
            os.fsync(tmp.fileno())
        if os.name != "nt":
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(config_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    logger.info("Settings written to %s", config_path)
    return config_path
