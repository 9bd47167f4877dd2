"""Log setup for the zkvault logger tree: rotating file, secrets scrubbed."""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path

LOG_FILE_NAME = "zkvault.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 3

# salts (32), auth hashes / keys (64), nonces (24) and tokens
_SECRET_HEX_RE = re.compile(r"\b[0-9a-fA-F]{24,}(?::[0-9a-fA-F]+)?\b")
_LONG_STRING = 50


def redact(text: str) -> str:
    return _SECRET_HEX_RE.sub("<redacted>", text)


class SecureFormatter(logging.Formatter):
    """Replaces key material in arguments and in the rendered line."""

    @staticmethod
    def _scrub(arg):
        if isinstance(arg, (bytes, bytearray)):
            return f"<{len(arg)} bytes>"
        if isinstance(arg, str):
            return f"<{len(arg)} chars>" if len(arg) > _LONG_STRING else redact(arg)
        return arg

    def format(self, record):
        if isinstance(record.args, tuple):
            record.args = tuple(self._scrub(arg) for arg in record.args)
        return redact(super().format(record))


def _restrict(path: Path, mode: int) -> None:
    if os.name == "nt":
        return
    try:
        os.chmod(path, mode)
    except OSError:
        pass


def setup_secure_logging(log_dir: Path, level: int = logging.INFO) -> logging.Logger:
    """Attach one rotating file handler to the ``zkvault`` logger."""
    log_dir.mkdir(parents=True, exist_ok=True)
    _restrict(log_dir, 0o700)
    log_file = log_dir / LOG_FILE_NAME

    logger = logging.getLogger("zkvault")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
        )
        handler.setFormatter(SecureFormatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.propagate = False

    _restrict(log_file, 0o600)
    return logger
