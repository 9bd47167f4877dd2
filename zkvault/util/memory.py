"""Wipeable key buffers, pinned in RAM where the OS allows it."""

from __future__ import annotations

import ctypes
import logging
import platform
import secrets

logger = logging.getLogger("zkvault.memory")

_WINDOWS = platform.system() == "Windows"


def _pin(buf: bytearray, lock: bool) -> bool:
    """mlock/munlock (VirtualLock/VirtualUnlock on Windows) *buf*'s pages."""
    if not buf:
        return False
    address = ctypes.c_void_p(ctypes.addressof(ctypes.c_char.from_buffer(buf)))
    size = ctypes.c_size_t(len(buf))
    try:
        if _WINDOWS:
            kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
            call = kernel32.VirtualLock if lock else kernel32.VirtualUnlock
            return bool(call(address, size))
        libc = ctypes.CDLL(None)
        call = libc.mlock if lock else libc.munlock
        return call(address, size) == 0
    except (OSError, AttributeError) as exc:
        logger.debug("Page %s unavailable: %s", "lock" if lock else "unlock", exc)
        return False


class SecureMemory:
    """Secret bytes that can be overwritten in place.

    The buffer is never resized, so the pages locked at construction are
    the pages wiped on ``clear()``.
    """

    __slots__ = ("_buf", "_pinned")

    def __init__(self, data: bytes):
        self._buf = bytearray(data)
        self._pinned = _pin(self._buf, True)

    def get_bytes(self) -> bytes:
        if not self._buf:
            raise ValueError("Memory already cleared")
        return bytes(self._buf)

    def clear(self) -> None:
        if not self._buf:
            return
        size = len(self._buf)
        try:
            self._buf[:] = secrets.token_bytes(size)
            self._buf[:] = bytes(size)
            if self._pinned:
                _pin(self._buf, False)
        finally:
            self._buf = bytearray()
            self._pinned = False

    @property
    def is_cleared(self) -> bool:
        return not self._buf

    @property
    def is_protected(self) -> bool:
        return self._pinned

    def __len__(self) -> int:
        return len(self._buf)

    def __del__(self):
        if getattr(self, "_buf", None):
            self.clear()
