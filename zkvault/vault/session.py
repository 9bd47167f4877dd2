"""SessionKeyHolder and DecryptedCache: volatile, per-session state."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterator, Optional

from zkvault.crypto.engine import DecryptResult, EncryptionKey
from zkvault.errors import VaultLocked

logger = logging.getLogger("zkvault.session")


class DecryptedCache:
    """item id -> revealed plaintext (or failure). Never persisted."""

    def __init__(self):
        self._values: Dict[str, DecryptResult] = {}

    def get(self, item_id: str) -> Optional[DecryptResult]:
        return self._values.get(item_id)

    def put(self, item_id: str, value: DecryptResult) -> None:
        self._values[item_id] = value

    def evict(self, item_id: str) -> bool:
        return self._values.pop(item_id, None) is not None

    def clear(self) -> None:
        self._values.clear()

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))


class SessionKeyHolder:
    """Owns at most one EncryptionKey for one unlocked session.

    ``idle_timeout`` (seconds, 0 disables) locks the holder when the key
    has not been used for that long; expiry is checked on access.
    """

    def __init__(
        self,
        idle_timeout: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._key: Optional[EncryptionKey] = None
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._last_used = 0.0
        self.cache = DecryptedCache()

    def set(self, key: Optional[EncryptionKey]) -> None:
        """Load *key*, or lock with ``None``. The previous key is wiped."""
        previous = self._key
        self._key = key
        if previous is not None and previous is not key:
            previous.clear()
        self.cache.clear()
        self._last_used = self._clock()
        if key is None:
            logger.info("Session locked")
        else:
            logger.info("Session unlocked")

    def clear(self) -> None:
        self.set(None)

    def _expired(self) -> bool:
        return (
            self._key is not None
            and self._idle_timeout > 0
            and self._clock() - self._last_used >= self._idle_timeout
        )

    def _check_idle(self) -> None:
        if self._expired():
            logger.info("Session idle for %ds, locking", self._idle_timeout)
            self.set(None)

    def get(self) -> Optional[EncryptionKey]:
        self._check_idle()
        return self._key

    def require(self) -> EncryptionKey:
        key = self.get()
        if key is None or key.is_cleared:
            raise VaultLocked("Vault is locked")
        self._last_used = self._clock()
        return key

    def touch(self) -> None:
        self._check_idle()
        if self._key is not None:
            self._last_used = self._clock()

    @property
    def is_unlocked(self) -> bool:
        key = self.get()
        return key is not None and not key.is_cleared
