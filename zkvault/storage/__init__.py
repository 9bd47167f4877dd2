"""zkvault persistence backends."""

from zkvault.storage.backend import (
    USER_SECURITY,
    VAULT_ITEMS,
    JsonFileBackend,
    MemoryBackend,
    PersistenceBackend,
)

__all__ = [
    "USER_SECURITY",
    "VAULT_ITEMS",
    "JsonFileBackend",
    "MemoryBackend",
    "PersistenceBackend",
]
