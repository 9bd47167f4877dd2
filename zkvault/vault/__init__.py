"""zkvault vault modules."""

from zkvault.vault.manager import VaultStore
from zkvault.vault.models import SecurityRecord, VaultItem
from zkvault.vault.security import SecurityManager
from zkvault.vault.session import DecryptedCache, SessionKeyHolder

__all__ = [
    "DecryptedCache",
    "SecurityManager",
    "SecurityRecord",
    "SessionKeyHolder",
    "VaultItem",
    "VaultStore",
]
