"""Exception hierarchy and the decryption failure result."""

from __future__ import annotations

from dataclasses import dataclass

DECRYPTION_FAILED_MESSAGE = "Error: Wrong Key or Corrupted Data"


class VaultError(Exception):
    """Base class for every zkvault error."""


class InvalidSalt(VaultError, ValueError):
    """Salt is not well-formed hex of the expected length."""


class MalformedToken(VaultError, ValueError):
    """Ciphertext token does not match ``<hex>:<hex>``."""


class AuthenticationFailed(VaultError):
    """Derived auth hash does not match the stored verifier."""


class VaultLocked(VaultError):
    """No encryption key is loaded for this session."""


class InvalidItem(VaultError, ValueError):
    pass


class InvalidTransition(VaultError):
    """Lifecycle transition not allowed from the item's current state."""


class ImportFormatError(VaultError, ValueError):
    pass


class PersistenceError(VaultError):
    """Failure reported by the persistence collaborator."""


class RateLimited(VaultError):
    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
#  DecryptionFailure
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class DecryptionFailure:
    """Returned (not raised) when a token cannot be opened with a key.

    Never equal to any plaintext string; ``str()`` gives the indicator
    shown in place of the secret.
    """

    reason: str = "authentication"

    def __str__(self) -> str:
        return DECRYPTION_FAILED_MESSAGE


def is_failure(result) -> bool:
    return isinstance(result, DecryptionFailure)
