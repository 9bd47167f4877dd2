"""SecurityRecord lifecycle: registration, unlock/login and lock."""

from __future__ import annotations

import logging
from typing import Optional

from zkvault.crypto.engine import KeyDerivation, constant_time_compare, generate_salt
from zkvault.errors import AuthenticationFailed
from zkvault.storage.backend import USER_SECURITY, PersistenceBackend, persistence_errors
from zkvault.util.rate_limit import RateLimiter
from zkvault.vault.models import SecurityRecord
from zkvault.vault.session import SessionKeyHolder

logger = logging.getLogger("zkvault.security")


class SecurityManager:
    """Creates and checks the per-user (salt, auth_hash) verifier.

    The password never leaves this object; only the salt and the
    SHA-256 of the derived key are handed to the backend.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        kdf: Optional[KeyDerivation] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.backend = backend
        self.kdf = kdf or KeyDerivation()
        self.rate_limiter = rate_limiter or RateLimiter()

    async def get_record(self, owner_id: str) -> Optional[SecurityRecord]:
        with persistence_errors("read security record"):
            row = await self.backend.select_one(USER_SECURITY, owner_id)
        return SecurityRecord.from_row(row) if row else None

    # ------------------------------------------------------------------
    #  Register
    # ------------------------------------------------------------------
    async def register(
        self,
        owner_id: str,
        password: str,
        holder: Optional[SessionKeyHolder] = None,
    ) -> SecurityRecord:
        if not password:
            raise ValueError("Empty password")

        salt = generate_salt()
        derived = await self.kdf.derive_async(password, salt)
        record = SecurityRecord(owner_id=owner_id, salt=salt, auth_hash=derived.auth_hash)
        try:
            with persistence_errors("create security record"):
                await self.backend.insert(USER_SECURITY, record.to_row())
        except BaseException:
            derived.encryption_key.clear()
            raise

        logger.info("Security record created for owner=%s", owner_id)
        if holder is not None:
            holder.set(derived.encryption_key)
        else:
            derived.encryption_key.clear()
        return record

    # ------------------------------------------------------------------
    #  Unlock / login
    # ------------------------------------------------------------------
    async def _provision_lazily(self, owner_id: str) -> SecurityRecord:
        record = SecurityRecord(owner_id=owner_id, salt=generate_salt(), auth_hash=None)
        with persistence_errors("create security record"):
            await self.backend.insert(USER_SECURITY, record.to_row())
        logger.warning("No security record for owner=%s; provisioned a salt", owner_id)
        return record

    async def unlock(
        self, owner_id: str, password: str, holder: SessionKeyHolder
    ) -> SecurityRecord:
        """Derive the key from *password*, verify it, and load it into *holder*.

        A record without an auth hash (accounts older than security
        records) is completed with the hash derived on this attempt.
        """
        if not password:
            raise ValueError("Empty password")
        await self.rate_limiter.wait()

        record = await self.get_record(owner_id)
        if record is None:
            record = await self._provision_lazily(owner_id)

        derived = await self.kdf.derive_async(password, record.salt)
        key = derived.encryption_key
        try:
            if record.auth_hash is None:
                with persistence_errors("store auth hash"):
                    await self.backend.update(
                        USER_SECURITY, owner_id, owner_id, {"auth_hash": derived.auth_hash}
                    )
                record = SecurityRecord(owner_id, record.salt, derived.auth_hash)
                logger.warning("Auth hash established on first unlock for owner=%s", owner_id)
            elif not constant_time_compare(derived.auth_hash, record.auth_hash):
                self.rate_limiter.record_failure()
                logger.warning("Unlock failed for owner=%s", owner_id)
                raise AuthenticationFailed("Incorrect password")
        except BaseException:
            key.clear()
            raise

        self.rate_limiter.reset()
        holder.set(key)
        logger.info("Vault unlocked for owner=%s", owner_id)
        return record

    login = unlock

    async def verify(self, owner_id: str, password: str) -> bool:
        """Check *password* without touching any session."""
        record = await self.get_record(owner_id)
        if record is None or record.auth_hash is None:
            return False
        derived = await self.kdf.derive_async(password, record.salt)
        derived.encryption_key.clear()
        return constant_time_compare(derived.auth_hash, record.auth_hash)

    # ------------------------------------------------------------------
    #  Lock / logout
    # ------------------------------------------------------------------
    @staticmethod
    def lock(holder: SessionKeyHolder) -> None:
        holder.set(None)

    logout = lock
