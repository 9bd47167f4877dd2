"""KeyDerivation (PBKDF2 + auth hash) and AeadCodec (AES-256-GCM tokens)."""

from __future__ import annotations

import asyncio
import hashlib
import hmac as hmac_mod
import logging
import secrets
from typing import NamedTuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from zkvault.crypto.formats import (
    CURRENT_KDF_VERSION,
    KDF_VERSIONS,
    KEY_SIZE,
    NONCE_SIZE,
    SALT_SIZE,
    CipherToken,
    parse_salt,
)
from zkvault.errors import DecryptionFailure, MalformedToken, VaultLocked
from zkvault.util.memory import SecureMemory

logger = logging.getLogger("zkvault.crypto")

DecryptResult = Union[str, DecryptionFailure]


# ============================================================================
#  EncryptionKey
# ============================================================================
class EncryptionKey:
    """256-bit AES-GCM key held in wipeable memory. Never serialised."""

    __slots__ = ("_mem",)

    def __init__(self, raw: bytes):
        if len(raw) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes")
        self._mem = SecureMemory(raw)

    def raw(self) -> bytes:
        if self._mem.is_cleared:
            raise VaultLocked("Encryption key has been cleared")
        return self._mem.get_bytes()

    def clear(self) -> None:
        self._mem.clear()

    @property
    def is_cleared(self) -> bool:
        return self._mem.is_cleared

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EncryptionKey):
            return NotImplemented
        if self.is_cleared or other.is_cleared:
            return False
        return hmac_mod.compare_digest(self.raw(), other.raw())

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        state = "cleared" if self.is_cleared else f"{KEY_SIZE} bytes"
        return f"<EncryptionKey {state}>"


class DerivedKeys(NamedTuple):
    encryption_key: EncryptionKey
    auth_hash: str


# ============================================================================
#  KeyDerivation
# ============================================================================
def generate_salt() -> str:
    """Fresh random per-user salt as lowercase hex."""
    return secrets.token_bytes(SALT_SIZE).hex()


def compute_auth_hash(key: EncryptionKey) -> str:
    """SHA-256 over the raw key bytes, lowercase hex."""
    return hashlib.sha256(key.raw()).hexdigest()


def constant_time_compare(a: str, b: str) -> bool:
    return hmac_mod.compare_digest(a.encode("ascii"), b.encode("ascii"))


class KeyDerivation:
    """PBKDF2-HMAC-SHA256, iteration count pinned by KDF version."""

    def __init__(self, kdf_version: int = CURRENT_KDF_VERSION):
        if kdf_version not in KDF_VERSIONS:
            raise ValueError(f"Unknown KDF version: {kdf_version}")
        self.kdf_version = kdf_version
        self.iterations = KDF_VERSIONS[kdf_version]

    def derive(self, password: str, salt_hex: str) -> DerivedKeys:
        salt = parse_salt(salt_hex)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        material = bytearray(kdf.derive(password.encode("utf-8")))
        try:
            key = EncryptionKey(bytes(material))
        finally:
            for i in range(len(material)):
                material[i] = 0

        return DerivedKeys(key, compute_auth_hash(key))

    async def derive_async(self, password: str, salt_hex: str) -> DerivedKeys:
        """Run the (deliberately slow) derivation off the event loop."""
        return await asyncio.to_thread(self.derive, password, salt_hex)


def derive(password: str, salt_hex: str) -> DerivedKeys:
    return KeyDerivation().derive(password, salt_hex)


# ============================================================================
#  AeadCodec
# ============================================================================
class AeadCodec:
    """Text secrets <-> ``<nonce_hex>:<ciphertext+tag hex>`` tokens."""

    @staticmethod
    def encrypt(plaintext: str, key: EncryptionKey) -> str:
        cipher = AESGCM(key.raw())
        nonce = secrets.token_bytes(NONCE_SIZE)
        data = cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
        return CipherToken(nonce=nonce, data=data).to_string()

    @staticmethod
    def decrypt(token: str, key: EncryptionKey) -> DecryptResult:
        try:
            parsed = CipherToken.parse(token)
        except MalformedToken as exc:
            logger.warning("Malformed ciphertext token: %s", exc)
            return DecryptionFailure("malformed")

        cipher = AESGCM(key.raw())
        try:
            plaintext = cipher.decrypt(parsed.nonce, parsed.data, None)
        except InvalidTag:
            logger.warning("Ciphertext authentication failed (wrong key or tampered data)")
            return DecryptionFailure("authentication")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Decrypted payload is not valid UTF-8")
            return DecryptionFailure("encoding")

    async def encrypt_async(self, plaintext: str, key: EncryptionKey) -> str:
        return await asyncio.to_thread(self.encrypt, plaintext, key)

    async def decrypt_async(self, token: str, key: EncryptionKey) -> DecryptResult:
        return await asyncio.to_thread(self.decrypt, token, key)


encrypt = AeadCodec.encrypt
decrypt = AeadCodec.decrypt
