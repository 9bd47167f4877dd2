"""Tests for KeyDerivation and AeadCodec."""

from __future__ import annotations

import hashlib
import re

import pytest

from zkvault.crypto.engine import (
    AeadCodec,
    EncryptionKey,
    KeyDerivation,
    compute_auth_hash,
    decrypt,
    derive,
    encrypt,
    generate_salt,
)
from zkvault.crypto.formats import KDF_VERSIONS, NONCE_SIZE, TAG_SIZE
from zkvault.errors import (
    DECRYPTION_FAILED_MESSAGE,
    DecryptionFailure,
    InvalidSalt,
    VaultLocked,
    is_failure,
)

from .conftest import FIXED_SALT, PASSWORD, random_key

TOKEN_RE = re.compile(r"^[0-9a-f]{24}:[0-9a-f]+$")


@pytest.fixture(scope="module")
def derived():
    return derive(PASSWORD, FIXED_SALT)


class TestDerive:
    def test_matches_pbkdf2_sha256(self, derived):
        expected = hashlib.pbkdf2_hmac(
            "sha256", PASSWORD.encode(), bytes.fromhex(FIXED_SALT), 100_000, 32
        )
        assert derived.encryption_key.raw() == expected

    def test_auth_hash_is_sha256_of_key(self, derived):
        raw = derived.encryption_key.raw()
        assert derived.auth_hash == hashlib.sha256(raw).hexdigest()
        assert re.fullmatch(r"[0-9a-f]{64}", derived.auth_hash)

    def test_deterministic(self, derived):
        again = derive(PASSWORD, FIXED_SALT)
        assert again.encryption_key == derived.encryption_key
        assert again.auth_hash == derived.auth_hash

    def test_different_salt_gives_different_keys(self, derived):
        other = derive(PASSWORD, generate_salt())
        assert other.encryption_key != derived.encryption_key
        assert other.auth_hash != derived.auth_hash

    def test_different_password_gives_different_keys(self, derived):
        other = derive("password-2", FIXED_SALT)
        assert other.auth_hash != derived.auth_hash

    def test_invalid_salt_raises(self):
        with pytest.raises(InvalidSalt):
            derive(PASSWORD, "abcd")

    def test_iterations_pinned_by_version(self):
        kdf = KeyDerivation()
        assert kdf.iterations == KDF_VERSIONS[1] == 100_000

    def test_unknown_version_rejected(self):
        with pytest.raises(ValueError):
            KeyDerivation(kdf_version=99)

    async def test_async_matches_sync(self, derived):
        result = await KeyDerivation().derive_async(PASSWORD, FIXED_SALT)
        assert result.auth_hash == derived.auth_hash


class TestGenerateSalt:
    def test_format(self):
        assert re.fullmatch(r"[0-9a-f]{32}", generate_salt())

    def test_unique(self):
        assert len({generate_salt() for _ in range(50)}) == 50


class TestEncryptionKey:
    def test_repr_does_not_leak(self):
        key = random_key()
        assert key.raw().hex() not in repr(key)

    def test_clear(self):
        key = random_key()
        key.clear()
        assert key.is_cleared
        with pytest.raises(VaultLocked):
            key.raw()

    def test_wrong_size_rejected(self):
        with pytest.raises(ValueError):
            EncryptionKey(b"short")

    def test_auth_hash_of_cleared_key_fails(self):
        key = random_key()
        key.clear()
        with pytest.raises(VaultLocked):
            compute_auth_hash(key)


class TestEncryptDecrypt:
    @pytest.mark.parametrize(
        "plaintext",
        ["", "hello", "Hello 0xVault! ", "ví dụ 🔐 seed words", "a" * 10_000, "line1\nline2"],
    )
    def test_roundtrip(self, plaintext):
        key = random_key()
        assert decrypt(encrypt(plaintext, key), key) == plaintext

    def test_token_format(self):
        key = random_key()
        token = encrypt("secret", key)
        assert TOKEN_RE.match(token)
        nonce_hex, data_hex = token.split(":")
        assert len(bytes.fromhex(nonce_hex)) == NONCE_SIZE
        assert len(bytes.fromhex(data_hex)) == len("secret") + TAG_SIZE

    def test_nondeterministic(self):
        key = random_key()
        t1, t2 = encrypt("same", key), encrypt("same", key)
        assert t1 != t2
        assert t1.split(":")[0] != t2.split(":")[0]
        assert decrypt(t1, key) == decrypt(t2, key) == "same"

    def test_wrong_key_returns_failure(self):
        k1, k2 = random_key(), random_key()
        result = decrypt(encrypt("secret", k1), k2)
        assert isinstance(result, DecryptionFailure)
        assert result.reason == "authentication"
        assert result != "secret"

    def test_tampered_ciphertext_returns_failure(self):
        key = random_key()
        nonce_hex, data_hex = encrypt("secret", key).split(":")
        flipped = "%02x" % (int(data_hex[:2], 16) ^ 0xFF) + data_hex[2:]
        assert is_failure(decrypt(f"{nonce_hex}:{flipped}", key))

    def test_tampered_nonce_returns_failure(self):
        key = random_key()
        nonce_hex, data_hex = encrypt("secret", key).split(":")
        assert is_failure(decrypt(f"{'00' * NONCE_SIZE}:{data_hex}", key))

    @pytest.mark.parametrize("bad", ["", "no-separator", "zz:zz", "a:b:c"])
    def test_malformed_token_returns_failure(self, bad):
        result = decrypt(bad, random_key())
        assert isinstance(result, DecryptionFailure)
        assert result.reason == "malformed"

    def test_failure_displays_indicator(self):
        result = decrypt("bogus", random_key())
        assert str(result) == DECRYPTION_FAILED_MESSAGE
        assert "error" in str(result).lower()

    def test_encrypt_with_cleared_key_raises(self):
        key = random_key()
        key.clear()
        with pytest.raises(VaultLocked):
            encrypt("secret", key)

    async def test_async_roundtrip(self):
        key = random_key()
        codec = AeadCodec()
        token = await codec.encrypt_async("async secret", key)
        assert await codec.decrypt_async(token, key) == "async secret"


class TestKnownScenario:
    def test_password_roundtrip_and_wrong_password(self):
        k1 = derive(PASSWORD, FIXED_SALT).encryption_key
        token = encrypt("Hello 0xVault! ", k1)
        assert decrypt(token, k1) == "Hello 0xVault! "

        k2 = derive("password-2", FIXED_SALT).encryption_key
        result = decrypt(token, k2)
        assert isinstance(result, DecryptionFailure)
        assert result != "Hello 0xVault! "
