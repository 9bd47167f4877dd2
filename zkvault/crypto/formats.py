"""Protocol constants, salt and ciphertext token parsing."""

from __future__ import annotations

import re
from dataclasses import dataclass

from zkvault.errors import InvalidSalt, MalformedToken

# ============================================================================
#  Protocol constants
# ============================================================================
SALT_SIZE = 16  # 128 bits
NONCE_SIZE = 12  # 96 bits (AES-GCM)
KEY_SIZE = 32  # 256 bits
TAG_SIZE = 16  # 128 bits
AUTH_HASH_SIZE = 32  # SHA-256 digest

TOKEN_SEPARATOR = ":"

# -- KDF versions -----------------------------------------------------------
#  PBKDF2-HMAC-SHA256 iteration counts. Existing auth hashes were produced
#  with version 1; a new entry never replaces an old one.
KDF_VERSIONS = {
    1: 100_000,
}
CURRENT_KDF_VERSION = 1

_HEX_RE = re.compile(r"^[0-9a-f]*$")


# ============================================================================
#  Hex helpers
# ============================================================================
def is_lower_hex(value: str) -> bool:
    return isinstance(value, str) and len(value) % 2 == 0 and bool(_HEX_RE.match(value))


def parse_salt(salt_hex: str) -> bytes:
    """Decode a salt, which must be exactly SALT_SIZE bytes of lowercase hex."""
    if not isinstance(salt_hex, str):
        raise InvalidSalt("Salt must be a hex string")
    if len(salt_hex) != SALT_SIZE * 2:
        raise InvalidSalt(
            f"Salt must be {SALT_SIZE * 2} hex characters, got {len(salt_hex)}"
        )
    if not is_lower_hex(salt_hex):
        raise InvalidSalt("Salt is not lowercase hexadecimal")
    return bytes.fromhex(salt_hex)


# ============================================================================
#  Ciphertext token  (<nonce_hex>:<ciphertext+tag hex>)
# ============================================================================
@dataclass(frozen=True)
class CipherToken:
    nonce: bytes
    data: bytes  # ciphertext || tag

    def to_string(self) -> str:
        return self.nonce.hex() + TOKEN_SEPARATOR + self.data.hex()

    @classmethod
    def parse(cls, token: str) -> CipherToken:
        if not isinstance(token, str):
            raise MalformedToken("Token must be a string")
        if token.count(TOKEN_SEPARATOR) != 1:
            raise MalformedToken("Token must contain exactly one separator")

        nonce_hex, data_hex = token.split(TOKEN_SEPARATOR)
        if not nonce_hex or not data_hex:
            raise MalformedToken("Token has an empty segment")
        if not is_lower_hex(nonce_hex) or not is_lower_hex(data_hex):
            raise MalformedToken("Token segments are not lowercase hexadecimal")

        nonce = bytes.fromhex(nonce_hex)
        data = bytes.fromhex(data_hex)
        if len(nonce) != NONCE_SIZE:
            raise MalformedToken(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
        if len(data) < TAG_SIZE:
            raise MalformedToken("Ciphertext shorter than the authentication tag")
        return cls(nonce=nonce, data=data)


def is_well_formed_token(token: str) -> bool:
    """Quick structural check, without any key."""
    try:
        CipherToken.parse(token)
    except MalformedToken:
        return False
    return True
