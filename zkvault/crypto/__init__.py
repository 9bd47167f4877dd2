"""zkvault cryptographic modules."""

from zkvault.crypto.engine import (
    AeadCodec,
    DerivedKeys,
    EncryptionKey,
    KeyDerivation,
    compute_auth_hash,
    decrypt,
    derive,
    encrypt,
    generate_salt,
)
from zkvault.crypto.formats import CipherToken, is_well_formed_token, parse_salt

__all__ = [
    "AeadCodec",
    "CipherToken",
    "DerivedKeys",
    "EncryptionKey",
    "KeyDerivation",
    "compute_auth_hash",
    "decrypt",
    "derive",
    "encrypt",
    "generate_salt",
    "is_well_formed_token",
    "parse_salt",
]
