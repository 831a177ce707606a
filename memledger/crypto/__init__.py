"""memledger crypto: AEAD, hashing, signatures and local key custody."""

from .codec import (
    ALGORITHM,
    DEFAULT_KEY_ID,
    HASH_ALGORITHM,
    SIGNATURE_ALGORITHM,
    Codec,
    EncryptedPayload,
    SigningKeyPair,
    decrypt_bytes,
    encrypt_bytes,
    generate_signing_key_pair,
    hash_bytes,
    sign_message,
    verify_signature,
)
from .keystore import KeyStore

__all__ = [
    "ALGORITHM",
    "DEFAULT_KEY_ID",
    "HASH_ALGORITHM",
    "SIGNATURE_ALGORITHM",
    "Codec",
    "EncryptedPayload",
    "KeyStore",
    "SigningKeyPair",
    "decrypt_bytes",
    "encrypt_bytes",
    "generate_signing_key_pair",
    "hash_bytes",
    "sign_message",
    "verify_signature",
]
