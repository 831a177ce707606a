"""
Cryptographic primitives for memledger.

- AEAD encryption (ChaCha20-Poly1305) with a fresh random nonce per call
- SHA-256 hashing for integrity checks
- Ed25519 detached signatures

Keys and signatures travel as base64 text so they can sit inside JSON
records.
"""

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from memledger.protocols import DecryptionError, KeyMaterialMissingError

if TYPE_CHECKING:
    from memledger.crypto.keystore import KeyStore

logger = logging.getLogger(__name__)

ALGORITHM = "chacha20-poly1305"
SIGNATURE_ALGORITHM = "Ed25519"
HASH_ALGORITHM = "sha256"
KEY_LENGTH = 32
NONCE_LENGTH = 12
DEFAULT_KEY_ID = "default"


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def hash_bytes(data: bytes) -> str:
    """SHA-256 hex digest. For integrity checks only, never confidentiality."""
    return hashlib.sha256(data).hexdigest()


@dataclass
class EncryptedPayload:
    """Ciphertext as it sits at rest.

    Attributes:
        nonce: Base64-encoded nonce
        ciphertext: Base64-encoded ciphertext with the authentication tag
        algorithm: AEAD algorithm identifier
        key_id: Which symmetric key sealed it ("default" or a data key id)
    """

    nonce: str
    ciphertext: str
    algorithm: str = ALGORITHM
    key_id: str = DEFAULT_KEY_ID

    def to_dict(self) -> Dict[str, str]:
        return {
            "nonce": self.nonce,
            "ciphertext": self.ciphertext,
            "algorithm": self.algorithm,
            "key_id": self.key_id,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "EncryptedPayload":
        """Parse a stored payload.

        Raises:
            DecryptionError: If the payload is not a well-formed object.
        """
        if not isinstance(data, dict):
            raise DecryptionError()
        try:
            return cls(
                nonce=str(data["nonce"]),
                ciphertext=str(data["ciphertext"]),
                algorithm=str(data.get("algorithm", ALGORITHM)),
                key_id=str(data.get("key_id") or DEFAULT_KEY_ID),
            )
        except KeyError as e:
            raise DecryptionError() from e


def encrypt_bytes(key: bytes, plaintext: bytes, key_id: str = DEFAULT_KEY_ID) -> EncryptedPayload:
    """Seal ``plaintext`` under ``key`` with a fresh random nonce."""
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = ChaCha20Poly1305(key).encrypt(nonce, plaintext, None)
    return EncryptedPayload(
        nonce=b64encode(nonce),
        ciphertext=b64encode(ciphertext),
        algorithm=ALGORITHM,
        key_id=key_id,
    )


def decrypt_bytes(key: bytes, payload: EncryptedPayload) -> bytes:
    """Open a payload sealed by ``encrypt_bytes``.

    Raises:
        DecryptionError: On tag mismatch, bad nonce length, unknown
            algorithm or undecodable fields. Always the same message.
    """
    if payload.algorithm != ALGORITHM:
        raise DecryptionError()
    try:
        nonce = b64decode(payload.nonce)
        ciphertext = b64decode(payload.ciphertext)
        if len(nonce) != NONCE_LENGTH:
            raise DecryptionError()
        return ChaCha20Poly1305(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, binascii.Error, ValueError) as e:
        raise DecryptionError() from e


@dataclass
class SigningKeyPair:
    """Ed25519 key pair.

    Attributes:
        public_key: Base64-encoded public key
        private_key: Base64-encoded private key (None for verify-only use)
        created_at: When the key was generated
        key_id: Short identifier derived from the public key
    """

    public_key: str
    private_key: Optional[str] = None
    created_at: Optional[datetime] = None
    key_id: Optional[str] = None


def generate_signing_key_pair() -> SigningKeyPair:
    """Generate a new Ed25519 key pair."""
    private_key = Ed25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes_raw()
    return SigningKeyPair(
        public_key=b64encode(public_bytes),
        private_key=b64encode(private_key.private_bytes_raw()),
        created_at=datetime.now(timezone.utc),
        key_id=hashlib.sha256(public_bytes).hexdigest()[:8],
    )


def sign_message(message: bytes, private_key_b64: str) -> str:
    """Sign ``message`` and return a base64 detached signature.

    Ed25519 is deterministic: the same key and message always give the
    same signature.
    """
    private_key = Ed25519PrivateKey.from_private_bytes(b64decode(private_key_b64))
    return b64encode(private_key.sign(message))


def verify_signature(message: bytes, signature_b64: str, public_key_b64: str) -> bool:
    """Check a detached signature. Returns False for anything that fails."""
    try:
        public_key = Ed25519PublicKey.from_public_bytes(b64decode(public_key_b64))
        public_key.verify(b64decode(signature_b64), message)
        return True
    except (InvalidSignature, binascii.Error, ValueError, TypeError) as e:
        logger.debug(f"Signature verification failed: {e}")
        return False


class Codec:
    """Encrypt, hash, sign and verify with keys from a KeyStore.

    Keys are loaded from the store on first use.
    """

    def __init__(self, key_store: "KeyStore"):
        self.key_store = key_store

    @property
    def public_key(self) -> str:
        return self.key_store.signing_key_pair().public_key

    def encrypt(self, plaintext: bytes, key_id: Optional[str] = None) -> EncryptedPayload:
        key_id = key_id or DEFAULT_KEY_ID
        key = self.key_store.secret_key(key_id)
        return encrypt_bytes(key, plaintext, key_id=key_id)

    def decrypt(self, payload: EncryptedPayload) -> bytes:
        """Decrypt a payload.

        A destroyed per-memory data key surfaces as DecryptionError: the
        memory was crypto-shredded. A missing default key is fatal and
        propagates as KeyMaterialMissingError.
        """
        if payload.key_id == DEFAULT_KEY_ID:
            key = self.key_store.secret_key(DEFAULT_KEY_ID)
        else:
            try:
                key = self.key_store.secret_key(payload.key_id)
            except KeyMaterialMissingError as e:
                raise DecryptionError() from e
        return decrypt_bytes(key, payload)

    def hash(self, data: bytes) -> str:
        return hash_bytes(data)

    def sign(self, data: bytes, private_key: Optional[str] = None) -> str:
        if private_key is None:
            key_pair = self.key_store.signing_key_pair()
            private_key = key_pair.private_key
        return sign_message(data, private_key)

    def verify(self, data: bytes, signature: str, public_key: Optional[str] = None) -> bool:
        return verify_signature(data, signature, public_key or self.public_key)
