"""MemoryBlob: the encrypted payload behind an envelope.

Plaintext only ever exists in memory. At rest a blob is the JSON form of
an EncryptedPayload. The envelope pointing at it records the SHA-256 of
the canonical plaintext blob, so content fetched from an untrusted store
is checked against a hash the ledger computed itself.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

from memledger.crypto.codec import Codec, EncryptedPayload, hash_bytes
from memledger.protocols import ContentIntegrityError, DecryptionError, RecordValidationError
from memledger.records.canonical import canonical_json, load_json_object
from memledger.records.validation import require_mapping, require_string, require_timestamp
from memledger.types import MLP_VERSION, utc_now

if TYPE_CHECKING:
    from memledger.protocols import ContentStore
    from memledger.records.envelope import MemoryEnvelope

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPE = "text/plain"
JSON_CONTENT_TYPE = "application/json"


def content_type_for(content: Any) -> str:
    return TEXT_CONTENT_TYPE if isinstance(content, str) else JSON_CONTENT_TYPE


@dataclass
class MemoryBlob:
    """Decrypted memory payload.

    ``content`` is opaque to the ledger: any JSON value except null.
    """

    content: Any
    blob_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now)
    content_type: str = ""
    mlp_version: str = MLP_VERSION

    def __post_init__(self):
        if self.content is None:
            raise RecordValidationError("content is required")
        try:
            canonical_json(self.content)
        except (TypeError, ValueError) as e:
            raise RecordValidationError(f"content must be JSON-serializable: {e}") from e
        self.blob_id = require_string(self.blob_id, "blob_id", 128)
        self.created_at = require_timestamp(self.created_at, "created_at")
        self.content_type = self.content_type or content_type_for(self.content)
        self.content_type = require_string(self.content_type, "content_type", 128)
        self.mlp_version = require_string(self.mlp_version, "mlp_version", 16)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blob_id": self.blob_id,
            "created_at": self.created_at,
            "content_type": self.content_type,
            "content": self.content,
            "mlp_version": self.mlp_version,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "MemoryBlob":
        data = require_mapping(data, "blob")
        return cls(
            content=data.get("content"),
            blob_id=data.get("blob_id"),
            created_at=data.get("created_at"),
            content_type=data.get("content_type") or "",
            mlp_version=data.get("mlp_version", MLP_VERSION),
        )

    def to_signable_form(self) -> bytes:
        """Canonical plaintext bytes. A blob has no signature fields."""
        return canonical_json(self.to_dict())

    def content_hash(self) -> str:
        return hash_bytes(self.to_signable_form())

    def text(self) -> str:
        """Content as text, for token estimation and display."""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, ensure_ascii=False, sort_keys=True)

    def encrypt(self, codec: Codec, key_id: Optional[str] = None) -> bytes:
        """Seal the blob. Returns the bytes to hand to a content store."""
        payload = codec.encrypt(self.to_signable_form(), key_id=key_id)
        return canonical_json(payload.to_dict())

    @classmethod
    def decrypt(cls, data: bytes, codec: Codec) -> "MemoryBlob":
        """Open bytes produced by ``encrypt``.

        Raises:
            DecryptionError: For a wrong or destroyed key, tampered
                bytes, or anything that does not parse as a sealed blob.
        """
        try:
            payload = EncryptedPayload.from_dict(load_json_object(data, "blob"))
        except ValueError as e:
            raise DecryptionError() from e
        plaintext = codec.decrypt(payload)
        try:
            return cls.from_dict(load_json_object(plaintext, "blob"))
        except ValueError as e:
            raise DecryptionError() from e


def fetch_blob(store: "ContentStore", codec: Codec, envelope: "MemoryEnvelope") -> MemoryBlob:
    """Fetch, decrypt and integrity-check the blob an envelope points at.

    Raises:
        NotFoundError: The store does not know the address.
        DecryptionError: The blob cannot be opened.
        ContentIntegrityError: The plaintext does not match the
            envelope's ``content_hash``.
    """
    if not envelope.content_address:
        raise ContentIntegrityError(f"Envelope {envelope.envelope_id} has no content address")
    blob = MemoryBlob.decrypt(store.get(envelope.content_address), codec)
    if blob.content_hash() != envelope.content_hash:
        raise ContentIntegrityError(
            f"Content hash mismatch for envelope {envelope.envelope_id}"
        )
    return blob
