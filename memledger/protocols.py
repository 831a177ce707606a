"""
memledger Protocol Definitions
==============================

Interface contracts between the ledger engine and its pluggable parts,
and the error taxonomy shared by all of them.

Components:
- ContentStore:    put/get bytes by content address. Local, gateway or
                   permanent-storage backends.
- EnvelopeSource:  answers the compiler's candidate query.
- TokenEstimator:  turns decrypted content into a token estimate.

Error handling philosophy:
- Crypto and storage primitives raise.
- The context pack compiler catches per-envelope errors, downgrades that
  single item and tallies it. It never aborts on one bad record.
- Only kernel-load failures and key-store initialisation failures are
  session-fatal.
- Invalid arguments and malformed records raise ValueError subclasses.
"""

from __future__ import annotations

from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Set,
    runtime_checkable,
)

if TYPE_CHECKING:
    from memledger.records.envelope import MemoryEnvelope


# =============================================================================
# ERRORS
# =============================================================================


class LedgerError(Exception):
    """Base for all memledger errors."""

    pass


class DecryptionError(LedgerError):
    """Ciphertext could not be opened.

    Raised for a wrong or rotated key, a corrupted ciphertext or nonce,
    and malformed payloads alike. The message never says which.
    """

    def __init__(self, message: str = "Decryption failed - invalid key or corrupted data"):
        super().__init__(message)


class NotFoundError(LedgerError):
    """Address unknown to the storage backend. Permanent, never retried."""

    def __init__(self, address: str, backend: str = "store"):
        self.address = address
        self.backend = backend
        super().__init__(f"Address not found in {backend}: {address}")


class TransientStoreError(LedgerError):
    """Timeout, rate limit or server error from a remote backend. Retryable."""

    pass


class ContentIntegrityError(LedgerError):
    """Content read back does not match the hash it was addressed by."""

    pass


class VerificationFailure(LedgerError):
    """A signature is invalid or no trusted key is available for it."""

    pass


class PolicyDenied(LedgerError):
    """An access check failed for the requesting principal and intent."""

    pass


class OrphanedBlob(LedgerError):
    """A stored blob is not referenced by any envelope."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Orphaned blob: {address}")


class KeyStoreError(LedgerError):
    """Key material could not be created, persisted or read."""

    pass


class KeyMaterialMissingError(KeyStoreError):
    """A key store that was initialised before is missing key files.

    Never answered by generating fresh keys: that would make every prior
    ciphertext unrecoverable without anyone noticing.
    """

    pass


class KernelLoadError(LedgerError):
    """The identity kernel could not be loaded or is not authenticated."""

    pass


class RecordValidationError(LedgerError, ValueError):
    """A record is missing required fields or carries invalid values."""

    pass


class ConfirmationRequiredError(LedgerError):
    """A kernel change needs explicit confirmation under its evolution rules."""

    def __init__(self, category: str, pending: str):
        self.category = category
        self.pending = pending
        super().__init__(f"{category} require explicit confirmation: {pending!r}")


class CompilationCancelled(LedgerError):
    """The caller cancelled a context pack compilation."""

    pass


class LedgerNotInitializedError(LedgerError):
    """An operation was attempted before Ledger.init()."""

    pass


# =============================================================================
# PROTOCOLS
# =============================================================================


@runtime_checkable
class ContentStore(Protocol):
    """Content-addressed byte store.

    ``put`` returns the address under which the bytes can be fetched.
    ``get`` raises NotFoundError for unknown addresses. Remote backends
    may raise TransientStoreError, which callers retry with backoff.
    """

    name: str

    def put(self, data: bytes) -> str: ...

    def get(self, address: str) -> bytes: ...


@runtime_checkable
class ListableContentStore(ContentStore, Protocol):
    """A store that can enumerate its addresses (local/dev backends only)."""

    def list(self) -> List[str]: ...


class EnvelopeSource(Protocol):
    """Where the compiler gets candidate envelopes from."""

    def query_envelopes(
        self,
        scope: Iterable[str],
        kinds: Iterable[str],
        since: Optional[datetime] = None,
        limit: int = 200,
    ) -> List["MemoryEnvelope"]: ...

    def revoked_ids(self) -> Set[str]: ...

    def verified_revoked_ids(
        self,
        trusted_keys: Optional[Mapping[str, str]] = None,
        allow_embedded_keys: bool = True,
    ) -> Set[str]: ...


class TokenEstimator(Protocol):
    """Estimate how many model tokens a piece of text costs."""

    def __call__(self, text: str) -> int: ...


def supports_listing(store: ContentStore) -> bool:
    """Whether a store offers the optional ``list()`` capability."""
    return isinstance(store, ListableContentStore) and callable(store.list)
