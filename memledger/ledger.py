"""Ledger: the memledger facade.

Wires configuration, key custody, codec, content store, envelope index
and identity kernel together.

Write path::

    content -> MemoryBlob (encrypt) -> store (blob address)
            -> MemoryEnvelope (sign) -> store (envelope address) -> index

Read path::

    kernel (load, verify) -> ContextPackCompiler -> ContextPack

The write path is not atomic across steps. A crash between the blob
write and the envelope write leaves an orphaned blob that
``reconcile()`` reports.

Example:
    ledger = Ledger(load_config())
    ledger.init(values=["honesty"])
    receipt = ledger.store("Prefers concise answers", kind="semantic", tags=["style"])
    pack = ledger.compile_context_pack("help with writing style")
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from memledger.config import LedgerConfig, load_config
from memledger.context_pack import CompileConstraints, ContextPack, ContextPackCompiler
from memledger.crypto.codec import DEFAULT_KEY_ID, Codec, EncryptedPayload
from memledger.crypto.keystore import KeyStore
from memledger.lineage import ancestry
from memledger.logging_config import (
    log_compile,
    log_epoch,
    log_revoke,
    log_store,
    setup_memledger_logging,
)
from memledger.protocols import (
    ContentStore,
    KernelLoadError,
    LedgerNotInitializedError,
    NotFoundError,
    RecordValidationError,
    TokenEstimator,
    VerificationFailure,
    supports_listing,
)
from memledger.reconcile import ReconcileFinding, run_reconciliation
from memledger.records.attestation import SigningIdentity, VerificationResult
from memledger.records.blob import MemoryBlob, fetch_blob
from memledger.records.canonical import load_json_object
from memledger.records.envelope import Lineage, MemoryEnvelope
from memledger.records.kernel import IdentityKernel
from memledger.records.policy import AccessPolicy
from memledger.storage.factory import create_store
from memledger.storage.index import EnvelopeIndex
from memledger.types import (
    MLP_VERSION,
    Kind,
    RevocationReason,
    RiskClass,
    Scope,
    Strictness,
    utc_now,
)
from memledger.utils import atomic_write_bytes

logger = logging.getLogger(__name__)


@dataclass
class StoreReceipt:
    """Where a write landed."""

    envelope: MemoryEnvelope
    envelope_address: str
    blob_address: Optional[str] = None

    @property
    def envelope_id(self) -> str:
        return self.envelope.envelope_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "envelope_id": self.envelope.envelope_id,
            "envelope_address": self.envelope_address,
            "blob_address": self.blob_address,
            "content_hash": self.envelope.content_hash,
            "stored_at": self.envelope.created_at,
        }


@dataclass
class LoadedMemory:
    """A single memory read back by ``Ledger.load``."""

    envelope: MemoryEnvelope
    address: str
    content: Any = None
    tombstoned: bool = False
    revoked: bool = False
    verification: Optional[VerificationResult] = None
    content_hash_valid: bool = False

    @property
    def verified(self) -> bool:
        return bool(self.verification) and self.content_hash_valid

    def to_dict(self) -> Dict[str, Any]:
        return {
            "envelope": self.envelope.to_dict(),
            "address": self.address,
            "content": self.content,
            "tombstoned": self.tombstoned,
            "revoked": self.revoked,
            "verified": self.verified,
            "verification": self.verification.to_dict() if self.verification else None,
            "content_hash_valid": self.content_hash_valid,
        }


class Ledger:
    """Sovereign memory ledger for one identity.

    Args:
        config: Paths and store settings (default: ``load_config()``)
        store: Content store override (default: built from ``config.store``)
        estimator: Token estimator for context packs
    """

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        store: Optional[ContentStore] = None,
        estimator: Optional[TokenEstimator] = None,
    ):
        self.config = config or load_config()
        self.key_store = KeyStore(self.config.key_dir)
        self.codec = Codec(self.key_store)
        self.content_store = store if store is not None else create_store(self.config.store)
        self.index = EnvelopeIndex(self.config.index_path)
        self.estimator = estimator
        self._kernel: Optional[IdentityKernel] = None
        self._attester_keys: Dict[str, str] = {}
        self._lock = threading.RLock()

        backend = getattr(self.content_store, "name", "?")
        logger.debug(f"Ledger created: home={self.config.home}, store={backend}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._kernel is not None

    @property
    def kernel(self) -> IdentityKernel:
        return self._ensure_init()

    def _ensure_init(self) -> IdentityKernel:
        if self._kernel is None:
            raise LedgerNotInitializedError("Ledger not initialized; call init() first")
        return self._kernel

    def init(
        self,
        values: Iterable[str] = (),
        boundaries: Iterable[str] = (),
        strictness: Optional[str] = None,
    ) -> IdentityKernel:
        """Load the identity kernel, creating and signing one on first use.

        ``values``, ``boundaries`` and ``strictness`` only apply when a
        new kernel is created.

        Raises:
            KernelLoadError: The kernel file is malformed or its signature
                does not verify against the local signing key.
            KeyStoreError: Key material could not be created or read.
        """
        with self._lock:
            self.key_store.ensure_initialized()
            if self.config.kernel_path.exists():
                self._kernel = self._load_kernel()
                self._setup_logging()
                logger.info(f"Loaded identity kernel {self._kernel.kernel_id}")
                return self._kernel

            kernel = IdentityKernel()
            if strictness is not None:
                kernel.threat_posture["anti_poisoning_strictness"] = Strictness(strictness).value
            for value in values:
                kernel.add_value(value, confirmed=True)
            for boundary in boundaries:
                kernel.add_boundary(boundary, confirmed=True)
            self._save_kernel(kernel)
            self._kernel = kernel
            self._setup_logging()
            logger.info(f"Created identity kernel {kernel.kernel_id}")
            return kernel

    def _setup_logging(self) -> None:
        setup_memledger_logging(
            self._kernel.kernel_id, self.config.log_level, home=self.config.home
        )

    def close(self) -> None:
        close = getattr(self.content_store, "close", None)
        if callable(close):
            close()

    def _load_kernel(self) -> IdentityKernel:
        kernel = IdentityKernel.load(self.config.kernel_path)
        if not kernel.verify(self.codec.public_key):
            raise KernelLoadError(
                f"Identity kernel {kernel.kernel_id} is not signed by the local key"
            )
        return kernel

    def _save_kernel(self, kernel: IdentityKernel) -> None:
        key_pair = self.key_store.signing_key_pair()
        kernel.sign(key_pair.private_key, key_pair.public_key)
        kernel.save(self.config.kernel_path)

    def identity(self) -> SigningIdentity:
        """Signing identity of the current kernel."""
        return SigningIdentity.from_key_store(self.key_store, self.kernel.kernel_id)

    def trust_attester(self, attester_id: str, public_key: str) -> None:
        """Trust another party's key for verifying its co-signatures."""
        self._attester_keys[attester_id] = public_key

    def trusted_keys(self) -> Dict[str, str]:
        """Trusted attesters plus every id this identity has held.

        The identity's own ids always map to the local public key.
        """
        keys = dict(self._attester_keys)
        public_key = self.codec.public_key
        keys.update({kernel_id: public_key for kernel_id in self.kernel.lineage_ids()})
        return keys

    def _allow_embedded_keys(self) -> bool:
        return self.kernel.strictness in (Strictness.LOW.value, Strictness.MEDIUM.value)

    def revoked_ids(self) -> Set[str]:
        """Ids revoked by a tombstone or superseding child that verifies."""
        return self.index.verified_revoked_ids(self.trusted_keys(), self._allow_embedded_keys())

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def store(
        self,
        content: Any,
        kind: str = Kind.SEMANTIC.value,
        scope: str = Scope.AGENT.value,
        tags: Optional[List[str]] = None,
        risk_class: str = RiskClass.LOW.value,
        policy_id: Optional[str] = None,
        ttl_hint: Optional[str] = None,
        parents: Optional[List[str]] = None,
        shreddable: bool = False,
    ) -> StoreReceipt:
        """Encrypt and store a memory.

        Args:
            content: Any JSON value except null
            kind: episodic | semantic | reflection | kernel_ref | policy
            scope: user | agent | shared | system
            tags: Topic tags
            risk_class: low | med | high
            policy_id: Access policy the memory is governed by (must exist)
            ttl_hint: ISO-8601 duration (default: the kernel's default TTL)
            parents: Envelope ids this memory derives from
            shreddable: Seal under a dedicated data key so ``shred()``
                can destroy this one memory

        Raises:
            RecordValidationError: Invalid fields or an unknown policy.
        """
        kernel = self.kernel
        if kind == Kind.TOMBSTONE.value:
            raise RecordValidationError("Tombstones are written with revoke()")
        if policy_id is not None and self.index.latest_policy_envelope(policy_id) is None:
            raise RecordValidationError(f"Unknown access policy: {policy_id}")

        blob = MemoryBlob(content=content)
        key_id = self.key_store.create_data_key() if shreddable else None
        blob_address = self.content_store.put(blob.encrypt(self.codec, key_id=key_id))
        envelope = MemoryEnvelope(
            scope=scope,
            kind=kind,
            content_address=blob_address,
            content_hash=blob.content_hash(),
            access_policy_ref=policy_id,
            lineage=Lineage(parents=list(parents or [])),
            topic_tags=list(tags or []),
            risk_class=risk_class,
            ttl_hint=ttl_hint or kernel.memory_defaults.get("default_ttl"),
            epoch_id=kernel.epoch_id,
        )
        return self._persist(envelope, blob_address)

    def update(
        self,
        ref: str,
        content: Any,
        supersede: bool = True,
        shreddable: bool = False,
        **overrides: Any,
    ) -> StoreReceipt:
        """Store a new version of a memory as a child envelope.

        With ``supersede`` the original is replaced: it drops out of
        context packs like a revoked memory. The original envelope is
        never modified.
        """
        kernel = self.kernel
        parent, _ = self._resolve(ref)
        if parent.is_tombstone:
            raise RecordValidationError("Cannot update a tombstone")
        if parent.envelope_id in self.revoked_ids():
            raise RecordValidationError(f"Envelope {parent.envelope_id} has been revoked")

        blob = MemoryBlob(content=content)
        key_id = self.key_store.create_data_key() if shreddable else None
        blob_address = self.content_store.put(blob.encrypt(self.codec, key_id=key_id))
        overrides.setdefault("epoch_id", kernel.epoch_id)
        child = parent.create_child(
            blob_address, blob.content_hash(), supersede=supersede, **overrides
        )
        return self._persist(child, blob_address)

    def revoke(self, ref: str, reason: str = RevocationReason.USER_REQUEST.value) -> StoreReceipt:
        """Write a tombstone revoking a memory. The original stays stored."""
        kernel = self.kernel
        envelope, _ = self._resolve(ref)
        if envelope.is_tombstone:
            raise RecordValidationError("Cannot revoke a tombstone")
        tombstone = envelope.create_tombstone(reason=reason, epoch_id=kernel.epoch_id)
        receipt = self._persist(tombstone)
        log_revoke(
            kernel.kernel_id,
            envelope.envelope_id,
            tombstone.envelope_id,
            tombstone.revocation.reason,
            home=self.config.home,
        )
        logger.info(f"Revoked envelope {envelope.envelope_id[:8]} ({reason})")
        return receipt

    def cosign(
        self,
        ref: str,
        identity: SigningIdentity,
        claims: Optional[List[Dict[str, str]]] = None,
    ) -> StoreReceipt:
        """Add another party's attestation to an envelope.

        The co-signed envelope is persisted under a new address and the
        index points at it. Earlier attestations are kept.
        """
        envelope, _ = self._resolve(ref)
        envelope.sign(identity, claims)
        address = self.content_store.put(envelope.to_bytes())
        self.index.add(envelope, address)
        logger.info(
            f"Envelope {envelope.envelope_id[:8]} co-signed by {identity.attester_id} "
            f"({len(envelope.attestations)} attestations)"
        )
        return StoreReceipt(envelope, address, envelope.content_address)

    def _persist(
        self, envelope: MemoryEnvelope, blob_address: Optional[str] = None
    ) -> StoreReceipt:
        envelope.sign(self.identity())
        address = self.content_store.put(envelope.to_bytes())
        self.index.add(envelope, address)
        log_store(
            self.kernel.kernel_id,
            envelope.envelope_id,
            envelope.kind,
            address,
            home=self.config.home,
        )
        logger.debug(f"Stored {envelope.kind} envelope {envelope.envelope_id[:8]} at {address}")
        return StoreReceipt(envelope, address, blob_address)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def _resolve(self, ref: str):
        """Envelope and its address, by envelope id or by store address."""
        address = self.index.address_of(ref)
        if address is not None:
            return self.index.get(ref), address
        envelope = self.index.find_by_address(ref)
        if envelope is not None:
            return envelope, ref
        try:
            return MemoryEnvelope.from_bytes(self.content_store.get(ref)), ref
        except ValueError as e:
            raise NotFoundError(ref, "ledger") from e

    def load(self, ref: str) -> LoadedMemory:
        """Read one memory by envelope id or envelope address.

        Access policies are not applied: this is the owner's own read.
        Tombstones come back without content; content whose hash does
        not match the envelope is withheld.

        Raises:
            NotFoundError: Unknown envelope or missing blob.
            DecryptionError: The blob cannot be opened (shredded memory).
        """
        self._ensure_init()
        envelope, address = self._resolve(ref)
        if envelope.is_tombstone:
            return LoadedMemory(envelope=envelope, address=address, tombstoned=True)

        verification = envelope.verify(self.trusted_keys(), self._allow_embedded_keys())
        blob = MemoryBlob.decrypt(self.content_store.get(envelope.content_address), self.codec)
        hash_valid = blob.content_hash() == envelope.content_hash
        if not hash_valid:
            logger.warning(f"Content hash mismatch for envelope {envelope.envelope_id[:8]}")
        return LoadedMemory(
            envelope=envelope,
            address=address,
            content=blob.content if hash_valid else None,
            revoked=envelope.envelope_id in self.revoked_ids(),
            verification=verification,
            content_hash_valid=hash_valid,
        )

    def history(self, ref: str) -> List[MemoryEnvelope]:
        """Known ancestors of a memory through its parents, nearest first."""
        envelope, _ = self._resolve(ref)
        return ancestry(self.index.get, envelope.envelope_id)

    def compile_context_pack(
        self,
        intent: str,
        constraints: Optional[CompileConstraints] = None,
        principal: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
    ) -> ContextPack:
        """Compile a ContextPack for a session.

        Raises:
            LedgerNotInitializedError: ``init()`` was not called.
            KernelLoadError: The kernel does not verify.
            CompilationCancelled: ``cancel_event`` was set.
        """
        kernel = self.kernel
        compiler = ContextPackCompiler(
            self.index,
            self.content_store,
            self.codec,
            policy_resolver=self.get_policy,
            estimator=self.estimator,
            max_workers=self.config.fetch_concurrency,
        )
        pack = compiler.compile(
            kernel,
            intent,
            constraints=constraints,
            principal=principal,
            trusted_keys=self.trusted_keys(),
            cancel_event=cancel_event,
            now=now,
        )

        with self._lock:
            kernel.epoch_state["last_compiled"] = utc_now()
            self._save_kernel(kernel)

        trace = pack.compilation_trace
        log_compile(
            kernel.kernel_id,
            intent,
            trace.memories_considered,
            trace.memories_included,
            trace.memories_denied,
            trace.total_tokens,
            home=self.config.home,
        )
        return pack

    # ------------------------------------------------------------------
    # Access policies
    # ------------------------------------------------------------------

    def save_policy(self, policy: AccessPolicy) -> StoreReceipt:
        """Sign and store a policy version.

        Policies are sealed like memories, inside a ``policy`` envelope
        whose ``access_policy_ref`` is the policy id. The newest version
        wins.
        """
        policy.attestations = []
        policy.sign(self.identity())
        blob = MemoryBlob(content=policy.to_dict())
        blob_address = self.content_store.put(blob.encrypt(self.codec))
        envelope = MemoryEnvelope(
            scope=Scope.SYSTEM.value,
            kind=Kind.POLICY.value,
            content_address=blob_address,
            content_hash=blob.content_hash(),
            access_policy_ref=policy.policy_id,
            epoch_id=self.kernel.epoch_id,
        )
        return self._persist(envelope, blob_address)

    def create_policy(
        self,
        shared_with: Iterable[str] = (),
        permissions: Iterable[str] = ("read",),
    ) -> AccessPolicy:
        """Create and save a policy owned by this identity."""
        shared_with = list(shared_with)
        owner_id = self.kernel.kernel_id
        if shared_with:
            policy = AccessPolicy.create_shared(owner_id, shared_with, permissions)
        else:
            policy = AccessPolicy.create_default(owner_id)
        self.save_policy(policy)
        return policy

    def get_policy(self, policy_id: str) -> Optional[AccessPolicy]:
        """Latest saved version of a policy, or None if unknown.

        Raises:
            VerificationFailure: The stored policy or its envelope does not
                verify.
            NotFoundError: The policy blob is missing.
            DecryptionError: The policy blob cannot be opened.
        """
        envelope_id = self.index.latest_policy_envelope(policy_id)
        if envelope_id is None:
            return None
        envelope = self.index.get(envelope_id)
        trusted = self.trusted_keys()
        allow_embedded = self._allow_embedded_keys()
        if not envelope.verify(trusted, allow_embedded):
            raise VerificationFailure(f"Policy envelope {envelope_id} does not verify")
        blob = fetch_blob(self.content_store, self.codec, envelope)
        policy = AccessPolicy.from_dict(blob.content)
        if not policy.verify(trusted, allow_embedded):
            raise VerificationFailure(f"Policy {policy_id} does not verify")
        return policy

    # ------------------------------------------------------------------
    # Identity kernel
    # ------------------------------------------------------------------

    def add_value(self, value: str, confirmed: bool = False) -> bool:
        """Add a kernel value. Returns False for a duplicate.

        Raises:
            ConfirmationRequiredError: Value changes need confirmation.
        """
        with self._lock:
            added = self.kernel.add_value(value, confirmed=confirmed)
            if added:
                self._save_kernel(self.kernel)
            return added

    def add_boundary(self, boundary: str, confirmed: bool = False) -> bool:
        with self._lock:
            added = self.kernel.add_boundary(boundary, confirmed=confirmed)
            if added:
                self._save_kernel(self.kernel)
            return added

    def new_epoch(self, reason: Optional[str] = None) -> Dict[str, Any]:
        """Transition the identity into a new epoch.

        A sealed snapshot of the outgoing kernel is stored as a
        ``kernel_ref`` memory, then the kernel archives its id, mints a
        new one and is re-signed.
        """
        with self._lock:
            kernel = self.kernel
            previous_id = kernel.kernel_id
            snapshot = MemoryBlob(content=kernel.to_dict())
            blob_address = self.content_store.put(snapshot.encrypt(self.codec))
            snapshot_receipt = self._persist(
                MemoryEnvelope(
                    scope=Scope.SYSTEM.value,
                    kind=Kind.KERNEL_REF.value,
                    content_address=blob_address,
                    content_hash=snapshot.content_hash(),
                    topic_tags=["identity", "epoch"],
                    epoch_id=kernel.epoch_id,
                ),
                blob_address,
            )

            key_pair = self.key_store.signing_key_pair()
            epoch_state = kernel.new_epoch(reason, private_key=key_pair.private_key)
            self._save_kernel(kernel)

        log_epoch(kernel.kernel_id, previous_id, reason, home=self.config.home)
        logger.info(f"Identity {previous_id[:8]} entered epoch as {kernel.kernel_id[:8]}")
        return {
            "previous_kernel_id": previous_id,
            "kernel_id": kernel.kernel_id,
            "epoch_state": epoch_state,
            "snapshot_envelope_id": snapshot_receipt.envelope_id,
        }

    def generate_cartouche(self) -> Dict[str, Any]:
        with self._lock:
            key_pair = self.key_store.signing_key_pair()
            cartouche = self.kernel.generate_cartouche(private_key=key_pair.private_key)
            self._save_kernel(self.kernel)
            return dict(cartouche)

    def export_identity(self, path: Optional[Path] = None) -> Dict[str, Any]:
        """Encrypted kernel export, written to ``path`` when given.

        Opening it needs this installation's symmetric key.
        """
        document = self.kernel.export_payload(self.codec)
        if path is not None:
            data = json.dumps(document, indent=2).encode("utf-8")
            atomic_write_bytes(Path(path), data, mode=0o600)
            logger.info(f"Exported identity kernel to {path}")
        return document

    def import_identity(self, source: Union[Path, str, Dict[str, Any]]) -> Dict[str, Any]:
        """Replace the local kernel with an exported one.

        Args:
            source: Export document, or a path to one

        Raises:
            DecryptionError: The export was sealed under another key.
            KernelLoadError: The exported kernel's signature is invalid.
        """
        if isinstance(source, dict):
            document = source
        else:
            try:
                document = load_json_object(Path(source).read_bytes(), "identity export")
            except ValueError as e:
                raise KernelLoadError(f"Malformed identity export {source}: {e}") from e
        kernel = IdentityKernel.from_export(document, self.codec)
        if not kernel.verify():
            raise KernelLoadError(f"Imported kernel {kernel.kernel_id} has an invalid signature")

        with self._lock:
            self.key_store.ensure_initialized()
            self._save_kernel(kernel)
            self._kernel = kernel
        logger.info(f"Imported identity kernel {kernel.kernel_id}")
        return kernel.get_summary()

    # ------------------------------------------------------------------
    # Deletion and maintenance
    # ------------------------------------------------------------------

    def shred(self, ref: str, tombstone: bool = True) -> bool:
        """Crypto-shred one memory by destroying its data key.

        Only memories stored with ``shreddable=True`` have a dedicated
        key. The envelope persists; its content becomes unrecoverable.

        Returns:
            True if a key was destroyed, False if it was already gone

        Raises:
            RecordValidationError: The memory is sealed under the default
                key and cannot be shredded individually.
        """
        self._ensure_init()
        envelope, _ = self._resolve(ref)
        if envelope.is_tombstone:
            raise RecordValidationError("Cannot shred a tombstone")
        sealed = load_json_object(self.content_store.get(envelope.content_address), "blob")
        key_id = EncryptedPayload.from_dict(sealed).key_id
        if key_id == DEFAULT_KEY_ID:
            raise RecordValidationError(
                f"Envelope {envelope.envelope_id} is sealed under the default key"
            )
        destroyed = self.key_store.destroy_data_key(key_id)
        if tombstone and envelope.envelope_id not in self.revoked_ids():
            self.revoke(envelope.envelope_id, reason=RevocationReason.USER_REQUEST.value)
        logger.info(f"Shredded envelope {envelope.envelope_id[:8]}")
        return destroyed

    def reconcile(self, detect_cycles: bool = True) -> List[ReconcileFinding]:
        return run_reconciliation(self.index, self.content_store, detect_cycles=detect_cycles)

    def rebuild_index(self) -> int:
        """Rebuild the envelope index from a listable store."""
        return self.index.rebuild(self.content_store)

    def status(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "mlp_version": MLP_VERSION,
            "identity": self._kernel.get_summary() if self._kernel else None,
            "storage": {
                "provider": self.config.store.provider,
                "backend": getattr(self.content_store, "name", "unknown"),
                "listable": supports_listing(self.content_store),
            },
            "encryption": {"keys_exist": self.key_store.is_initialized()},
            "index": {
                "envelopes": self.index.count_by_kind(),
                "revoked": len(self.revoked_ids()) if self.initialized else None,
            },
            "home": str(self.config.home),
        }
