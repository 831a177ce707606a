"""Ledger record types: blob, envelope, access policy, identity kernel."""

from .attestation import (
    Attestation,
    AttestationCheck,
    AttestedRecord,
    SigningIdentity,
    VerificationResult,
)
from .blob import MemoryBlob, fetch_blob
from .canonical import canonical_json
from .envelope import Lineage, MemoryEnvelope, Revocation, looks_like_envelope
from .kernel import IdentityKernel
from .policy import AccessPolicy, PolicyConstraints, RedactionRules

__all__ = [
    "AccessPolicy",
    "Attestation",
    "AttestationCheck",
    "AttestedRecord",
    "IdentityKernel",
    "Lineage",
    "MemoryBlob",
    "MemoryEnvelope",
    "PolicyConstraints",
    "RedactionRules",
    "Revocation",
    "SigningIdentity",
    "VerificationResult",
    "canonical_json",
    "fetch_blob",
    "looks_like_envelope",
]
