"""MemoryEnvelope: the ledger-facing record.

An envelope carries metadata, a pointer to an encrypted blob, lineage
and attestations. It never contains plaintext. Envelopes are never
mutated after they are written: an update is a child envelope listing
the original in ``lineage.parents``, and a revocation is a tombstone
listing it in ``lineage.supersedes``.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from memledger.protocols import RecordValidationError
from memledger.records.attestation import Attestation, AttestedRecord, SigningIdentity
from memledger.records.canonical import canonical_json, load_json_object
from memledger.records.validation import (
    require_duration,
    require_enum,
    require_mapping,
    require_sha256,
    require_string,
    require_timestamp,
    string_list,
)
from memledger.types import (
    MLP_VERSION,
    AttesterType,
    Kind,
    RevocationReason,
    RiskClass,
    Scope,
    parse_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL_HINT = "P30D"
MAX_TAGS = 50


@dataclass
class Lineage:
    """Directed edges to other envelopes, by envelope id."""

    parents: List[str] = field(default_factory=list)
    supersedes: List[str] = field(default_factory=list)
    branches: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.parents = string_list(self.parents, "lineage.parents", 128, unique=True)
        self.supersedes = string_list(self.supersedes, "lineage.supersedes", 128, unique=True)
        self.branches = string_list(self.branches, "lineage.branches", 128, unique=True)

    def references(self) -> List[str]:
        """Every envelope id this lineage points at."""
        seen: List[str] = []
        for ref in self.parents + self.supersedes + self.branches:
            if ref not in seen:
                seen.append(ref)
        return seen

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "parents": list(self.parents),
            "supersedes": list(self.supersedes),
            "branches": list(self.branches),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Lineage":
        data = require_mapping(data, "lineage", required=False)
        return cls(
            parents=data.get("parents"),
            supersedes=data.get("supersedes"),
            branches=data.get("branches"),
        )


@dataclass
class Revocation:
    """Why and when a tombstone takes effect."""

    reason: str = RevocationReason.USER_REQUEST.value
    effective_at: str = field(default_factory=utc_now)

    def __post_init__(self):
        self.reason = require_enum(self.reason, RevocationReason, "revocation.reason")
        self.effective_at = require_timestamp(self.effective_at, "revocation.effective_at")

    def to_dict(self) -> Dict[str, str]:
        return {"reason": self.reason, "effective_at": self.effective_at}

    @classmethod
    def from_dict(cls, data: Any) -> "Revocation":
        data = require_mapping(data, "revocation")
        return cls(
            reason=data.get("reason", RevocationReason.USER_REQUEST.value),
            effective_at=data.get("effective_at") or utc_now(),
        )


@dataclass
class MemoryEnvelope(AttestedRecord):
    """Metadata and pointer record for one memory.

    Validated at construction: enum fields, timestamps, the TTL hint and
    the tombstone rules (non-empty ``lineage.supersedes``, no content).
    Non-tombstones must carry both a content address and a content hash.
    """

    scope: str = Scope.AGENT.value
    kind: str = Kind.SEMANTIC.value
    content_address: Optional[str] = None
    content_hash: Optional[str] = None
    envelope_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now)
    access_policy_ref: Optional[str] = None
    lineage: Lineage = field(default_factory=Lineage)
    topic_tags: List[str] = field(default_factory=list)
    risk_class: str = RiskClass.LOW.value
    ttl_hint: str = DEFAULT_TTL_HINT
    epoch_id: Optional[str] = None
    attestations: List[Attestation] = field(default_factory=list)
    revocation: Optional[Revocation] = None
    mlp_version: str = MLP_VERSION

    def __post_init__(self):
        self.envelope_id = require_string(self.envelope_id, "envelope_id", 128)
        self.scope = require_enum(self.scope, Scope, "scope")
        self.kind = require_enum(self.kind, Kind, "kind")
        self.risk_class = require_enum(self.risk_class, RiskClass, "risk_class")
        self.created_at = require_timestamp(self.created_at, "created_at")
        self.ttl_hint = require_duration(self.ttl_hint or DEFAULT_TTL_HINT, "ttl_hint")
        self.topic_tags = string_list(self.topic_tags, "topic_tags", 100, MAX_TAGS, unique=True)
        self.access_policy_ref = require_string(
            self.access_policy_ref, "access_policy_ref", 128, required=False
        )
        self.epoch_id = require_string(self.epoch_id, "epoch_id", 128, required=False)
        self.mlp_version = require_string(self.mlp_version, "mlp_version", 16)
        if isinstance(self.lineage, dict):
            self.lineage = Lineage.from_dict(self.lineage)
        if isinstance(self.revocation, dict):
            self.revocation = Revocation.from_dict(self.revocation)
        self.attestations = [
            a if isinstance(a, Attestation) else Attestation.from_dict(a)
            for a in (self.attestations or [])
        ]

        if self.kind == Kind.TOMBSTONE.value:
            if not self.lineage.supersedes:
                raise RecordValidationError("A tombstone must supersede at least one envelope")
            if self.content_address or self.content_hash:
                raise RecordValidationError("A tombstone cannot reference content")
            if self.revocation is None:
                self.revocation = Revocation()
        else:
            self.content_address = require_string(self.content_address, "content_address", 256)
            self.content_hash = require_sha256(self.content_hash, "content_hash")
            if self.revocation is not None:
                raise RecordValidationError("Only tombstones carry a revocation")

        if self.envelope_id in self.lineage.references():
            raise RecordValidationError("An envelope cannot reference itself in its lineage")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_tombstone(self) -> bool:
        return self.kind == Kind.TOMBSTONE.value

    @property
    def created_datetime(self) -> datetime:
        return parse_datetime(self.created_at)

    def supersedes(self, envelope_id: str) -> bool:
        return envelope_id in self.lineage.supersedes

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def to_signable_form(self) -> bytes:
        data = self.to_dict()
        data.pop("attestations")
        return canonical_json(data)

    def default_claims(self, identity: SigningIdentity) -> List[Dict[str, str]]:
        if identity.attester_type == AttesterType.WITNESS.value:
            return [{"claim_type": "validity", "claim_value": "witnessed"}]
        claims = [{"claim_type": "authorship", "claim_value": identity.attester_id}]
        if self.content_hash:
            claims.append({"claim_type": "integrity", "claim_value": self.content_hash})
        return claims

    # ------------------------------------------------------------------
    # Derived envelopes
    # ------------------------------------------------------------------

    def create_tombstone(
        self,
        reason: str = RevocationReason.USER_REQUEST.value,
        effective_at: Optional[str] = None,
        epoch_id: Optional[str] = None,
    ) -> "MemoryEnvelope":
        """Build an unsigned tombstone revoking this envelope."""
        return MemoryEnvelope(
            kind=Kind.TOMBSTONE.value,
            scope=self.scope,
            lineage=Lineage(supersedes=[self.envelope_id]),
            revocation=Revocation(reason=reason, effective_at=effective_at or utc_now()),
            epoch_id=epoch_id or self.epoch_id,
            mlp_version=self.mlp_version,
        )

    def create_child(
        self,
        content_address: str,
        content_hash: str,
        supersede: bool = False,
        **overrides: Any,
    ) -> "MemoryEnvelope":
        """Build an unsigned child envelope (an update).

        Scope, kind, tags, risk class, policy and epoch carry over unless
        overridden. The child starts with no attestations.
        """
        fields = {
            "scope": self.scope,
            "kind": self.kind,
            "topic_tags": list(self.topic_tags),
            "risk_class": self.risk_class,
            "access_policy_ref": self.access_policy_ref,
            "ttl_hint": self.ttl_hint,
            "epoch_id": self.epoch_id,
            "mlp_version": self.mlp_version,
        }
        fields.update(overrides)
        return MemoryEnvelope(
            content_address=content_address,
            content_hash=content_hash,
            lineage=Lineage(
                parents=[self.envelope_id],
                supersedes=[self.envelope_id] if supersede else [],
            ),
            **fields,
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mlp_version": self.mlp_version,
            "envelope_id": self.envelope_id,
            "content_address": self.content_address,
            "content_hash": self.content_hash,
            "created_at": self.created_at,
            "scope": self.scope,
            "kind": self.kind,
            "access_policy_ref": self.access_policy_ref,
            "lineage": self.lineage.to_dict(),
            "topic_tags": list(self.topic_tags),
            "risk_class": self.risk_class,
            "ttl_hint": self.ttl_hint,
            "epoch_id": self.epoch_id,
            "revocation": self.revocation.to_dict() if self.revocation else None,
            "attestations": [a.to_dict() for a in self.attestations],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "MemoryEnvelope":
        data = require_mapping(data, "envelope")
        if "envelope_id" not in data:
            raise RecordValidationError("envelope_id is required")
        revocation = data.get("revocation")
        return cls(
            envelope_id=data["envelope_id"],
            content_address=data.get("content_address"),
            content_hash=data.get("content_hash"),
            created_at=data.get("created_at"),
            scope=data.get("scope"),
            kind=data.get("kind"),
            access_policy_ref=data.get("access_policy_ref"),
            lineage=Lineage.from_dict(data.get("lineage")),
            topic_tags=data.get("topic_tags"),
            risk_class=data.get("risk_class", RiskClass.LOW.value),
            ttl_hint=data.get("ttl_hint") or DEFAULT_TTL_HINT,
            epoch_id=data.get("epoch_id"),
            attestations=[Attestation.from_dict(a) for a in data.get("attestations") or []],
            revocation=Revocation.from_dict(revocation) if revocation else None,
            mlp_version=data.get("mlp_version", MLP_VERSION),
        )

    def to_bytes(self) -> bytes:
        """Bytes persisted to the content store."""
        return canonical_json(self.to_dict())

    @classmethod
    def from_bytes(cls, data: bytes) -> "MemoryEnvelope":
        return cls.from_dict(load_json_object(data, "envelope"))


def looks_like_envelope(data: Dict[str, Any]) -> bool:
    """Whether a parsed stored object is an envelope (blobs are sealed payloads)."""
    return "envelope_id" in data and "kind" in data
