"""Attestations: signatures binding a principal to a claim about a record.

Records that carry attestations (envelopes, access policies) mix in
``AttestedRecord``. Signing appends, never replaces, so several parties
can co-sign the same record. Verification reports every attestation
individually and is only valid overall when there is at least one
attestation and all of them check out.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from memledger.crypto.codec import SIGNATURE_ALGORITHM, sign_message, verify_signature
from memledger.protocols import RecordValidationError
from memledger.records.validation import (
    require_enum,
    require_mapping,
    require_string,
    require_timestamp,
)
from memledger.types import AttesterType, TrustLevel, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SigningIdentity:
    """A principal able to sign records.

    Attributes:
        attester_id: Who is signing (a kernel id for the agent itself)
        private_key: Base64 Ed25519 private key
        public_key: Base64 Ed25519 public key, embedded in attestations
        attester_type: user | agent | host | witness
        trust_level: Trust level the attestations carry
    """

    attester_id: str
    private_key: str
    public_key: str
    attester_type: str = AttesterType.AGENT.value
    trust_level: str = TrustLevel.SELF_SIGNED.value

    def __post_init__(self):
        self.attester_id = require_string(self.attester_id, "attester_id", 256)
        self.attester_type = require_enum(self.attester_type, AttesterType, "attester_type")
        self.trust_level = require_enum(self.trust_level, TrustLevel, "trust_level")

    def __repr__(self) -> str:
        return (
            f"SigningIdentity(attester_id={self.attester_id!r}, "
            f"attester_type={self.attester_type!r}, trust_level={self.trust_level!r})"
        )

    @classmethod
    def from_key_store(
        cls,
        key_store,
        attester_id: str,
        attester_type: str = AttesterType.AGENT.value,
        trust_level: str = TrustLevel.SELF_SIGNED.value,
    ) -> "SigningIdentity":
        key_pair = key_store.signing_key_pair()
        return cls(
            attester_id=attester_id,
            private_key=key_pair.private_key,
            public_key=key_pair.public_key,
            attester_type=attester_type,
            trust_level=trust_level,
        )


@dataclass
class Attestation:
    """One signature over a record's signable form."""

    attester_id: str
    signature: str
    attester_type: str = AttesterType.AGENT.value
    trust_level: str = TrustLevel.SELF_SIGNED.value
    algorithm: str = SIGNATURE_ALGORITHM
    signed_at: str = field(default_factory=utc_now)
    public_key: Optional[str] = None
    claims: List[Dict[str, str]] = field(default_factory=list)
    attestation_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        self.attestation_id = require_string(self.attestation_id, "attestation_id", 128)
        self.attester_id = require_string(self.attester_id, "attester_id", 256)
        self.signature = require_string(self.signature, "signature", 256)
        self.attester_type = require_enum(self.attester_type, AttesterType, "attester_type")
        self.trust_level = require_enum(self.trust_level, TrustLevel, "trust_level")
        self.algorithm = require_string(self.algorithm, "algorithm", 32)
        self.signed_at = require_timestamp(self.signed_at, "signed_at")
        self.public_key = require_string(self.public_key, "public_key", 128, required=False)
        if not isinstance(self.claims, list):
            raise RecordValidationError("claims must be an array")
        for i, claim in enumerate(self.claims):
            require_mapping(claim, f"claims[{i}]")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attestation_id": self.attestation_id,
            "attester_id": self.attester_id,
            "attester_type": self.attester_type,
            "trust_level": self.trust_level,
            "signature": self.signature,
            "algorithm": self.algorithm,
            "signed_at": self.signed_at,
            "public_key": self.public_key,
            "claims": [dict(c) for c in self.claims],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Attestation":
        data = require_mapping(data, "attestation")
        return cls(
            attestation_id=data.get("attestation_id") or str(uuid.uuid4()),
            attester_id=data.get("attester_id"),
            attester_type=data.get("attester_type", AttesterType.AGENT.value),
            trust_level=data.get("trust_level", TrustLevel.SELF_SIGNED.value),
            signature=data.get("signature"),
            algorithm=data.get("algorithm", SIGNATURE_ALGORITHM),
            signed_at=data.get("signed_at") or utc_now(),
            public_key=data.get("public_key"),
            claims=list(data.get("claims") or []),
        )


@dataclass
class AttestationCheck:
    """Outcome of verifying a single attestation."""

    attester_id: str
    valid: bool
    trust_level: str
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attester_id": self.attester_id,
            "valid": self.valid,
            "trust_level": self.trust_level,
            "reason": self.reason,
        }


@dataclass
class VerificationResult:
    """Overall verdict plus the per-attestation detail behind it."""

    valid: bool
    attestations: List[AttestationCheck] = field(default_factory=list)
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.valid

    @property
    def failed(self) -> List[AttestationCheck]:
        return [check for check in self.attestations if not check.valid]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "attestations": [check.to_dict() for check in self.attestations],
        }


class AttestedRecord:
    """Signing and verification for records with an ``attestations`` list.

    Subclasses provide ``to_signable_form()`` and ``default_claims()``.
    """

    attestations: List[Attestation]

    def to_signable_form(self) -> bytes:
        raise NotImplementedError

    def default_claims(self, identity: SigningIdentity) -> List[Dict[str, str]]:
        return [{"claim_type": "integrity", "claim_value": "valid"}]

    def sign(
        self, identity: SigningIdentity, claims: Optional[List[Dict[str, str]]] = None
    ) -> Attestation:
        """Append an attestation by ``identity``. Existing ones are kept."""
        signature = sign_message(self.to_signable_form(), identity.private_key)
        attestation = Attestation(
            attester_id=identity.attester_id,
            attester_type=identity.attester_type,
            trust_level=identity.trust_level,
            signature=signature,
            public_key=identity.public_key,
            claims=claims if claims is not None else self.default_claims(identity),
        )
        self.attestations.append(attestation)
        return attestation

    def verify(
        self,
        trusted_keys: Optional[Mapping[str, str]] = None,
        allow_embedded_keys: bool = True,
    ) -> VerificationResult:
        """Check every attestation against the current signable form.

        Args:
            trusted_keys: attester_id -> base64 public key. Takes
                precedence over any key embedded in the attestation.
            allow_embedded_keys: Fall back to the attestation's own
                ``public_key`` when no trusted key is known.

        Returns:
            VerificationResult, valid only if there is at least one
            attestation and every attestation verifies.
        """
        if not self.attestations:
            return VerificationResult(valid=False, reason="no attestations")

        trusted_keys = trusted_keys or {}
        signable = self.to_signable_form()
        checks: List[AttestationCheck] = []
        for attestation in self.attestations:
            public_key = trusted_keys.get(attestation.attester_id)
            if public_key is None and allow_embedded_keys:
                public_key = attestation.public_key

            if attestation.algorithm != SIGNATURE_ALGORITHM:
                reason = f"unsupported algorithm {attestation.algorithm}"
            elif not public_key:
                reason = "no public key available"
            elif verify_signature(signable, attestation.signature, public_key):
                reason = None
            else:
                reason = "signature mismatch"

            checks.append(
                AttestationCheck(
                    attester_id=attestation.attester_id,
                    valid=reason is None,
                    trust_level=attestation.trust_level,
                    reason=reason,
                )
            )

        valid = all(check.valid for check in checks)
        if not valid:
            logger.debug(
                f"Attestation check failed for {len([c for c in checks if not c.valid])} "
                f"of {len(checks)} attestations"
            )
        return VerificationResult(
            valid=valid,
            attestations=checks,
            reason=None if valid else "one or more attestations failed",
        )
