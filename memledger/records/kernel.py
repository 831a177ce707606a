"""IdentityKernel: the agent's portable "self".

Holds invariants (values, boundaries, preferences), evolution rules,
epoch state and the kernel history. The kernel is signed over all of its
fields except the signature itself. An unsigned kernel, or one whose
signature does not verify, is untrusted: no context pack is compiled
for it.

Mutations (value/boundary additions, epoch transitions) clear the
signature. The ledger re-signs before saving.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from memledger.crypto.codec import (
    Codec,
    EncryptedPayload,
    hash_bytes,
    sign_message,
    verify_signature,
)
from memledger.protocols import (
    ConfirmationRequiredError,
    DecryptionError,
    KernelLoadError,
    RecordValidationError,
)
from memledger.records.canonical import canonical_json, load_json_object
from memledger.records.validation import (
    require_bool,
    require_enum,
    require_mapping,
    require_string,
    require_subset,
    require_timestamp,
    string_list,
)
from memledger.types import (
    BOUNDARY_CHANGES,
    MLP_VERSION,
    VALUE_CHANGES,
    ContradictionHandling,
    Strictness,
    utc_now,
)
from memledger.utils import atomic_write_bytes

logger = logging.getLogger(__name__)

EXPORT_TYPE = "identity_kernel_export"
CARTOUCHE_DIALECT = "GLYPH-1"
CARTOUCHE_DIALECT_VERSION = "1.0"
CHANGE_CATEGORIES = (VALUE_CHANGES, BOUNDARY_CHANGES)

VALUE_GLYPHS = ("⟁", "🜇", "◈", "∿", "⊛")
BOUNDARY_GLYPHS = ("↺", "⧫", "⚷", "⌬", "⏣")
POSTURE_GLYPHS = {
    Strictness.LOW.value: "○",
    Strictness.MEDIUM.value: "◐",
    Strictness.HIGH.value: "●",
    Strictness.PARANOID.value: "◉",
}


def new_epoch_id() -> str:
    return f"epoch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def _default_invariants() -> Dict[str, Any]:
    return {"values": [], "boundaries": [], "preferences": {}}


def _default_evolution_rules() -> Dict[str, Any]:
    return {
        "contradiction_handling": ContradictionHandling.REQUIRE_CONFIRMATION.value,
        "confirmation_required": [BOUNDARY_CHANGES, VALUE_CHANGES],
        "forbidden_inferences": [],
    }


def _default_epoch_state() -> Dict[str, Any]:
    now = utc_now()
    return {"epoch_id": new_epoch_id(), "epoch_started": now, "last_compiled": now}


def _default_pointers() -> Dict[str, Any]:
    return {"kernel_history": [], "primary_storage": None}


def _default_threat_posture() -> Dict[str, Any]:
    return {
        "anti_poisoning_strictness": Strictness.MEDIUM.value,
        "high_impact_confirmation": True,
    }


def _default_memory_defaults() -> Dict[str, Any]:
    return {
        "eligible_for_storage": ["reflections", "semantic", "episodic_with_consent"],
        "default_ttl": "P30D",
        "review_cadence": "P7D",
    }


def _default_gap_protocol() -> Dict[str, Any]:
    return {
        "admit_discontinuity": True,
        "discontinuity_rules": ["acknowledge gaps", "do not fabricate"],
    }


def _default_relationship_templates() -> Dict[str, Any]:
    return {"default_sharing_level": "minimal", "trust_requirements": []}


@dataclass
class IdentityKernel:
    """Signed identity record. Created with defaults on first use."""

    kernel_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    mlp_version: str = MLP_VERSION
    invariants: Dict[str, Any] = field(default_factory=_default_invariants)
    evolution_rules: Dict[str, Any] = field(default_factory=_default_evolution_rules)
    relationship_templates: Dict[str, Any] = field(default_factory=_default_relationship_templates)
    memory_defaults: Dict[str, Any] = field(default_factory=_default_memory_defaults)
    epoch_state: Dict[str, Any] = field(default_factory=_default_epoch_state)
    pointers: Dict[str, Any] = field(default_factory=_default_pointers)
    threat_posture: Dict[str, Any] = field(default_factory=_default_threat_posture)
    gap_protocol: Dict[str, Any] = field(default_factory=_default_gap_protocol)
    cartouche: Optional[Dict[str, Any]] = None
    signer_public_key: Optional[str] = None
    signature: Optional[str] = None

    def __post_init__(self):
        self.kernel_id = require_string(self.kernel_id, "kernel_id", 128)
        self.mlp_version = require_string(self.mlp_version, "mlp_version", 16)

        invariants = require_mapping(self.invariants, "invariants")
        self.invariants = {
            "values": string_list(invariants.get("values"), "invariants.values", unique=True),
            "boundaries": string_list(
                invariants.get("boundaries"), "invariants.boundaries", unique=True
            ),
            "preferences": dict(
                require_mapping(invariants.get("preferences"), "preferences", required=False)
            ),
        }

        rules = require_mapping(self.evolution_rules, "evolution_rules")
        confirmation = string_list(
            rules.get("confirmation_required"), "confirmation_required", unique=True
        )
        require_subset(confirmation, CHANGE_CATEGORIES, "confirmation_required")
        self.evolution_rules = {
            "contradiction_handling": require_enum(
                rules.get(
                    "contradiction_handling", ContradictionHandling.REQUIRE_CONFIRMATION.value
                ),
                ContradictionHandling,
                "contradiction_handling",
            ),
            "confirmation_required": confirmation,
            "forbidden_inferences": string_list(
                rules.get("forbidden_inferences"), "forbidden_inferences", unique=True
            ),
        }

        epoch = require_mapping(self.epoch_state, "epoch_state")
        self.epoch_state = dict(epoch)
        self.epoch_state["epoch_id"] = require_string(epoch.get("epoch_id"), "epoch_id", 128)
        self.epoch_state["epoch_started"] = require_timestamp(
            epoch.get("epoch_started"), "epoch_started"
        )
        self.epoch_state["last_compiled"] = require_timestamp(
            epoch.get("last_compiled") or self.epoch_state["epoch_started"], "last_compiled"
        )

        pointers = require_mapping(self.pointers, "pointers")
        self.pointers = dict(pointers)
        self.pointers["kernel_history"] = string_list(
            pointers.get("kernel_history"), "kernel_history", 128, max_items=100000
        )
        self.pointers.setdefault("primary_storage", None)

        posture = require_mapping(self.threat_posture, "threat_posture")
        self.threat_posture = {
            "anti_poisoning_strictness": require_enum(
                posture.get("anti_poisoning_strictness", Strictness.MEDIUM.value),
                Strictness,
                "anti_poisoning_strictness",
            ),
            "high_impact_confirmation": require_bool(
                posture.get("high_impact_confirmation", True), "high_impact_confirmation"
            ),
        }

        self.relationship_templates = dict(
            require_mapping(self.relationship_templates, "relationship_templates")
        )
        self.memory_defaults = dict(require_mapping(self.memory_defaults, "memory_defaults"))
        self.gap_protocol = dict(require_mapping(self.gap_protocol, "gap_protocol"))
        if self.cartouche is not None:
            self.cartouche = dict(require_mapping(self.cartouche, "cartouche"))
        self.signer_public_key = require_string(
            self.signer_public_key, "signer_public_key", 128, required=False
        )
        self.signature = require_string(self.signature, "signature", 256, required=False)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def values(self) -> List[str]:
        return self.invariants["values"]

    @property
    def boundaries(self) -> List[str]:
        return self.invariants["boundaries"]

    @property
    def epoch_id(self) -> str:
        return self.epoch_state["epoch_id"]

    @property
    def kernel_history(self) -> List[str]:
        return self.pointers["kernel_history"]

    @property
    def strictness(self) -> str:
        return self.threat_posture["anti_poisoning_strictness"]

    def lineage_ids(self) -> List[str]:
        """Every id this identity has held, oldest first."""
        return list(self.kernel_history) + [self.kernel_id]

    # ------------------------------------------------------------------
    # Evolution
    # ------------------------------------------------------------------

    def _requires_confirmation(self, category: str) -> bool:
        return category in self.evolution_rules["confirmation_required"]

    def _add_invariant(
        self, key: str, field_name: str, category: str, entry: str, confirmed: bool
    ) -> bool:
        entry = require_string(entry, field_name, 500)
        if entry in self.invariants[key]:
            return False
        if self._requires_confirmation(category) and not confirmed:
            raise ConfirmationRequiredError(category, entry)
        self.invariants[key].append(entry)
        self.epoch_state["last_compiled"] = utc_now()
        self.signature = None
        return True

    def add_value(self, value: str, confirmed: bool = False) -> bool:
        """Add a value. Returns False for a duplicate.

        Raises:
            ConfirmationRequiredError: value changes need confirmation
                and ``confirmed`` is False.
        """
        return self._add_invariant("values", "value", VALUE_CHANGES, value, confirmed)

    def add_boundary(self, boundary: str, confirmed: bool = False) -> bool:
        """Add a boundary. Returns False for a duplicate."""
        return self._add_invariant("boundaries", "boundary", BOUNDARY_CHANGES, boundary, confirmed)

    def new_epoch(self, reason: Optional[str] = None, private_key: Optional[str] = None) -> Dict:
        """Archive the current id and start a new epoch.

        An existing cartouche is regenerated, so its hash changes.
        """
        self.pointers["kernel_history"].append(self.kernel_id)
        self.kernel_id = str(uuid.uuid4())
        now = utc_now()
        self.epoch_state = {
            "epoch_id": new_epoch_id(),
            "epoch_started": now,
            "last_compiled": now,
            "epoch_reason": reason,
        }
        self.signature = None
        if self.cartouche is not None:
            self.generate_cartouche(private_key)
        logger.info(f"Kernel entered epoch {self.epoch_id}")
        return dict(self.epoch_state)

    # ------------------------------------------------------------------
    # Cartouche
    # ------------------------------------------------------------------

    def _glyphs(self) -> List[str]:
        glyphs = [VALUE_GLYPHS[i % len(VALUE_GLYPHS)] for i in range(min(3, len(self.values)))]
        if self.boundaries:
            glyphs.append(BOUNDARY_GLYPHS[0])
        glyphs.append(POSTURE_GLYPHS.get(self.strictness, POSTURE_GLYPHS["medium"]))
        return glyphs

    def generate_cartouche(self, private_key: Optional[str] = None) -> Dict[str, Any]:
        """Derive the symbolic seal.

        The glyph string only reflects the shape of the identity, so it
        is stable under minor edits. The hash also binds the kernel id
        and epoch, so it changes on every epoch transition.
        """
        cartouche_string = "".join(self._glyphs())
        cartouche_hash = hash_bytes(
            f"{cartouche_string}|{self.kernel_id}|{self.epoch_id}".encode("utf-8")
        )
        previous = self.cartouche or {}
        now = utc_now()
        stable_since = (
            previous.get("stable_since", now)
            if previous.get("cartouche_string") == cartouche_string
            else now
        )
        self.cartouche = {
            "dialect_id": CARTOUCHE_DIALECT,
            "dialect_version": CARTOUCHE_DIALECT_VERSION,
            "cartouche_string": cartouche_string,
            "cartouche_hash": cartouche_hash,
            "cartouche_signature": None,
            "created_at": now,
            "stable_since": stable_since,
        }
        if private_key:
            self.cartouche["cartouche_signature"] = sign_message(
                self._cartouche_signable(), private_key
            )
        self.signature = None
        return self.cartouche

    def _cartouche_signable(self) -> bytes:
        return canonical_json(
            {
                "dialect_id": self.cartouche["dialect_id"],
                "dialect_version": self.cartouche["dialect_version"],
                "cartouche_string": self.cartouche["cartouche_string"],
                "cartouche_hash": self.cartouche["cartouche_hash"],
            }
        )

    def verify_cartouche(self, public_key: Optional[str] = None) -> bool:
        if not self.cartouche or not self.cartouche.get("cartouche_signature"):
            return False
        key = public_key or self.signer_public_key
        if not key:
            return False
        return verify_signature(
            self._cartouche_signable(), self.cartouche["cartouche_signature"], key
        )

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def to_signable_form(self) -> bytes:
        data = self.to_dict()
        data.pop("signature")
        return canonical_json(data)

    def sign(self, private_key: str, public_key: str) -> str:
        self.signer_public_key = public_key
        self.signature = sign_message(self.to_signable_form(), private_key)
        return self.signature

    def verify(self, public_key: Optional[str] = None) -> bool:
        """Check the kernel signature.

        Args:
            public_key: Trusted key. Falls back to the embedded signer
                key, which only proves internal consistency.
        """
        if not self.signature:
            return False
        key = public_key or self.signer_public_key
        if not key:
            return False
        return verify_signature(self.to_signable_form(), self.signature, key)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def to_context_format(self) -> Dict[str, Any]:
        """The subset of the kernel that goes into a context pack."""
        return json.loads(
            json.dumps(
                {
                    "kernel_id": self.kernel_id,
                    "mlp_version": self.mlp_version,
                    "invariants": self.invariants,
                    "evolution_rules": self.evolution_rules,
                    "memory_defaults": self.memory_defaults,
                    "epoch_state": self.epoch_state,
                    "threat_posture": self.threat_posture,
                    "gap_protocol": self.gap_protocol,
                    "cartouche": self.cartouche,
                }
            )
        )

    def get_summary(self) -> Dict[str, Any]:
        return {
            "kernel_id": self.kernel_id,
            "mlp_version": self.mlp_version,
            "values_count": len(self.values),
            "boundaries_count": len(self.boundaries),
            "epoch_id": self.epoch_id,
            "last_compiled": self.epoch_state.get("last_compiled"),
            "kernel_history_length": len(self.kernel_history),
            "has_cartouche": self.cartouche is not None,
            "threat_posture": self.strictness,
            "signed": bool(self.signature),
        }

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kernel_id": self.kernel_id,
            "mlp_version": self.mlp_version,
            "invariants": {
                "values": list(self.values),
                "boundaries": list(self.boundaries),
                "preferences": dict(self.invariants["preferences"]),
            },
            "evolution_rules": {
                "contradiction_handling": self.evolution_rules["contradiction_handling"],
                "confirmation_required": list(self.evolution_rules["confirmation_required"]),
                "forbidden_inferences": list(self.evolution_rules["forbidden_inferences"]),
            },
            "relationship_templates": dict(self.relationship_templates),
            "memory_defaults": dict(self.memory_defaults),
            "epoch_state": dict(self.epoch_state),
            "pointers": {**self.pointers, "kernel_history": list(self.kernel_history)},
            "threat_posture": dict(self.threat_posture),
            "gap_protocol": dict(self.gap_protocol),
            "cartouche": dict(self.cartouche) if self.cartouche else None,
            "signer_public_key": self.signer_public_key,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "IdentityKernel":
        data = require_mapping(data, "kernel")
        if not data.get("kernel_id"):
            raise RecordValidationError("kernel_id is required")
        defaults = {
            "invariants": _default_invariants,
            "evolution_rules": _default_evolution_rules,
            "relationship_templates": _default_relationship_templates,
            "memory_defaults": _default_memory_defaults,
            "epoch_state": _default_epoch_state,
            "pointers": _default_pointers,
            "threat_posture": _default_threat_posture,
            "gap_protocol": _default_gap_protocol,
        }
        kwargs = {name: data.get(name) or factory() for name, factory in defaults.items()}
        return cls(
            kernel_id=data["kernel_id"],
            mlp_version=data.get("mlp_version", MLP_VERSION),
            cartouche=data.get("cartouche"),
            signer_public_key=data.get("signer_public_key"),
            signature=data.get("signature"),
            **kwargs,
        )

    def save(self, path: Path) -> None:
        """Write the kernel JSON atomically with owner-only permissions."""
        data = json.dumps(self.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")
        atomic_write_bytes(Path(path), data, mode=0o600)

    @classmethod
    def load(cls, path: Path) -> "IdentityKernel":
        """Read a kernel file.

        Raises:
            FileNotFoundError: No kernel at ``path``.
            KernelLoadError: The file is unreadable or malformed.
        """
        path = Path(path)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            raise
        except OSError as e:
            raise KernelLoadError(f"Cannot read identity kernel {path}: {e}") from e
        try:
            return cls.from_dict(load_json_object(raw, "identity kernel"))
        except ValueError as e:
            raise KernelLoadError(f"Malformed identity kernel {path}: {e}") from e

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_payload(self, codec: Codec) -> Dict[str, Any]:
        """Encrypted, portable form. Opening it needs the same symmetric key."""
        payload = codec.encrypt(canonical_json(self.to_dict()))
        return {
            "type": EXPORT_TYPE,
            "mlp_version": self.mlp_version,
            "encrypted": True,
            "data": payload.to_dict(),
            "exported_at": utc_now(),
        }

    @classmethod
    def from_export(cls, document: Any, codec: Codec) -> "IdentityKernel":
        """Open an export document.

        Raises:
            RecordValidationError: Not an identity export.
            DecryptionError: Wrong symmetric key or tampered export.
        """
        document = require_mapping(document, "export")
        if document.get("type") != EXPORT_TYPE or document.get("encrypted") is not True:
            raise RecordValidationError("Not an encrypted identity kernel export")
        plaintext = codec.decrypt(EncryptedPayload.from_dict(document.get("data")))
        try:
            return cls.from_dict(load_json_object(plaintext, "identity kernel"))
        except ValueError as e:
            raise DecryptionError() from e
