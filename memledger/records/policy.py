"""AccessPolicy: consent rules for who may read, write, derive or share.

Access checks short-circuit in a fixed order:

1. Validity window. An expired or not-yet-active policy denies.
2. Intent. A denied intent denies; a non-empty allow-list must match.
3. ``read`` permission. The owner always holds it; ``*`` grants everyone.
4. Redaction. Non-owners get REDACTED instead of FULL when enabled.

A stale policy that still lists a principal must never leak access, so
window and intent are checked before any permission lookup.
"""

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from memledger.protocols import PolicyDenied, RecordValidationError
from memledger.records.attestation import Attestation, AttestedRecord
from memledger.records.canonical import canonical_json, load_json_object
from memledger.records.validation import (
    require_bool,
    require_mapping,
    require_string,
    require_subset,
    require_timestamp,
    string_list,
)
from memledger.types import MLP_VERSION, AccessLevel, Permission, parse_datetime, utc_now

logger = logging.getLogger(__name__)

WILDCARD = "*"
DEFAULT_REDACTION_PATTERN = "[REDACTED]"
PERMISSION_NAMES = tuple(p.value for p in Permission)


@dataclass
class PolicyConstraints:
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    allowed_intents: List[str] = field(default_factory=list)
    denied_intents: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.valid_from = require_timestamp(self.valid_from, "valid_from", required=False)
        self.valid_until = require_timestamp(self.valid_until, "valid_until", required=False)
        self.allowed_intents = string_list(self.allowed_intents, "allowed_intents", unique=True)
        self.denied_intents = string_list(self.denied_intents, "denied_intents", unique=True)
        if self.valid_from and self.valid_until:
            if parse_datetime(self.valid_from) > parse_datetime(self.valid_until):
                raise RecordValidationError("valid_from must not be after valid_until")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid_from": self.valid_from,
            "valid_until": self.valid_until,
            "allowed_intents": list(self.allowed_intents),
            "denied_intents": list(self.denied_intents),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PolicyConstraints":
        data = require_mapping(data, "constraints", required=False)
        return cls(
            valid_from=data.get("valid_from"),
            valid_until=data.get("valid_until"),
            allowed_intents=data.get("allowed_intents"),
            denied_intents=data.get("denied_intents"),
        )


@dataclass
class RedactionRules:
    enabled: bool = False
    fields_to_redact: List[str] = field(default_factory=list)
    redaction_pattern: str = DEFAULT_REDACTION_PATTERN

    def __post_init__(self):
        self.enabled = require_bool(self.enabled, "redaction.enabled")
        self.fields_to_redact = string_list(
            self.fields_to_redact, "redaction.fields_to_redact", unique=True
        )
        self.redaction_pattern = require_string(
            self.redaction_pattern, "redaction.redaction_pattern", 200
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "fields_to_redact": list(self.fields_to_redact),
            "redaction_pattern": self.redaction_pattern,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "RedactionRules":
        data = require_mapping(data, "redaction", required=False)
        return cls(
            enabled=data.get("enabled", False),
            fields_to_redact=data.get("fields_to_redact"),
            redaction_pattern=data.get("redaction_pattern") or DEFAULT_REDACTION_PATTERN,
        )


def _empty_permissions() -> Dict[str, List[str]]:
    return {name: [] for name in PERMISSION_NAMES}


@dataclass
class AccessPolicy(AttestedRecord):
    """Consent rules attached to envelopes through ``access_policy_ref``."""

    owner_id: str
    policy_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    principals: List[str] = field(default_factory=list)
    permissions: Dict[str, List[str]] = field(default_factory=_empty_permissions)
    constraints: PolicyConstraints = field(default_factory=PolicyConstraints)
    redaction: RedactionRules = field(default_factory=RedactionRules)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    attestations: List[Attestation] = field(default_factory=list)
    mlp_version: str = MLP_VERSION

    def __post_init__(self):
        self.owner_id = require_string(self.owner_id, "owner_id", 256)
        self.policy_id = require_string(self.policy_id, "policy_id", 128)
        self.principals = string_list(self.principals, "principals", 256, unique=True)
        permissions = require_mapping(self.permissions, "permissions")
        require_subset(permissions.keys(), PERMISSION_NAMES, "permissions")
        self.permissions = {
            name: string_list(permissions.get(name), f"permissions.{name}", 256, unique=True)
            for name in PERMISSION_NAMES
        }
        if isinstance(self.constraints, dict):
            self.constraints = PolicyConstraints.from_dict(self.constraints)
        if isinstance(self.redaction, dict):
            self.redaction = RedactionRules.from_dict(self.redaction)
        self.created_at = require_timestamp(self.created_at, "created_at")
        self.updated_at = require_timestamp(self.updated_at, "updated_at")
        self.attestations = [
            a if isinstance(a, Attestation) else Attestation.from_dict(a)
            for a in (self.attestations or [])
        ]

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def create_default(cls, owner_id: str) -> "AccessPolicy":
        """Owner-only policy."""
        return cls(
            owner_id=owner_id,
            principals=[owner_id],
            permissions={name: [owner_id] for name in PERMISSION_NAMES},
        )

    @classmethod
    def create_shared(
        cls,
        owner_id: str,
        shared_with: Iterable[str],
        permissions: Iterable[str] = (Permission.READ.value,),
    ) -> "AccessPolicy":
        """Owner policy extended to ``shared_with`` for ``permissions``."""
        policy = cls.create_default(owner_id)
        for principal_id in shared_with:
            for permission in permissions:
                policy.grant(principal_id, permission)
        return policy

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def has_permission(self, principal_id: str, permission: str) -> bool:
        if principal_id == self.owner_id:
            return True
        allowed = self.permissions.get(_permission_name(permission), [])
        return principal_id in allowed or WILDCARD in allowed

    def is_valid(self, now: Optional[datetime] = None) -> Tuple[bool, Optional[str]]:
        """Whether ``now`` falls inside the validity window."""
        now = now or datetime.now(timezone.utc)
        if self.constraints.valid_from and now < parse_datetime(self.constraints.valid_from):
            return False, "Policy not yet active"
        if self.constraints.valid_until and now > parse_datetime(self.constraints.valid_until):
            return False, "Policy expired"
        return True, None

    def is_intent_allowed(self, intent: str) -> bool:
        intent_lower = (intent or "").lower()
        for denied in self.constraints.denied_intents:
            if denied.lower() in intent_lower:
                return False
        if not self.constraints.allowed_intents:
            return True
        return any(allowed.lower() in intent_lower for allowed in self.constraints.allowed_intents)

    def access_level(
        self, principal_id: str, intent: str, now: Optional[datetime] = None
    ) -> AccessLevel:
        valid, reason = self.is_valid(now)
        if not valid:
            logger.debug(f"Policy {self.policy_id[:8]} denies: {reason}")
            return AccessLevel.DENIED
        if not self.is_intent_allowed(intent):
            return AccessLevel.DENIED
        if not self.has_permission(principal_id, Permission.READ.value):
            return AccessLevel.DENIED
        if self.redaction.enabled and principal_id != self.owner_id:
            return AccessLevel.REDACTED
        return AccessLevel.FULL

    def require_access(
        self, principal_id: str, intent: str, now: Optional[datetime] = None
    ) -> AccessLevel:
        """Like access_level(), but a denial raises.

        Raises:
            PolicyDenied: The principal may not read under this policy.
        """
        level = self.access_level(principal_id, intent, now)
        if level == AccessLevel.DENIED:
            raise PolicyDenied(f"Policy {self.policy_id} denies {principal_id} for {intent!r}")
        return level

    # ------------------------------------------------------------------
    # Mutation (a changed policy must be re-signed before it is saved)
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        self.updated_at = utc_now()

    def grant(self, principal_id: str, permission: str) -> "AccessPolicy":
        name = _permission_name(permission)
        principal_id = require_string(principal_id, "principal_id", 256)
        if principal_id != WILDCARD and principal_id not in self.principals:
            self.principals.append(principal_id)
        if principal_id not in self.permissions[name]:
            self.permissions[name].append(principal_id)
        self._touch()
        return self

    def revoke(self, principal_id: str, permission: str) -> "AccessPolicy":
        name = _permission_name(permission)
        self.permissions[name] = [p for p in self.permissions[name] if p != principal_id]
        self._touch()
        return self

    def revoke_all(self, principal_id: str) -> "AccessPolicy":
        for name in PERMISSION_NAMES:
            self.permissions[name] = [p for p in self.permissions[name] if p != principal_id]
        self.principals = [p for p in self.principals if p != principal_id]
        self._touch()
        return self

    def set_time_constraints(
        self, valid_from: Optional[str], valid_until: Optional[str]
    ) -> "AccessPolicy":
        self.constraints = PolicyConstraints(
            valid_from=valid_from,
            valid_until=valid_until,
            allowed_intents=self.constraints.allowed_intents,
            denied_intents=self.constraints.denied_intents,
        )
        self._touch()
        return self

    def enable_redaction(
        self, fields: Iterable[str], pattern: str = DEFAULT_REDACTION_PATTERN
    ) -> "AccessPolicy":
        self.redaction = RedactionRules(
            enabled=True, fields_to_redact=list(fields), redaction_pattern=pattern
        )
        self._touch()
        return self

    def apply_redaction(self, content: Any) -> Any:
        """Return a redacted copy of ``content``.

        Object content has each listed field replaced. Any other content
        is replaced wholesale only when ``content`` is a listed field.
        """
        if not self.redaction.enabled:
            return content
        pattern = self.redaction.redaction_pattern
        if isinstance(content, dict):
            redacted = copy.deepcopy(content)
            for name in self.redaction.fields_to_redact:
                if name in redacted:
                    redacted[name] = pattern
            return redacted
        if "content" in self.redaction.fields_to_redact:
            return pattern
        return content

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_signable_form(self) -> bytes:
        data = self.to_dict()
        data.pop("attestations")
        return canonical_json(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "mlp_version": self.mlp_version,
            "owner_id": self.owner_id,
            "principals": list(self.principals),
            "permissions": {name: list(ids) for name, ids in self.permissions.items()},
            "constraints": self.constraints.to_dict(),
            "redaction": self.redaction.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "attestations": [a.to_dict() for a in self.attestations],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "AccessPolicy":
        data = require_mapping(data, "policy")
        return cls(
            policy_id=data.get("policy_id"),
            owner_id=data.get("owner_id"),
            principals=data.get("principals"),
            permissions=data.get("permissions") or _empty_permissions(),
            constraints=PolicyConstraints.from_dict(data.get("constraints")),
            redaction=RedactionRules.from_dict(data.get("redaction")),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            attestations=[Attestation.from_dict(a) for a in data.get("attestations") or []],
            mlp_version=data.get("mlp_version", MLP_VERSION),
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "AccessPolicy":
        return cls.from_dict(load_json_object(data, "policy"))


def _permission_name(permission: Any) -> str:
    name = permission.value if isinstance(permission, Permission) else permission
    if name not in PERMISSION_NAMES:
        raise ValueError(f"Unknown permission: {permission}")
    return name
