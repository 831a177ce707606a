"""
Shared vocabulary for memledger.

Enums and small helpers used by the record types, the storage layer and
the context pack compiler. Enum values are the wire values written into
persisted JSON records, so they must not change.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

MLP_VERSION = "0.2"


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string, assuming UTC when no offset is given.

    Raises:
        ValueError: If the string is not a valid ISO datetime.
    """
    if not s:
        return None
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# === Enums ===


class Scope(str, Enum):
    """Who a memory belongs to."""

    USER = "user"
    AGENT = "agent"
    SHARED = "shared"
    SYSTEM = "system"


class Kind(str, Enum):
    """What kind of content an envelope points at."""

    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    REFLECTION = "reflection"
    KERNEL_REF = "kernel_ref"
    POLICY = "policy"
    TOMBSTONE = "tombstone"


class RiskClass(str, Enum):
    LOW = "low"
    MED = "med"
    HIGH = "high"


class AttesterType(str, Enum):
    USER = "user"
    AGENT = "agent"
    HOST = "host"
    WITNESS = "witness"


class TrustLevel(str, Enum):
    """How strongly an attestation binds a record."""

    SELF_SIGNED = "self_signed"
    HOST_SIGNED = "host_signed"
    WITNESS_SIGNED = "witness_signed"


class AccessLevel(str, Enum):
    """Outcome of an access check, also used on memory slices."""

    FULL = "full"
    REDACTED = "redacted"
    METADATA_ONLY = "metadata_only"
    DENIED = "denied"


class ContradictionHandling(str, Enum):
    CREATE_BRANCH = "create_branch"
    REQUIRE_CONFIRMATION = "require_confirmation"
    NEWEST_WINS = "newest_wins"


class Strictness(str, Enum):
    """Anti-poisoning strictness of an identity kernel."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    PARANOID = "paranoid"


class RevocationReason(str, Enum):
    USER_REQUEST = "user_request"
    POLICY_EXPIRATION = "policy_expiration"
    CONTENT_CORRECTION = "content_correction"


class Permission(str, Enum):
    READ = "read"
    WRITE = "write"
    DERIVE = "derive"
    SHARE = "share"


VALID_SCOPE_VALUES = frozenset(s.value for s in Scope)
VALID_KIND_VALUES = frozenset(k.value for k in Kind)
VALID_RISK_VALUES = frozenset(r.value for r in RiskClass)

# Kinds that carry recallable memory content (as opposed to bookkeeping)
MEMORY_KINDS = (Kind.EPISODIC, Kind.SEMANTIC, Kind.REFLECTION)

# Change categories the kernel's evolution rules can gate
VALUE_CHANGES = "value_changes"
BOUNDARY_CHANGES = "boundary_changes"
