"""ContextPack compilation.

Selects and assembles memories for one session under relevance, token
and count constraints. The compiler walks a fixed sequence of states:

    QUERYING -> SCORING -> VERIFYING -> FETCHING -> BUDGETING -> COMPILED

Per-envelope problems (revoked, bad attestation, policy denial, missing
or undecryptable blob, hash mismatch) deny that single item and are
tallied in the trace. Only an unauthenticated kernel aborts compilation.

Fetching runs on a bounded thread pool. Assembly always follows ranked
order, whatever order the fetches complete in.
"""

import json
import logging
import math
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from memledger.crypto.codec import Codec
from memledger.protocols import (
    CompilationCancelled,
    ContentIntegrityError,
    ContentStore,
    DecryptionError,
    EnvelopeSource,
    KernelLoadError,
    LedgerError,
    NotFoundError,
    PolicyDenied,
    TokenEstimator,
)
from memledger.records.blob import MemoryBlob, fetch_blob
from memledger.records.envelope import MemoryEnvelope
from memledger.records.kernel import IdentityKernel
from memledger.records.policy import AccessPolicy
from memledger.relevance import rank
from memledger.types import MLP_VERSION, AccessLevel, Kind, Scope, Strictness, parse_datetime

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

PolicyResolver = Callable[[str], Optional[AccessPolicy]]


def default_token_estimator(text: str) -> int:
    """Rough estimate: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def content_text(content: Any) -> str:
    """What the estimator sees: strings as-is, anything else as JSON."""
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, sort_keys=True)


class CompilerState(str, Enum):
    QUERYING = "querying"
    SCORING = "scoring"
    VERIFYING = "verifying"
    FETCHING = "fetching"
    BUDGETING = "budgeting"
    COMPILED = "compiled"


class DenialReason(str, Enum):
    """Why an envelope was denied. Recorded per id in the trace."""

    REVOKED = "revoked"
    ATTESTATION_INVALID = "attestation_invalid"
    POLICY_UNRESOLVED = "policy_unresolved"
    POLICY_DENIED = "policy_denied"
    NOT_FOUND = "not_found"
    DECRYPTION_FAILED = "decryption_failed"
    INTEGRITY_MISMATCH = "integrity_mismatch"
    STORE_ERROR = "store_error"


@dataclass
class CompileConstraints:
    """Limits a compilation runs under."""

    scope: List[str] = field(default_factory=lambda: [Scope.USER.value, Scope.AGENT.value])
    kinds: List[str] = field(
        default_factory=lambda: [Kind.EPISODIC.value, Kind.SEMANTIC.value, Kind.REFLECTION.value]
    )
    since: Optional[datetime] = None
    max_candidates: int = 200
    max_tokens: int = 4000
    max_memories: int = 20
    expires_in: Optional[float] = None  # seconds

    def __post_init__(self):
        self.scope = [Scope(s).value for s in self.scope]
        self.kinds = [Kind(k).value for k in self.kinds]
        if self.max_candidates < 1:
            raise ValueError(f"max_candidates must be >= 1, got {self.max_candidates}")
        if self.max_tokens < 0:
            raise ValueError(f"max_tokens must be >= 0, got {self.max_tokens}")
        if self.max_memories < 0:
            raise ValueError(f"max_memories must be >= 0, got {self.max_memories}")
        if self.expires_in is not None and self.expires_in <= 0:
            raise ValueError(f"expires_in must be positive, got {self.expires_in}")

    def describe(self) -> List[str]:
        applied = [
            f"scope: {','.join(self.scope)}",
            f"kinds: {','.join(self.kinds)}",
            f"max_candidates: {self.max_candidates}",
            f"max_tokens: {self.max_tokens}",
            f"max_memories: {self.max_memories}",
        ]
        if self.since is not None:
            applied.append(f"since: {self.since.isoformat()}")
        if self.expires_in is not None:
            applied.append(f"expires_in: {self.expires_in}")
        return applied


@dataclass
class MemorySlice:
    """One envelope as it appears in a pack. Content is None unless included."""

    envelope: MemoryEnvelope
    access_level: AccessLevel
    relevance_score: float
    content: Any = None
    token_estimate: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "envelope": self.envelope.to_dict(),
            "access_level": self.access_level.value,
            "relevance_score": round(self.relevance_score, 6),
            "decrypted_content": self.content,
            "token_estimate": self.token_estimate,
        }


@dataclass
class CompilationTrace:
    """Audit record of a compilation. Counts and ids, never excluded content.

    ``memories_considered`` counts the non-tombstone candidates the walk
    reached; ``included + metadata_only + denied == considered`` always
    holds. Candidates never reached after ``max_memories`` was hit are
    ``memories_unexamined``. ``memories_redacted`` is a subset of
    ``memories_included``.
    """

    requested_by: str
    intent: str
    principal: str
    constraints_applied: List[str] = field(default_factory=list)
    states: List[str] = field(default_factory=list)
    memories_candidates: int = 0
    memories_considered: int = 0
    memories_included: int = 0
    memories_redacted: int = 0
    memories_metadata_only: int = 0
    memories_denied: int = 0
    memories_unexamined: int = 0
    tombstones_dropped: int = 0
    total_tokens: int = 0
    denials: Dict[str, str] = field(default_factory=dict)

    def enter(self, state: CompilerState) -> None:
        self.states.append(state.value)

    def deny(self, envelope_id: str, reason: DenialReason) -> None:
        self.denials[envelope_id] = reason.value
        self.memories_denied += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested_by": self.requested_by,
            "intent": self.intent,
            "principal": self.principal,
            "constraints_applied": list(self.constraints_applied),
            "state_sequence": list(self.states),
            "memories_candidates": self.memories_candidates,
            "memories_considered": self.memories_considered,
            "memories_included": self.memories_included,
            "memories_redacted": self.memories_redacted,
            "memories_metadata_only": self.memories_metadata_only,
            "memories_denied": self.memories_denied,
            "memories_unexamined": self.memories_unexamined,
            "tombstones_dropped": self.tombstones_dropped,
            "total_tokens": self.total_tokens,
            "denials": dict(self.denials),
        }


@dataclass
class ContextPack:
    """Kernel plus the selected memories for one session."""

    kernel: Dict[str, Any]
    memory_slices: List[MemorySlice]
    compilation_trace: CompilationTrace
    active_policies: List[Dict[str, Any]] = field(default_factory=list)
    session_constraints: Dict[str, Any] = field(default_factory=dict)
    pack_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    mlp_version: str = MLP_VERSION
    compiled_at: str = ""
    expires_at: Optional[str] = None

    @property
    def included(self) -> List[MemorySlice]:
        """Slices that carry content (full or redacted)."""
        return [
            s
            for s in self.memory_slices
            if s.access_level in (AccessLevel.FULL, AccessLevel.REDACTED)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pack_id": self.pack_id,
            "mlp_version": self.mlp_version,
            "kernel": self.kernel,
            "memory_slices": [s.to_dict() for s in self.memory_slices],
            "active_policies": list(self.active_policies),
            "compilation_trace": self.compilation_trace.to_dict(),
            "compiled_at": self.compiled_at,
            "expires_at": self.expires_at,
            "session_constraints": dict(self.session_constraints),
        }


@dataclass
class _Candidate:
    envelope: MemoryEnvelope
    score: float
    level: AccessLevel = AccessLevel.FULL
    policy: Optional[AccessPolicy] = None
    blob: Optional[MemoryBlob] = None
    failure: Optional[DenialReason] = None


class ContextPackCompiler:
    """Compile ContextPacks from an envelope source and a content store.

    Args:
        source: Answers the candidate query (usually the EnvelopeIndex)
        store: Content store holding the sealed blobs
        codec: Opens blobs
        policy_resolver: policy_id -> latest AccessPolicy, or None when it
            cannot be resolved (the envelope is then denied)
        estimator: Token estimator (default: characters / 4)
        max_workers: Fetch concurrency
    """

    def __init__(
        self,
        source: EnvelopeSource,
        store: ContentStore,
        codec: Codec,
        policy_resolver: Optional[PolicyResolver] = None,
        estimator: Optional[TokenEstimator] = None,
        max_workers: int = 4,
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.source = source
        self.store = store
        self.codec = codec
        self.policy_resolver = policy_resolver
        self.estimator = estimator or default_token_estimator
        self.max_workers = max_workers

    def compile(
        self,
        kernel: IdentityKernel,
        intent: str,
        constraints: Optional[CompileConstraints] = None,
        principal: Optional[str] = None,
        trusted_keys: Optional[Mapping[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
    ) -> ContextPack:
        """Compile a pack for ``intent``.

        Args:
            kernel: The session's identity kernel
            intent: Session purpose, drives scoring and intent checks
            constraints: Limits (defaults apply when omitted)
            principal: Who the pack is for (default: the kernel itself).
                Memories without an access policy go only to the kernel's
                own ids.
            trusted_keys: attester_id -> public key, used for the kernel
                signature and envelope attestations
            cancel_event: Set it to cancel; checked between stages and
                before each fetch
            now: Clock override for reproducible scoring and expiry

        Raises:
            KernelLoadError: The kernel signature does not verify.
            CompilationCancelled: ``cancel_event`` was set.
        """
        constraints = constraints or CompileConstraints()
        trusted_keys = dict(trusted_keys or {})
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        if not kernel.verify(trusted_keys.get(kernel.kernel_id)):
            raise KernelLoadError(f"Identity kernel {kernel.kernel_id} is not authenticated")

        principal = principal or kernel.kernel_id
        trace = CompilationTrace(
            requested_by=kernel.kernel_id,
            intent=intent,
            principal=principal,
            constraints_applied=constraints.describe(),
        )

        # 1. Querying
        trace.enter(CompilerState.QUERYING)
        self._check_cancelled(cancel_event)
        candidates = self.source.query_envelopes(
            constraints.scope,
            constraints.kinds,
            since=constraints.since,
            limit=constraints.max_candidates,
        )
        allow_embedded = kernel.strictness in (Strictness.LOW.value, Strictness.MEDIUM.value)
        revoked = self.source.verified_revoked_ids(trusted_keys, allow_embedded)
        trace.memories_candidates = len(candidates)

        # 2. Scoring
        trace.enter(CompilerState.SCORING)
        self._check_cancelled(cancel_event)
        ranked = rank(candidates, intent, kernel, now)

        # 3. Verifying
        trace.enter(CompilerState.VERIFYING)
        self._check_cancelled(cancel_event)
        survivors = self._verify(
            ranked, kernel, intent, principal, trusted_keys, allow_embedded, revoked, now, trace
        )

        # 4. Fetching
        trace.enter(CompilerState.FETCHING)
        self._check_cancelled(cancel_event)
        self._fetch_all(survivors, cancel_event)

        # 5. Budgeting
        trace.enter(CompilerState.BUDGETING)
        self._check_cancelled(cancel_event)
        slices = self._budget(survivors, constraints, trace)

        # 6. Compiled
        trace.enter(CompilerState.COMPILED)
        policies: Dict[str, Dict[str, Any]] = {}
        for candidate in survivors:
            if candidate.policy is not None and any(
                s.envelope.envelope_id == candidate.envelope.envelope_id for s in slices
            ):
                policies.setdefault(candidate.policy.policy_id, candidate.policy.to_dict())

        expires_at = None
        if constraints.expires_in is not None:
            expires_at = (now + timedelta(seconds=constraints.expires_in)).isoformat()

        logger.info(
            f"Compiled context pack: considered={trace.memories_considered} "
            f"included={trace.memories_included} metadata_only={trace.memories_metadata_only} "
            f"denied={trace.memories_denied} tokens={trace.total_tokens}"
        )
        return ContextPack(
            kernel=kernel.to_context_format(),
            memory_slices=slices,
            compilation_trace=trace,
            active_policies=list(policies.values()),
            session_constraints={
                "max_duration": constraints.expires_in,
                "allowed_operations": ["read", "write", "derive"],
                "requires_attestation_on_write": True,
            },
            compiled_at=now.isoformat(),
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _verify(
        self,
        ranked: List[Tuple[MemoryEnvelope, float]],
        kernel: IdentityKernel,
        intent: str,
        principal: str,
        trusted_keys: Dict[str, str],
        allow_embedded: bool,
        revoked: set,
        now: datetime,
        trace: CompilationTrace,
    ) -> List[_Candidate]:
        """Attestation, revocation and policy checks. Never raises."""
        policy_cache: Dict[str, Optional[AccessPolicy]] = {}
        survivors: List[_Candidate] = []

        for envelope, score in ranked:
            if envelope.is_tombstone:
                trace.tombstones_dropped += 1
                continue
            trace.memories_considered += 1

            if envelope.envelope_id in revoked:
                trace.deny(envelope.envelope_id, DenialReason.REVOKED)
                continue
            if not envelope.verify(trusted_keys, allow_embedded_keys=allow_embedded).valid:
                trace.deny(envelope.envelope_id, DenialReason.ATTESTATION_INVALID)
                continue

            candidate = _Candidate(envelope=envelope, score=score)
            if envelope.access_policy_ref:
                policy = self._resolve_policy(envelope.access_policy_ref, policy_cache)
                if policy is None:
                    trace.deny(envelope.envelope_id, DenialReason.POLICY_UNRESOLVED)
                    continue
                effective = principal
                if principal == kernel.kernel_id and policy.owner_id in kernel.lineage_ids():
                    effective = policy.owner_id
                try:
                    candidate.level = policy.require_access(effective, intent, now)
                except PolicyDenied as e:
                    logger.debug(f"Envelope {envelope.envelope_id[:8]} denied: {e}")
                    trace.deny(envelope.envelope_id, DenialReason.POLICY_DENIED)
                    continue
                candidate.policy = policy
            elif principal not in kernel.lineage_ids():
                # No policy means owner-only
                trace.deny(envelope.envelope_id, DenialReason.POLICY_DENIED)
                continue
            survivors.append(candidate)
        return survivors

    def _resolve_policy(
        self, policy_id: str, cache: Dict[str, Optional[AccessPolicy]]
    ) -> Optional[AccessPolicy]:
        if policy_id in cache:
            return cache[policy_id]
        policy = None
        if self.policy_resolver is not None:
            try:
                policy = self.policy_resolver(policy_id)
            except (LedgerError, ValueError) as e:
                logger.warning(f"Could not resolve policy {policy_id[:8]}: {e}")
        cache[policy_id] = policy
        return policy

    def _fetch_all(
        self, survivors: List[_Candidate], cancel_event: Optional[threading.Event]
    ) -> None:
        if not survivors:
            return
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                pool.submit(self._fetch_one, candidate, cancel_event): candidate
                for candidate in survivors
            }
            for future in as_completed(futures):
                future.result()
        self._check_cancelled(cancel_event)

    def _fetch_one(
        self, candidate: _Candidate, cancel_event: Optional[threading.Event]
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            return
        envelope = candidate.envelope
        try:
            candidate.blob = fetch_blob(self.store, self.codec, envelope)
        except NotFoundError:
            candidate.failure = DenialReason.NOT_FOUND
        except DecryptionError:
            candidate.failure = DenialReason.DECRYPTION_FAILED
        except ContentIntegrityError:
            candidate.failure = DenialReason.INTEGRITY_MISMATCH
        except (LedgerError, OSError, ValueError) as e:
            logger.warning(f"Fetch failed for envelope {envelope.envelope_id[:8]}: {e}")
            candidate.failure = DenialReason.STORE_ERROR

    def _budget(
        self,
        survivors: List[_Candidate],
        constraints: CompileConstraints,
        trace: CompilationTrace,
    ) -> List[MemorySlice]:
        """Walk survivors in ranked order under the token and count limits."""
        slices: List[MemorySlice] = []
        over_budget = False

        for position, candidate in enumerate(survivors):
            if trace.memories_included >= constraints.max_memories:
                unexamined = len(survivors) - position
                trace.memories_unexamined = unexamined
                trace.memories_considered -= unexamined
                break

            envelope = candidate.envelope
            if candidate.failure is not None or candidate.blob is None:
                trace.deny(envelope.envelope_id, candidate.failure or DenialReason.STORE_ERROR)
                continue

            if not over_budget:
                content = candidate.blob.content
                if candidate.level == AccessLevel.REDACTED:
                    content = candidate.policy.apply_redaction(content)
                tokens = self.estimator(content_text(content))
                if trace.total_tokens + tokens <= constraints.max_tokens:
                    slices.append(
                        MemorySlice(
                            envelope=envelope,
                            access_level=candidate.level,
                            relevance_score=candidate.score,
                            content=content,
                            token_estimate=tokens,
                        )
                    )
                    trace.total_tokens += tokens
                    trace.memories_included += 1
                    if candidate.level == AccessLevel.REDACTED:
                        trace.memories_redacted += 1
                    continue
                over_budget = True

            slices.append(
                MemorySlice(
                    envelope=envelope,
                    access_level=AccessLevel.METADATA_ONLY,
                    relevance_score=candidate.score,
                )
            )
            trace.memories_metadata_only += 1
        return slices

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CompilationCancelled("Context pack compilation was cancelled")


# ----------------------------------------------------------------------
# Pack utilities
# ----------------------------------------------------------------------


def _as_dict(pack: Any) -> Dict[str, Any]:
    return pack.to_dict() if isinstance(pack, ContextPack) else dict(pack or {})


def validate_context_pack(pack: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Structural check of a pack (object or dict), including expiry."""
    data = _as_dict(pack)
    errors = []
    for key in ("pack_id", "mlp_version", "kernel", "compilation_trace", "compiled_at"):
        if not data.get(key):
            errors.append(f"Missing {key}")
    if data.get("memory_slices") is None:
        errors.append("Missing memory_slices")

    expires_at = data.get("expires_at")
    if expires_at:
        try:
            if parse_datetime(expires_at) < (now or datetime.now(timezone.utc)):
                errors.append("ContextPack has expired")
        except ValueError:
            errors.append("Invalid expires_at")
    return {"valid": not errors, "errors": errors}


def summarize_context_pack(pack: Any) -> Dict[str, Any]:
    """Loggable summary. No memory content."""
    data = _as_dict(pack)
    trace = data.get("compilation_trace") or {}
    return {
        "pack_id": data.get("pack_id"),
        "kernel_id": (data.get("kernel") or {}).get("kernel_id"),
        "intent": trace.get("intent"),
        "memories_considered": trace.get("memories_considered"),
        "memories_included": trace.get("memories_included"),
        "memories_denied": trace.get("memories_denied"),
        "total_tokens": trace.get("total_tokens"),
        "compiled_at": data.get("compiled_at"),
        "expires_at": data.get("expires_at"),
    }


def create_minimal_pack(kernel: IdentityKernel, intent: str = "bootstrap") -> ContextPack:
    """Kernel-only pack, for bootstrapping a session with no memories."""
    trace = CompilationTrace(
        requested_by=kernel.kernel_id,
        intent=intent,
        principal=kernel.kernel_id,
        constraints_applied=["minimal"],
        states=[CompilerState.COMPILED.value],
    )
    return ContextPack(
        kernel=kernel.to_context_format(),
        memory_slices=[],
        compilation_trace=trace,
        session_constraints={
            "allowed_operations": ["read", "write"],
            "requires_attestation_on_write": True,
        },
        compiled_at=datetime.now(timezone.utc).isoformat(),
    )
