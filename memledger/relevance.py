"""Relevance scoring for context pack compilation.

``score`` is a pure function of an envelope, a session intent and the
identity kernel: a weighted sum of five sub-scores, each in [0, 1].

    recency          0.25  linear decay to 0 over a year
    kind affinity    0.20  per-kind table, boosted by intent keywords
    tag overlap      0.25  intent tokens vs topic tags
    value alignment  0.15  kernel values mentioned in tags
    risk             0.15  high-risk memories need a sensitive intent

Pass ``now`` to make scores reproducible.
"""

import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

from memledger.types import Kind, RiskClass

if TYPE_CHECKING:
    from memledger.records.envelope import MemoryEnvelope
    from memledger.records.kernel import IdentityKernel

WEIGHTS = {
    "recency": 0.25,
    "kind": 0.20,
    "tags": 0.25,
    "values": 0.15,
    "risk": 0.15,
}

RECENCY_WINDOW_DAYS = 365.0
UNKNOWN_KIND_SCORE = 0.5
NEUTRAL_SCORE = 0.5
VALUE_MATCH_SCORE = 0.9
SENSITIVE_MARKERS = ("sensitive", "private", "confidential")

DEFAULT_KIND_SCORES = {
    Kind.SEMANTIC.value: 0.7,
    Kind.EPISODIC.value: 0.5,
    Kind.REFLECTION.value: 0.6,
    Kind.KERNEL_REF.value: 0.8,
    Kind.POLICY.value: 0.4,
    Kind.TOMBSTONE.value: 0.0,
}

# (intent keywords, kind overrides)
KIND_BOOSTS: Sequence[Tuple[Tuple[str, ...], Dict[str, float]]] = (
    (("reflect", "review"), {Kind.REFLECTION.value: 1.0, Kind.EPISODIC.value: 0.8}),
    (("learn", "knowledge"), {Kind.SEMANTIC.value: 1.0}),
    (("history", "past"), {Kind.EPISODIC.value: 1.0}),
    (("identity", "values"), {Kind.KERNEL_REF.value: 1.0, Kind.REFLECTION.value: 0.9}),
)

_PUNCTUATION_RE = re.compile(r"[^\w\s]")


def tokenize_intent(intent: str) -> List[str]:
    """Lowercase words longer than two characters, punctuation stripped."""
    cleaned = _PUNCTUATION_RE.sub("", (intent or "").lower())
    return [token for token in cleaned.split() if len(token) > 2]


def kind_scores_for_intent(intent: str) -> Dict[str, float]:
    intent_lower = (intent or "").lower()
    scores = dict(DEFAULT_KIND_SCORES)
    for keywords, overrides in KIND_BOOSTS:
        if any(keyword in intent_lower for keyword in keywords):
            scores.update(overrides)
    return scores


def recency_score(created_at: datetime, now: datetime) -> float:
    age_days = (now - created_at).total_seconds() / 86400.0
    return min(1.0, max(0.0, 1.0 - age_days / RECENCY_WINDOW_DAYS))


def kind_score(kind: str, intent: str) -> float:
    if kind == Kind.TOMBSTONE.value:
        return 0.0
    return kind_scores_for_intent(intent).get(kind, UNKNOWN_KIND_SCORE)


def tag_overlap(intent_tokens: Sequence[str], tags: Sequence[str]) -> float:
    """Matches over the larger side. Neutral when either side is empty."""
    if not intent_tokens or not tags:
        return NEUTRAL_SCORE
    tag_set = {tag.lower() for tag in tags}
    matches = sum(1 for token in intent_tokens if token in tag_set)
    return matches / max(len(intent_tokens), len(tags))


def value_alignment(tags: Sequence[str], values: Iterable[str]) -> float:
    lowered_tags = [tag.lower() for tag in tags]
    for value in values:
        for token in value.lower().split():
            if any(token in tag for tag in lowered_tags):
                return VALUE_MATCH_SCORE
    return NEUTRAL_SCORE


def risk_score(risk_class: str, intent: str) -> float:
    if risk_class == RiskClass.HIGH.value:
        intent_lower = (intent or "").lower()
        return 1.0 if any(marker in intent_lower for marker in SENSITIVE_MARKERS) else 0.3
    if risk_class == RiskClass.MED.value:
        return 0.7
    return 1.0


def score(
    envelope: "MemoryEnvelope",
    intent: str,
    kernel: Optional["IdentityKernel"],
    now: Optional[datetime] = None,
) -> float:
    """Relevance of ``envelope`` to ``intent`` for ``kernel``, in [0, 1]."""
    now = now or datetime.now(timezone.utc)
    values = kernel.values if kernel is not None else []
    total = (
        WEIGHTS["recency"] * recency_score(envelope.created_datetime, now)
        + WEIGHTS["kind"] * kind_score(envelope.kind, intent)
        + WEIGHTS["tags"] * tag_overlap(tokenize_intent(intent), envelope.topic_tags)
        + WEIGHTS["values"] * value_alignment(envelope.topic_tags, values)
        + WEIGHTS["risk"] * risk_score(envelope.risk_class, intent)
    )
    return min(1.0, max(0.0, total))


def rank(
    envelopes: Iterable["MemoryEnvelope"],
    intent: str,
    kernel: Optional["IdentityKernel"],
    now: Optional[datetime] = None,
) -> List[Tuple["MemoryEnvelope", float]]:
    """Score and sort: highest score first, newest first on ties."""
    now = now or datetime.now(timezone.utc)
    scored = [(envelope, score(envelope, intent, kernel, now)) for envelope in envelopes]
    scored.sort(key=lambda item: (item[1], item[0].created_datetime), reverse=True)
    return scored
