"""Intake of reflection-pipeline output.

The reflection workflow that extracts memories from transcripts is an
external collaborator. It hands over records of the form::

    {"type": "preference", "content": "...", "tags": [...], "confidence": 0.8}

``confidence`` may also be an object with a ``score``. Each valid record
becomes one stored memory. Malformed records are skipped and reported,
never fatal for the batch.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

from memledger.protocols import LedgerError, LedgerNotInitializedError
from memledger.records.validation import require_number, require_string, string_list
from memledger.types import Kind, Scope

if TYPE_CHECKING:
    from memledger.ledger import Ledger, StoreReceipt

logger = logging.getLogger(__name__)

REFLECTION_KIND_MAP = {
    "fact": Kind.SEMANTIC.value,
    "preference": Kind.SEMANTIC.value,
    "relationship": Kind.SEMANTIC.value,
    "skill": Kind.SEMANTIC.value,
    "principle": Kind.REFLECTION.value,
    "commitment": Kind.REFLECTION.value,
    "moment": Kind.EPISODIC.value,
}

MAX_CONTENT_LENGTH = 10000


def kind_for_type(memory_type: Optional[str]) -> str:
    """Envelope kind for a reflection type. Unknown types are semantic."""
    return REFLECTION_KIND_MAP.get((memory_type or "").lower(), Kind.SEMANTIC.value)


def confidence_level(score: float) -> str:
    if score >= 0.95:
        return "explicit"
    if score >= 0.70:
        return "implied"
    if score >= 0.40:
        return "inferred"
    return "speculative"


def _confidence_score(value: Any) -> Optional[float]:
    if isinstance(value, dict):
        value = value.get("score")
    if value is None:
        return None
    return require_number(value, "confidence", 0.0, 1.0)


@dataclass
class IngestResult:
    """Outcome of one intake batch."""

    stored: List["StoreReceipt"] = field(default_factory=list)
    skipped: List[Tuple[int, str]] = field(default_factory=list)  # (position, reason)
    duplicates: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stored": [receipt.envelope_id for receipt in self.stored],
            "skipped": [{"index": i, "reason": reason} for i, reason in self.skipped],
            "duplicates": self.duplicates,
        }


def parse_reflection(record: Any) -> Dict[str, Any]:
    """Validate one record into the blob content that gets stored.

    Raises:
        ValueError: The record is malformed.
    """
    if not isinstance(record, dict):
        raise ValueError("record must be an object")
    memory_type = str(record.get("type") or "fact").lower()
    content = require_string(record.get("content"), "content", MAX_CONTENT_LENGTH)
    tags = string_list(record.get("tags"), "tags", 100, max_items=50)
    score = _confidence_score(record.get("confidence"))

    parsed: Dict[str, Any] = {"type": memory_type, "content": content, "tags": tags}
    if score is not None:
        parsed["confidence"] = {"score": score, "level": confidence_level(score)}
    for optional in ("source_quote", "context"):
        if record.get(optional):
            parsed[optional] = str(record[optional])
    return parsed


def ingest_reflections(
    ledger: "Ledger",
    records: Iterable[Any],
    scope: str = Scope.USER.value,
) -> IngestResult:
    """Store reflection records as memories.

    Records repeating content already seen in the batch (case-insensitive)
    are counted as duplicates and not stored twice.
    """
    if not ledger.initialized:
        raise LedgerNotInitializedError("Ledger not initialized; call init() first")
    result = IngestResult()
    seen = set()
    for position, record in enumerate(records):
        try:
            parsed = parse_reflection(record)
        except ValueError as e:
            logger.warning(f"Skipping reflection record {position}: {e}")
            result.skipped.append((position, str(e)))
            continue

        key = parsed["content"].lower()
        if key in seen:
            result.duplicates += 1
            continue
        seen.add(key)

        tags = list(dict.fromkeys([parsed["type"], *parsed["tags"]]))[:50]
        try:
            receipt = ledger.store(
                parsed,
                kind=kind_for_type(parsed["type"]),
                scope=scope,
                tags=tags,
            )
        except (LedgerError, ValueError) as e:
            logger.warning(f"Failed to store reflection record {position}: {e}")
            result.skipped.append((position, str(e)))
            continue
        result.stored.append(receipt)

    logger.info(
        f"Ingested {len(result.stored)} reflections "
        f"({len(result.skipped)} skipped, {result.duplicates} duplicates)"
    )
    return result
