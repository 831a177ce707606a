"""Lineage traversal and cycle detection.

Envelopes reference earlier envelopes through ``lineage.parents``,
``supersedes`` and ``branches``. Ids are minted at creation, so the
ledger's own write path cannot produce a cycle; imported or forged
records can. Cycle checks therefore run in reconciliation, not on every
write.
"""

from typing import Callable, Dict, Iterable, List, Optional, Set

from memledger.records.envelope import MemoryEnvelope

MAX_LINEAGE_DEPTH = 64

EnvelopeLookup = Callable[[str], Optional[MemoryEnvelope]]


def check_lineage_cycle(
    lookup: EnvelopeLookup,
    envelope_id: str,
    references: Optional[List[str]],
    _max_depth: int = MAX_LINEAGE_DEPTH,
) -> None:
    """Check whether ``references`` lead back to ``envelope_id``.

    Walks each reference's own lineage until it either reaches the
    target, runs out of known ancestors, or exceeds the depth limit.

    Args:
        lookup: envelope_id -> envelope, or None when unknown
        envelope_id: The envelope being checked
        references: Its lineage references
        _max_depth: Maximum traversal depth

    Raises:
        ValueError: If a circular reference is detected or the depth
            limit is exceeded
    """
    if not references:
        return

    for ref in references:
        if not ref:
            continue
        if ref == envelope_id:
            raise ValueError(f"Circular lineage reference detected at {envelope_id}")
        visited: Set[str] = {envelope_id, ref}
        _walk(lookup, ref, envelope_id, visited, 1, _max_depth)


def _walk(
    lookup: EnvelopeLookup,
    current_id: str,
    target_id: str,
    visited: Set[str],
    depth: int,
    max_depth: int,
) -> None:
    if depth > max_depth:
        raise ValueError(f"Lineage of {target_id} exceeds depth {max_depth}")

    envelope = lookup(current_id)
    if envelope is None:
        return

    for parent_id in envelope.lineage.references():
        if parent_id == target_id:
            raise ValueError(f"Circular lineage reference detected at {target_id}")
        if parent_id in visited:
            continue
        visited.add(parent_id)
        _walk(lookup, parent_id, target_id, visited, depth + 1, max_depth)


def find_cycles(envelopes: Iterable[MemoryEnvelope]) -> List[str]:
    """Ids of envelopes whose lineage loops back to themselves."""
    by_id: Dict[str, MemoryEnvelope] = {e.envelope_id: e for e in envelopes}
    cyclic = []
    for envelope_id, envelope in by_id.items():
        try:
            check_lineage_cycle(by_id.get, envelope_id, envelope.lineage.references())
        except ValueError:
            cyclic.append(envelope_id)
    return sorted(cyclic)


def dangling_references(envelopes: Iterable[MemoryEnvelope]) -> Dict[str, List[str]]:
    """Lineage references to envelopes the ledger does not know.

    Returns:
        envelope_id -> unknown referenced ids, for envelopes that have any
    """
    envelopes = list(envelopes)
    known = {e.envelope_id for e in envelopes}
    dangling: Dict[str, List[str]] = {}
    for envelope in envelopes:
        missing = [ref for ref in envelope.lineage.references() if ref not in known]
        if missing:
            dangling[envelope.envelope_id] = missing
    return dangling


def ancestry(
    lookup: EnvelopeLookup, envelope_id: str, max_depth: int = MAX_LINEAGE_DEPTH
) -> List[MemoryEnvelope]:
    """Known ancestors of an envelope through ``lineage.parents``, nearest first.

    Stops at unknown ids, repeated ids and ``max_depth``.
    """
    chain: List[MemoryEnvelope] = []
    seen: Set[str] = {envelope_id}
    current = lookup(envelope_id)
    while current is not None and len(chain) < max_depth:
        parent_id = next((p for p in current.lineage.parents if p not in seen), None)
        if parent_id is None:
            break
        seen.add(parent_id)
        current = lookup(parent_id)
        if current is not None:
            chain.append(current)
    return chain
