"""Reconciliation checks for a ledger's store and index.

A crash between the blob write and the envelope write leaves an orphaned
blob. Nothing in the write path cleans those up; these checks find them,
along with lineage references to unknown envelopes, lineage cycles and
envelopes whose content is missing from the store.

- ReconcileFinding dataclass
- Individual check functions
- run_reconciliation() coordinator
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Set

from memledger.lineage import dangling_references, find_cycles
from memledger.protocols import ContentStore, LedgerError, OrphanedBlob, supports_listing
from memledger.records.canonical import load_json_object
from memledger.records.envelope import MemoryEnvelope, looks_like_envelope
from memledger.storage.index import EnvelopeIndex

logger = logging.getLogger(__name__)


@dataclass
class ReconcileFinding:
    """A single finding from reconciliation."""

    check: str
    severity: str  # "error", "warning", "info"
    subject_id: str
    message: str

    def to_dict(self) -> dict:
        return {
            "check": self.check,
            "severity": self.severity,
            "subject_id": self.subject_id,
            "message": self.message,
        }


def _listed(store: ContentStore) -> Optional[Set[str]]:
    if not supports_listing(store):
        return None
    return set(store.list())


def check_orphaned_blobs(index: EnvelopeIndex, store: ContentStore) -> List[ReconcileFinding]:
    """Stored objects no indexed envelope accounts for.

    Unreferenced envelope copies are classified separately: an earlier
    copy of a co-signed envelope is harmless, an envelope missing from
    the index means the index needs a rebuild.
    """
    findings: List[ReconcileFinding] = []
    addresses = _listed(store)
    if addresses is None:
        return [
            ReconcileFinding(
                check="orphaned_blob",
                severity="info",
                subject_id=store.name,
                message=f"Store {store.name!r} cannot list its contents; orphan check skipped",
            )
        ]

    referenced = index.referenced_addresses()
    for address in sorted(addresses - referenced):
        try:
            data = load_json_object(store.get(address), "object")
        except (LedgerError, ValueError) as e:
            logger.debug(f"Unreadable object {address[:16]}: {e}")
            data = {}
        if looks_like_envelope(data):
            envelope_id = str(data.get("envelope_id"))
            if index.get(envelope_id) is not None:
                findings.append(
                    ReconcileFinding(
                        check="stale_envelope_copy",
                        severity="info",
                        subject_id=address,
                        message=f"Earlier copy of envelope {envelope_id[:12]}",
                    )
                )
            else:
                findings.append(
                    ReconcileFinding(
                        check="unindexed_envelope",
                        severity="warning",
                        subject_id=address,
                        message=f"Envelope {envelope_id[:12]} is stored but not indexed",
                    )
                )
            continue
        findings.append(
            ReconcileFinding(
                check="orphaned_blob",
                severity="error",
                subject_id=address,
                message=str(OrphanedBlob(address)),
            )
        )
    return findings


def check_missing_content(
    envelopes: List[MemoryEnvelope], store: ContentStore
) -> List[ReconcileFinding]:
    """Envelopes whose blob the store no longer has (shredded or lost)."""
    findings: List[ReconcileFinding] = []
    addresses = _listed(store)
    if addresses is None:
        return findings
    for envelope in envelopes:
        if envelope.is_tombstone or envelope.content_address in addresses:
            continue
        findings.append(
            ReconcileFinding(
                check="missing_content",
                severity="warning",
                subject_id=envelope.envelope_id,
                message=(
                    f"Envelope {envelope.envelope_id[:12]} points at "
                    f"{envelope.content_address}, which the store does not have"
                ),
            )
        )
    return findings


def check_dangling_lineage(envelopes: List[MemoryEnvelope]) -> List[ReconcileFinding]:
    findings: List[ReconcileFinding] = []
    for envelope_id, missing in sorted(dangling_references(envelopes).items()):
        findings.append(
            ReconcileFinding(
                check="dangling_lineage",
                severity="warning",
                subject_id=envelope_id,
                message=(
                    f"Envelope {envelope_id[:12]} references unknown "
                    f"{', '.join(m[:12] for m in missing)}"
                ),
            )
        )
    return findings


def check_lineage_cycles(envelopes: List[MemoryEnvelope]) -> List[ReconcileFinding]:
    return [
        ReconcileFinding(
            check="lineage_cycle",
            severity="error",
            subject_id=envelope_id,
            message=f"Lineage of envelope {envelope_id[:12]} loops back to itself",
        )
        for envelope_id in find_cycles(envelopes)
    ]


def run_reconciliation(
    index: EnvelopeIndex, store: ContentStore, detect_cycles: bool = True
) -> List[ReconcileFinding]:
    """Run all reconciliation checks and return combined findings."""
    envelopes = index.all_envelopes()
    findings: List[ReconcileFinding] = []
    findings.extend(check_orphaned_blobs(index, store))
    findings.extend(check_missing_content(envelopes, store))
    findings.extend(check_dangling_lineage(envelopes))
    if detect_cycles:
        findings.extend(check_lineage_cycles(envelopes))
    errors = sum(1 for f in findings if f.severity == "error")
    logger.info(f"Reconciliation: {len(findings)} findings ({errors} errors)")
    return findings
