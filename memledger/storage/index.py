"""SQLite index over persisted envelopes.

The content store is the source of truth. The index is a local cache
that answers the compiler's candidate query, tracks which envelopes a
tombstone or a superseding child has replaced, and maps policy ids to
their latest version. It can be rebuilt from any listable store.
"""

import contextlib
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from memledger.protocols import ContentStore, LedgerError, supports_listing
from memledger.records.canonical import load_json_object
from memledger.records.envelope import MemoryEnvelope, looks_like_envelope
from memledger.types import Kind, parse_datetime

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS envelopes (
    envelope_id TEXT PRIMARY KEY,
    address TEXT NOT NULL,        -- where the envelope record is stored
    content_address TEXT,         -- blob address (NULL for tombstones)
    created_at TEXT NOT NULL,     -- normalised to UTC ISO-8601
    scope TEXT NOT NULL,
    kind TEXT NOT NULL,
    risk_class TEXT NOT NULL,
    epoch_id TEXT,
    access_policy_ref TEXT,
    topic_tags TEXT,              -- JSON array
    record TEXT NOT NULL          -- full envelope JSON
);

CREATE INDEX IF NOT EXISTS idx_envelopes_query ON envelopes(scope, kind, created_at);

CREATE TABLE IF NOT EXISTS revocations (
    envelope_id TEXT NOT NULL,
    superseded_by TEXT NOT NULL,  -- tombstone or superseding child
    PRIMARY KEY (envelope_id, superseded_by)
);

CREATE TABLE IF NOT EXISTS policies (
    envelope_id TEXT PRIMARY KEY,
    policy_id TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_policies_id ON policies(policy_id, updated_at);
"""


def _normalize_ts(value: str) -> str:
    return parse_datetime(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


class EnvelopeIndex:
    """Envelope index stored in ``index.db``.

    Connections are opened per operation, as in the rest of the storage
    layer, so the index is safe to share between threads.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Transaction scope: commit on success, roll back on error, always close."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Index transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, envelope: MemoryEnvelope, address: str) -> None:
        """Index an envelope persisted at ``address``.

        Re-adding the same envelope id replaces the row (a co-signed
        envelope is re-persisted under a new address).
        """
        with self._connect() as conn:
            self._insert(conn, envelope, address)

    def _insert(self, conn: sqlite3.Connection, envelope: MemoryEnvelope, address: str) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO envelopes (
                envelope_id, address, content_address, created_at, scope, kind,
                risk_class, epoch_id, access_policy_ref, topic_tags, record
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                envelope.envelope_id,
                address,
                envelope.content_address,
                _normalize_ts(envelope.created_at),
                envelope.scope,
                envelope.kind,
                envelope.risk_class,
                envelope.epoch_id,
                envelope.access_policy_ref,
                json.dumps(envelope.topic_tags),
                json.dumps(envelope.to_dict()),
            ),
        )
        if envelope.lineage.supersedes:
            conn.executemany(
                "INSERT OR IGNORE INTO revocations (envelope_id, superseded_by) VALUES (?, ?)",
                [(target, envelope.envelope_id) for target in envelope.lineage.supersedes],
            )
        if envelope.kind == Kind.POLICY.value and envelope.access_policy_ref:
            # A policy envelope references the policy it carries
            conn.execute(
                "INSERT OR REPLACE INTO policies (envelope_id, policy_id, updated_at) "
                "VALUES (?, ?, ?)",
                (
                    envelope.envelope_id,
                    envelope.access_policy_ref,
                    _normalize_ts(envelope.created_at),
                ),
            )

    def clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM envelopes")
            conn.execute("DELETE FROM revocations")
            conn.execute("DELETE FROM policies")

    def rebuild(self, store: ContentStore) -> int:
        """Re-index every envelope found in a listable store.

        Objects that are not envelopes (sealed blobs) or do not parse are
        skipped.

        Returns:
            Number of envelopes indexed

        Raises:
            LedgerError: If the store cannot list its contents.
        """
        if not supports_listing(store):
            raise LedgerError(f"Store {store.name!r} cannot list its contents; rebuild needs it")

        envelopes = []
        for address in store.list():
            try:
                data = load_json_object(store.get(address), "object")
                if not looks_like_envelope(data):
                    continue
                envelopes.append((MemoryEnvelope.from_dict(data), address))
            except (LedgerError, ValueError) as e:
                logger.warning(f"Skipping unreadable object {address[:16]} during rebuild: {e}")

        # When a co-signed envelope was re-persisted, keep the copy with
        # the most attestations.
        best: Dict[str, Any] = {}
        for envelope, address in envelopes:
            current = best.get(envelope.envelope_id)
            if current is None or len(envelope.attestations) > len(current[0].attestations):
                best[envelope.envelope_id] = (envelope, address)

        with self._connect() as conn:
            conn.execute("DELETE FROM envelopes")
            conn.execute("DELETE FROM revocations")
            conn.execute("DELETE FROM policies")
            for envelope, address in best.values():
                self._insert(conn, envelope, address)
        logger.info(f"Rebuilt envelope index with {len(best)} envelopes")
        return len(best)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query_envelopes(
        self,
        scope: Iterable[str],
        kinds: Iterable[str],
        since: Optional[datetime] = None,
        limit: int = 200,
    ) -> List[MemoryEnvelope]:
        """Candidate envelopes, newest first, up to ``limit``."""
        scope = list(scope)
        kinds = list(kinds)
        if not scope or not kinds or limit <= 0:
            return []
        sql = (
            f"SELECT record FROM envelopes WHERE scope IN ({','.join('?' * len(scope))}) "
            f"AND kind IN ({','.join('?' * len(kinds))})"
        )
        params: List[Any] = [*scope, *kinds]
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            sql += " AND created_at >= ?"
            params.append(since.astimezone(timezone.utc).isoformat(timespec="microseconds"))
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [MemoryEnvelope.from_dict(json.loads(row["record"])) for row in rows]

    def revoked_ids(self) -> Set[str]:
        """Ids superseded by a tombstone or by a newer version."""
        with self._connect() as conn:
            rows = conn.execute("SELECT DISTINCT envelope_id FROM revocations").fetchall()
        return {row["envelope_id"] for row in rows}

    def verified_revoked_ids(
        self,
        trusted_keys: Optional[Mapping[str, str]] = None,
        allow_embedded_keys: bool = True,
    ) -> Set[str]:
        """Ids superseded by an envelope whose attestations verify.

        A tombstone or superseding child that is unsigned, or signed by an
        untrusted key, revokes nothing.
        """
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT r.envelope_id, e.record FROM revocations r "
                "LEFT JOIN envelopes e ON e.envelope_id = r.superseded_by"
            ).fetchall()

        revoked: Set[str] = set()
        checked: Dict[str, bool] = {}
        for row in rows:
            if row["envelope_id"] in revoked or row["record"] is None:
                continue
            record = row["record"]
            if record not in checked:
                revoker = MemoryEnvelope.from_dict(json.loads(record))
                checked[record] = revoker.verify(
                    trusted_keys, allow_embedded_keys=allow_embedded_keys
                ).valid
            if checked[record]:
                revoked.add(row["envelope_id"])
            else:
                logger.debug(f"Ignoring unverified revocation of {row['envelope_id'][:8]}")
        return revoked

    def get(self, envelope_id: str) -> Optional[MemoryEnvelope]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT record FROM envelopes WHERE envelope_id = ?", (envelope_id,)
            ).fetchone()
        return MemoryEnvelope.from_dict(json.loads(row["record"])) if row else None

    def address_of(self, envelope_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT address FROM envelopes WHERE envelope_id = ?", (envelope_id,)
            ).fetchone()
        return row["address"] if row else None

    def find_by_address(self, address: str) -> Optional[MemoryEnvelope]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT record FROM envelopes WHERE address = ?", (address,)
            ).fetchone()
        return MemoryEnvelope.from_dict(json.loads(row["record"])) if row else None

    def latest_policy_envelope(self, policy_id: str) -> Optional[str]:
        """Envelope id of the newest saved version of a policy."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT envelope_id FROM policies WHERE policy_id = ? "
                "ORDER BY updated_at DESC LIMIT 1",
                (policy_id,),
            ).fetchone()
        return row["envelope_id"] if row else None

    def all_envelopes(self) -> List[MemoryEnvelope]:
        with self._connect() as conn:
            rows = conn.execute("SELECT record FROM envelopes ORDER BY created_at").fetchall()
        return [MemoryEnvelope.from_dict(json.loads(row["record"])) for row in rows]

    def referenced_addresses(self) -> Set[str]:
        """Every store address the index knows about (envelopes and blobs)."""
        with self._connect() as conn:
            rows = conn.execute("SELECT address, content_address FROM envelopes").fetchall()
        addresses: Set[str] = set()
        for row in rows:
            addresses.add(row["address"])
            if row["content_address"]:
                addresses.add(row["content_address"])
        return addresses

    def count_by_kind(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT kind, COUNT(*) AS n FROM envelopes GROUP BY kind"
            ).fetchall()
        return {row["kind"]: row["n"] for row in rows}
