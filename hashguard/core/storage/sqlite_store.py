from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from uuid import UUID

from hashguard.core.models import CustodyEntry, EvidenceRecord, as_utc
from hashguard.errors import DuplicateEvidence, EvidenceNotFound

_SCHEMA = """
CREATE TABLE IF NOT EXISTS evidence (
    evidence_id TEXT PRIMARY KEY,
    content_locator TEXT NOT NULL,
    stored_digest TEXT NOT NULL UNIQUE,
    filename TEXT NOT NULL DEFAULT '',
    signature_reference TEXT,
    signing_public_key TEXT,
    timestamp_reference TEXT,
    collected_by TEXT,
    collected_at TEXT,
    description TEXT,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS custody_entries (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT NOT NULL UNIQUE,
    evidence_id TEXT NOT NULL,
    action TEXT NOT NULL,
    actor TEXT NOT NULL,
    details_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    FOREIGN KEY (evidence_id) REFERENCES evidence(evidence_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_custody_chain ON custody_entries(evidence_id, created_at, seq);
CREATE INDEX IF NOT EXISTS idx_custody_actor ON custody_entries(actor, created_at);
CREATE INDEX IF NOT EXISTS idx_custody_action ON custody_entries(action, created_at);

CREATE TRIGGER IF NOT EXISTS evidence_digest_immutable
BEFORE UPDATE OF stored_digest, content_locator ON evidence
WHEN NEW.stored_digest IS NOT OLD.stored_digest OR NEW.content_locator IS NOT OLD.content_locator
BEGIN
    SELECT RAISE(ABORT, 'evidence content identity is immutable');
END;

CREATE TRIGGER IF NOT EXISTS custody_entries_no_update
BEFORE UPDATE ON custody_entries
BEGIN
    SELECT RAISE(ABORT, 'custody entries are append-only');
END;

CREATE TRIGGER IF NOT EXISTS custody_entries_no_delete
BEFORE DELETE ON custody_entries
WHEN EXISTS (SELECT 1 FROM evidence WHERE evidence_id = OLD.evidence_id)
BEGIN
    SELECT RAISE(ABORT, 'custody entries are append-only');
END;
"""


def _json_default(o):
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    if isinstance(o, (Path, UUID)):
        return str(o)
    if isinstance(o, bytes):
        return o.hex()
    if isinstance(o, (set, frozenset)):
        return sorted(o)
    raise TypeError(f"not JSON serializable: {type(o)!r}")


def _json_dumps(obj: Any) -> str:
    """Deterministic JSON serialization for stored documents."""

    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=_json_default)


def _dt_to_iso(dt: datetime) -> str:
    """Serialize as fixed-width UTC ISO8601 so text order equals time order."""

    return as_utc(dt).isoformat(timespec="microseconds")


def _dt_from_iso(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    return as_utc(datetime.fromisoformat(text))


def _row_to_evidence(row: sqlite3.Row) -> EvidenceRecord:
    return EvidenceRecord(
        evidence_id=row["evidence_id"],
        content_locator=row["content_locator"],
        stored_digest=row["stored_digest"],
        filename=row["filename"] or "",
        signature_reference=row["signature_reference"],
        signing_public_key=row["signing_public_key"],
        timestamp_reference=row["timestamp_reference"],
        collected_by=row["collected_by"],
        collected_at=_dt_from_iso(row["collected_at"]),
        description=row["description"],
        metadata=json.loads(row["metadata_json"] or "{}"),
        created_at=_dt_from_iso(row["created_at"]),
    )


def _row_to_entry(row: sqlite3.Row) -> CustodyEntry:
    return CustodyEntry(
        entry_id=row["entry_id"],
        seq=int(row["seq"]),
        evidence_id=row["evidence_id"],
        action=row["action"],
        actor=row["actor"],
        details=json.loads(row["details_json"] or "{}"),
        created_at=_dt_from_iso(row["created_at"]),
    )


@dataclass(slots=True)
class SQLiteEvidenceStore:
    """SQLite persistence for evidence records and the custody table.

    Security notes:
    - Treat all values read from the database as untrusted.
    - custody_entries has no update path: triggers abort UPDATE, and abort
      DELETE unless the parent evidence row is already gone (cascade purge).
    - This store does NOT encrypt data at rest.

    Complexity
    - single-row inserts; chain reads O(k log n) via (evidence_id, created_at, seq) index
    """

    db_path: Path

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)

    def connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self.db_path), timeout=30)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON")
        return con

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """Connection scoped to one transaction; commits on success, always closes."""

        con = self.connect()
        try:
            with con:
                yield con
        finally:
            con.close()

    def init_schema(self) -> None:
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.session() as con:
            con.executescript(_SCHEMA)

    # --- evidence -----------------------------------------------------

    def insert_evidence(self, record: EvidenceRecord) -> EvidenceRecord:
        try:
            with self.session() as con:
                con.execute(
                    """INSERT INTO evidence(
                        evidence_id, content_locator, stored_digest, filename,
                        signature_reference, signing_public_key, timestamp_reference,
                        collected_by, collected_at, description, metadata_json, created_at
                    ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?)""",
                    (
                        record.evidence_id,
                        record.content_locator,
                        record.stored_digest.lower(),
                        record.filename,
                        record.signature_reference,
                        record.signing_public_key,
                        record.timestamp_reference,
                        record.collected_by,
                        _dt_to_iso(record.collected_at) if record.collected_at else None,
                        record.description,
                        _json_dumps(record.metadata or {}),
                        _dt_to_iso(record.created_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "stored_digest" in str(e):
                raise DuplicateEvidence(
                    f"evidence with digest {record.stored_digest} already exists"
                ) from e
            raise
        return record

    def get_evidence(self, evidence_id: str) -> EvidenceRecord:
        with self.session() as con:
            row = con.execute(
                "SELECT * FROM evidence WHERE evidence_id = ?", (str(evidence_id),)
            ).fetchone()
        if row is None:
            raise EvidenceNotFound(f"evidence not found: {evidence_id}")
        return _row_to_evidence(row)

    def find_evidence_by_digest(self, digest: str) -> EvidenceRecord:
        with self.session() as con:
            row = con.execute(
                "SELECT * FROM evidence WHERE stored_digest = ?", (str(digest).lower(),)
            ).fetchone()
        if row is None:
            raise EvidenceNotFound(f"no evidence for digest: {digest}")
        return _row_to_evidence(row)

    def list_evidence(self, *, limit: int = 50, offset: int = 0) -> List[EvidenceRecord]:
        """List evidence newest first (bounded)."""

        lim = max(1, min(500, int(limit)))
        off = max(0, int(offset))
        with self.session() as con:
            rows = con.execute(
                "SELECT * FROM evidence ORDER BY created_at DESC, evidence_id LIMIT ? OFFSET ?",
                (lim, off),
            ).fetchall()
        return [_row_to_evidence(r) for r in rows]

    def count_evidence(self) -> int:
        with self.session() as con:
            return int(con.execute("SELECT COUNT(*) FROM evidence").fetchone()[0])

    def attach_signature(
        self, evidence_id: str, reference: str, public_key_pem: Optional[str]
    ) -> EvidenceRecord:
        with self.session() as con:
            cur = con.execute(
                "UPDATE evidence SET signature_reference = ?, signing_public_key = ? WHERE evidence_id = ?",
                (reference, public_key_pem, str(evidence_id)),
            )
            if cur.rowcount == 0:
                raise EvidenceNotFound(f"evidence not found: {evidence_id}")
        return self.get_evidence(evidence_id)

    def attach_timestamp(self, evidence_id: str, reference: str) -> EvidenceRecord:
        with self.session() as con:
            cur = con.execute(
                "UPDATE evidence SET timestamp_reference = ? WHERE evidence_id = ?",
                (reference, str(evidence_id)),
            )
            if cur.rowcount == 0:
                raise EvidenceNotFound(f"evidence not found: {evidence_id}")
        return self.get_evidence(evidence_id)

    def purge_evidence(self, evidence_id: str) -> None:
        """Administrative delete: removes the record and, by cascade, its custody history."""

        with self.session() as con:
            cur = con.execute("DELETE FROM evidence WHERE evidence_id = ?", (str(evidence_id),))
            if cur.rowcount == 0:
                raise EvidenceNotFound(f"evidence not found: {evidence_id}")

    # --- custody ------------------------------------------------------

    def insert_custody_entry(
        self,
        *,
        entry_id: str,
        evidence_id: str,
        action: str,
        actor: str,
        details: Dict[str, Any],
        created_at: datetime,
    ) -> CustodyEntry:
        """Insert one custody row after checking the parent exists.

        created_at is clamped to the latest stored time for the same evidence,
        so a clock that steps backwards cannot reorder the chain.
        """

        with self.session() as con:
            exists = con.execute(
                "SELECT 1 FROM evidence WHERE evidence_id = ?", (str(evidence_id),)
            ).fetchone()
            if exists is None:
                raise EvidenceNotFound(f"evidence not found: {evidence_id}")

            latest = con.execute(
                "SELECT MAX(created_at) FROM custody_entries WHERE evidence_id = ?",
                (str(evidence_id),),
            ).fetchone()[0]
            ts = _dt_to_iso(created_at)
            if latest is not None and latest > ts:
                ts = latest

            cur = con.execute(
                """INSERT INTO custody_entries(entry_id, evidence_id, action, actor, details_json, created_at)
                VALUES(?,?,?,?,?,?)""",
                (entry_id, str(evidence_id), action, actor, _json_dumps(details or {}), ts),
            )
            seq = int(cur.lastrowid)

        return CustodyEntry(
            entry_id=entry_id,
            seq=seq,
            evidence_id=str(evidence_id),
            action=action,
            actor=actor,
            details=json.loads(_json_dumps(details or {})),
            created_at=_dt_from_iso(ts),
        )

    def custody_entries(self, evidence_id: str) -> List[CustodyEntry]:
        with self.session() as con:
            rows = con.execute(
                "SELECT * FROM custody_entries WHERE evidence_id = ? ORDER BY created_at ASC, seq ASC",
                (str(evidence_id),),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def last_custody_entry(self, evidence_id: str) -> Optional[CustodyEntry]:
        with self.session() as con:
            row = con.execute(
                """SELECT * FROM custody_entries WHERE evidence_id = ?
                ORDER BY created_at DESC, seq DESC LIMIT 1""",
                (str(evidence_id),),
            ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def custody_entries_where(self, *, actor: Optional[str] = None, action: Optional[str] = None) -> List[CustodyEntry]:
        """Global secondary lookup, newest first."""

        clauses: List[str] = []
        params: List[Any] = []
        if actor is not None:
            clauses.append("actor = ?")
            params.append(actor)
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.session() as con:
            rows = con.execute(
                f"SELECT * FROM custody_entries {where} ORDER BY created_at DESC, seq DESC",
                tuple(params),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

