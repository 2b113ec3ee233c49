from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol, Tuple, Union, runtime_checkable
from uuid import uuid4

from hashguard.core.custody import CustodyLedger
from hashguard.core.digest import digest_of, digests_equal, require_well_formed_digest
from hashguard.core.file_info import sniff_file_info
from hashguard.core.models import (
    SYSTEM_ACTOR,
    CustodyAction,
    CustodyEntry,
    EvidenceRecord,
    as_utc,
    utc_now,
)
from hashguard.core.signing import ALGORITHM, SignatureVerifier
from hashguard.core.storage.sqlite_store import SQLiteEvidenceStore
from hashguard.core.timestamping import LOCAL_SOURCE, TimestampVerifier
from hashguard.errors import (
    AnchorServiceUnavailable,
    DuplicateEvidence,
    EvidenceNotFound,
    MalformedInput,
)

log = logging.getLogger("hashguard.evidence")

SIGNATURE_SUFFIX = ".sig"


@runtime_checkable
class EvidenceStore(Protocol):
    """Lookup surface the verification engine needs from an evidence store."""

    def get_evidence(self, evidence_id: str) -> EvidenceRecord:
        ...

    def find_evidence_by_digest(self, digest: str) -> EvidenceRecord:
        ...

    def custody_entries(self, evidence_id: str) -> List[CustodyEntry]:
        ...


@dataclass(frozen=True)
class IntegrityCheck:
    is_valid: bool
    current_hash: str
    stored_hash: str


@dataclass(frozen=True)
class TimestampOutcome:
    """Result of timestamping a record.

    reference is None for a local fallback: a LOCAL_SYSTEM reading is never
    stored as an external proof.
    """

    record: EvidenceRecord
    source: str
    timestamp: datetime
    reference: Optional[str] = None
    fallback_reason: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.source == LOCAL_SOURCE


def _safe_name(filename: Optional[str]) -> str:
    # Client names are untrusted: basename only, length cap.
    return os.path.basename(filename or "evidence")[:255] or "evidence"


class EvidenceService:
    """Intake and authentication steps around stored evidence.

    - register: copy content into storage, digest, reject duplicates, UPLOAD entry
    - sign_evidence: detached signature beside the content, SIGNATURE entry
    - timestamp_evidence: external anchor or local fallback, TIMESTAMP entry
    - check_integrity: hash recheck, INTEGRITY_CHECK entry

    Security notes:
    - The stored digest is computed from the stored copy, not the source.
    - Content in storage_dir is addressed by evidence id, never by client name.

    """

    def __init__(
        self,
        store: SQLiteEvidenceStore,
        ledger: CustodyLedger,
        signer: SignatureVerifier,
        timestamper: TimestampVerifier,
        *,
        storage_dir: Union[str, Path] = "evidence_store",
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._signer = signer
        self._timestamper = timestamper
        self._storage_dir = Path(storage_dir)

    @property
    def storage_dir(self) -> Path:
        return self._storage_dir

    def register(
        self,
        source: Union[str, Path],
        *,
        collected_by: str,
        filename: Optional[str] = None,
        collected_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> EvidenceRecord:
        name = _safe_name(filename or Path(source).name)
        evidence_id = uuid4().hex
        self._storage_dir.mkdir(parents=True, exist_ok=True)
        dest = self._storage_dir / f"{evidence_id}{Path(name).suffix.lower()}"
        shutil.copyfile(str(source), str(dest))

        try:
            digest = digest_of(dest)
            try:
                existing = self._store.find_evidence_by_digest(digest)
            except EvidenceNotFound:
                existing = None
            if existing is not None:
                raise DuplicateEvidence(
                    f"evidence with this digest already exists: {existing.evidence_id}"
                )

            info = sniff_file_info(str(dest), filename=name)
            record = EvidenceRecord(
                evidence_id=evidence_id,
                content_locator=str(dest),
                stored_digest=digest,
                filename=name,
                collected_by=collected_by,
                collected_at=as_utc(collected_at) if collected_at else utc_now(),
                description=description,
                metadata=info.to_metadata(),
            )
            self._store.insert_evidence(record)
        except Exception:
            dest.unlink(missing_ok=True)
            raise

        self._ledger.append(
            evidence_id,
            CustodyAction.UPLOAD,
            collected_by,
            {
                "filename": name,
                "size": info.size_bytes,
                "mime_type": info.mime_type,
                "description": description,
            },
        )
        log.info(
            "evidence_registered",
            extra={"evidence_id": evidence_id, "digest_prefix": digest[:16], "size": info.size_bytes},
        )
        return record

    def get(self, evidence_id: str) -> EvidenceRecord:
        return self._store.get_evidence(evidence_id)

    def find_by_digest(self, digest: str) -> EvidenceRecord:
        return self._store.find_evidence_by_digest(require_well_formed_digest(digest))

    def list_page(self, *, page: int = 1, limit: int = 10) -> Tuple[List[EvidenceRecord], int]:
        lim = max(1, min(500, int(limit)))
        off = (max(1, int(page)) - 1) * lim
        return self._store.list_evidence(limit=lim, offset=off), self._store.count_evidence()

    def sign_evidence(self, evidence_id: str, actor: str = SYSTEM_ACTOR) -> EvidenceRecord:
        """Sign the stored digest and keep the signature beside the content.

        KeyUnavailable propagates; there is nothing to fall back to.
        """

        record = self._store.get_evidence(evidence_id)
        signature = self._signer.sign(record.stored_digest)
        info = self._signer.key_info()

        sig_path = Path(f"{record.content_locator}{SIGNATURE_SUFFIX}")
        sig_path.write_text(signature + "\n", encoding="ascii")

        updated = self._store.attach_signature(
            evidence_id, str(sig_path), self._signer.public_key_pem()
        )
        self._ledger.append(
            evidence_id,
            CustodyAction.SIGNATURE,
            actor,
            {"signature_file": sig_path.name, "key_id": info.key_id, "algorithm": ALGORITHM},
        )
        return updated

    def timestamp_evidence(
        self,
        evidence_id: str,
        actor: str = SYSTEM_ACTOR,
        *,
        allow_local_fallback: bool = True,
    ) -> TimestampOutcome:
        """Anchor the stored digest externally, or fall back to the local clock.

        With allow_local_fallback=False an unavailable anchor service raises
        AnchorServiceUnavailable instead.
        """

        record = self._store.get_evidence(evidence_id)
        reason: Optional[str] = None
        if self._timestamper.configured:
            try:
                reference = self._timestamper.create_anchor(record.stored_digest)
            except AnchorServiceUnavailable as e:
                if not allow_local_fallback:
                    raise
                reason = str(e)
                log.warning(
                    "anchor_unavailable_local_fallback",
                    extra={"evidence_id": evidence_id, "error": reason},
                )
            else:
                updated = self._store.attach_timestamp(evidence_id, reference)
                source = self._timestamper.source
                now = utc_now()
                self._ledger.append(
                    evidence_id,
                    CustodyAction.TIMESTAMP,
                    actor,
                    {"source": source, "timestamp_file": Path(reference).name, "timestamp": now.isoformat()},
                )
                return TimestampOutcome(record=updated, source=source, timestamp=now, reference=reference)
        else:
            reason = "timestamp anchoring is not configured"
            if not allow_local_fallback:
                raise AnchorServiceUnavailable(reason)

        local = self._timestamper.create_local_timestamp(record.stored_digest)
        self._ledger.append(
            evidence_id,
            CustodyAction.TIMESTAMP,
            actor,
            {"source": local.source, "timestamp": local.timestamp.isoformat(), "reason": reason},
        )
        return TimestampOutcome(
            record=record, source=local.source, timestamp=local.timestamp, fallback_reason=reason
        )

    def upgrade_timestamp(self, evidence_id: str, actor: str = SYSTEM_ACTOR) -> bool:
        record = self._store.get_evidence(evidence_id)
        if not record.timestamp_reference:
            raise MalformedInput("evidence has no anchored timestamp to upgrade")
        upgraded = self._timestamper.upgrade_anchor(record.timestamp_reference)
        if upgraded:
            self._ledger.append(
                evidence_id,
                CustodyAction.TIMESTAMP,
                actor,
                {"source": self._timestamper.source, "upgraded": True},
            )
        return upgraded

    def check_integrity(self, evidence_id: str, actor: str = SYSTEM_ACTOR) -> IntegrityCheck:
        """Recompute the digest of the stored content; ContentUnavailable propagates."""

        record = self._store.get_evidence(evidence_id)
        current = digest_of(record.content_locator)
        ok = digests_equal(current, record.stored_digest)
        self._ledger.append(
            evidence_id,
            CustodyAction.INTEGRITY_CHECK,
            actor,
            {"is_valid": ok, "current_hash": current, "stored_hash": record.stored_digest},
        )
        return IntegrityCheck(is_valid=ok, current_hash=current, stored_hash=record.stored_digest)
