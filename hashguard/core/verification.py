from __future__ import annotations

import concurrent.futures
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple, TypeVar, Union

from hashguard.core.anchoring import (
    EXTERNAL_SOURCE,
    STATUS_CONFIRMED,
    STATUS_INVALID,
    STATUS_PENDING,
    STATUS_UNAVAILABLE,
)
from hashguard.core.custody import CustodyLedger, distinct_in_order, validate_chain
from hashguard.core.digest import digest_of, digests_equal
from hashguard.core.models import (
    SYSTEM_ACTOR,
    CustodyAction,
    CustodyEntry,
    EvidenceRecord,
    utc_now,
)
from hashguard.core.scoring import (
    SIGNATURE_INVALID,
    SIGNATURE_UNAVAILABLE,
    SIGNATURE_VALID,
    TIMESTAMP_CONFIRMED,
    TIMESTAMP_INVALID,
    TIMESTAMP_LOCAL,
    TIMESTAMP_PENDING,
    TIMESTAMP_UNAVAILABLE,
    ScoreInputs,
    ScoringPolicy,
    assess,
)
from hashguard.core.signing import KeyInfo, SignatureVerifier
from hashguard.core.evidence import EvidenceStore
from hashguard.core.timestamping import LOCAL_SOURCE, TimestampVerifier
from hashguard.errors import EvidenceNotFound, HashGuardError, KeyUnavailable

log = logging.getLogger("hashguard.verification")

T = TypeVar("T")

_ANCHOR_TO_TIMESTAMP = {
    STATUS_CONFIRMED: TIMESTAMP_CONFIRMED,
    STATUS_PENDING: TIMESTAMP_PENDING,
    STATUS_INVALID: TIMESTAMP_INVALID,
    STATUS_UNAVAILABLE: TIMESTAMP_UNAVAILABLE,
}


@dataclass(frozen=True)
class HashVerification:
    is_valid: bool
    stored_hash: str
    calculated_hash: str
    message: str


@dataclass(frozen=True)
class SignatureVerification:
    """status is one of valid / invalid / unavailable."""

    status: str
    is_valid: bool
    message: str
    key_info: Optional[KeyInfo] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TimestampVerification:
    """status is confirmed / pending / invalid / unavailable / local.

    source is LOCAL_SYSTEM for a local clock reading, so it can never be
    mistaken for an externally anchored proof.
    """

    status: str
    is_valid: bool
    source: str
    message: str
    anchor_time: Optional[datetime] = None
    anchor_height: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CustodyVerification:
    is_valid: bool
    total_entries: int
    first_entry: Optional[datetime]
    last_entry: Optional[datetime]
    actors: List[str]
    issues: List[str]
    integrity_score: int = 0


@dataclass(frozen=True)
class VerificationVerdict:
    """Result of one full verification; built per call and never shared."""

    evidence_id: str
    filename: str
    overall_valid: bool
    confidence_score: int
    hash_verification: HashVerification
    custody_verification: CustodyVerification
    verified_at: datetime
    summary: str
    signature_verification: Optional[SignatureVerification] = None
    timestamp_verification: Optional[TimestampVerification] = None
    recommendations: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class QuickVerification:
    is_intact: bool
    file_hash: str
    hash_matches: bool
    message: str


class VerificationEngine:
    """Combines hash, signature, timestamp and custody checks into one verdict.

    Flow
    1. load the record (unknown id -> EvidenceNotFound, nothing appended)
    2. run the sub-checks concurrently and join them
    3. score and explain through the scoring rule tables
    4. append one VERIFICATION custody entry with the outcome

    Security notes:
    - Infrastructure failures inside a sub-check become a negative or
      "unavailable" sub-result; a known id always yields a verdict.
    - A signature or timestamp that could not be checked never counts
      in favour of the evidence.

    """

    def __init__(
        self,
        store: EvidenceStore,
        ledger: CustodyLedger,
        signer: SignatureVerifier,
        timestamper: Optional[TimestampVerifier] = None,
        *,
        policy: ScoringPolicy = ScoringPolicy(),
        workers: int = 4,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._signer = signer
        self._timestamper = timestamper
        self._policy = policy
        self._clock = clock
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, int(workers)), thread_name_prefix="hashguard-verify"
        )

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    # -- sub-checks ---------------------------------------------------------

    def check_hash(self, record: EvidenceRecord) -> HashVerification:
        try:
            calculated = digest_of(record.content_locator)
        except HashGuardError as e:
            log.warning(
                "hash_check_unavailable",
                extra={"evidence_id": record.evidence_id, "error": str(e)},
            )
            return HashVerification(
                is_valid=False,
                stored_hash=record.stored_digest,
                calculated_hash="",
                message=f"File not found in storage: {e}",
            )

        ok = digests_equal(calculated, record.stored_digest)
        return HashVerification(
            is_valid=ok,
            stored_hash=record.stored_digest,
            calculated_hash=calculated,
            message="Hash intact" if ok else "Hash does not match - file was modified",
        )

    def check_signature(self, record: EvidenceRecord) -> Optional[SignatureVerification]:
        if not record.signature_reference:
            return None

        try:
            signature = Path(record.signature_reference).read_text(encoding="ascii")
        except (OSError, UnicodeError) as e:
            log.warning(
                "signature_artifact_unreadable",
                extra={"evidence_id": record.evidence_id, "error": str(e)},
            )
            return SignatureVerification(
                status=SIGNATURE_INVALID,
                is_valid=False,
                message="Signature file is missing or unreadable",
                error=str(e),
            )

        try:
            ok = self._signer.verify(record.stored_digest, signature, record.signing_public_key)
            info = self._signer.key_info(record.signing_public_key) if ok else None
        except KeyUnavailable as e:
            return SignatureVerification(
                status=SIGNATURE_UNAVAILABLE,
                is_valid=False,
                message="Signature could not be checked",
                error=str(e),
            )

        if ok:
            return SignatureVerification(
                status=SIGNATURE_VALID, is_valid=True, message="Digital signature valid", key_info=info
            )
        return SignatureVerification(
            status=SIGNATURE_INVALID,
            is_valid=False,
            message="Digital signature invalid",
            error="Signature does not match the stored digest",
        )

    def check_timestamp(self, record: EvidenceRecord) -> Optional[TimestampVerification]:
        """External anchor check; None when the record has no anchor reference."""

        if not record.timestamp_reference:
            return None
        if self._timestamper is None:
            return TimestampVerification(
                status=TIMESTAMP_UNAVAILABLE,
                is_valid=False,
                source=EXTERNAL_SOURCE,
                message="Timestamp could not be checked",
                error="Timestamp anchoring is not configured",
            )

        result = self._timestamper.verify_anchor(record.stored_digest, record.timestamp_reference)
        status = _ANCHOR_TO_TIMESTAMP.get(result.status, TIMESTAMP_INVALID)
        if status == TIMESTAMP_CONFIRMED and not result.is_valid:
            status = TIMESTAMP_INVALID
        if result.is_valid:
            message = "Timestamp valid"
        elif status == TIMESTAMP_PENDING:
            message = "Timestamp pending confirmation"
        elif status == TIMESTAMP_UNAVAILABLE:
            message = "Timestamp could not be checked"
        else:
            message = "Timestamp invalid"
        return TimestampVerification(
            status=status,
            is_valid=result.is_valid,
            source=result.source,
            message=message,
            anchor_time=result.anchor_time,
            anchor_height=result.anchor_height,
            error=result.error,
        )

    def check_custody(self, evidence_id: str) -> Tuple[CustodyVerification, List[CustodyEntry]]:
        try:
            chain = self._store.custody_entries(evidence_id)
        except sqlite3.Error as e:
            log.error("custody_check_failed", extra={"evidence_id": evidence_id, "error": str(e)})
            return (
                CustodyVerification(
                    is_valid=False,
                    total_entries=0,
                    first_entry=None,
                    last_entry=None,
                    actors=[],
                    issues=[f"Verification error: {e}"],
                ),
                [],
            )

        validation = validate_chain(chain, gap_hours=self._ledger.gap_hours)
        return (
            CustodyVerification(
                is_valid=validation.is_valid,
                total_entries=len(chain),
                first_entry=chain[0].created_at if chain else None,
                last_entry=chain[-1].created_at if chain else None,
                actors=distinct_in_order(e.actor for e in chain),
                issues=list(validation.issues),
                integrity_score=validation.integrity_score,
            ),
            chain,
        )

    @staticmethod
    def local_timestamp_from(chain: List[CustodyEntry]) -> Optional[TimestampVerification]:
        """A LOCAL_SYSTEM TIMESTAMP entry, reported as such and never as valid."""

        for entry in reversed(chain):
            if entry.action == CustodyAction.TIMESTAMP.value and entry.details.get("source") == LOCAL_SOURCE:
                return TimestampVerification(
                    status=TIMESTAMP_LOCAL,
                    is_valid=False,
                    source=LOCAL_SOURCE,
                    message=f"Local system timestamp only ({entry.details.get('timestamp', entry.created_at.isoformat())})",
                    error="only a local system timestamp exists, no external anchor",
                )
        return None

    # -- orchestration ------------------------------------------------------

    def _guarded(self, name: str, evidence_id: str, fut: "concurrent.futures.Future[T]", fallback: Callable[[Exception], T]) -> T:
        try:
            return fut.result()
        except (HashGuardError, OSError, sqlite3.Error, ValueError) as e:
            log.error(
                "sub_check_failed",
                extra={"evidence_id": evidence_id, "check": name, "error": str(e)},
            )
            return fallback(e)

    def verify(self, evidence_id: str, actor: str = SYSTEM_ACTOR) -> VerificationVerdict:
        """Full verification of one evidence record.

        Raises EvidenceNotFound for unknown ids; every other failure is
        folded into the verdict.
        """

        record = self._store.get_evidence(evidence_id)
        log.info("verification_started", extra={"evidence_id": evidence_id, "actor": actor})

        f_hash = self._pool.submit(self.check_hash, record)
        f_sig = self._pool.submit(self.check_signature, record)
        f_ts = self._pool.submit(self.check_timestamp, record)
        f_custody = self._pool.submit(self.check_custody, record.evidence_id)

        hash_v = self._guarded(
            "hash",
            evidence_id,
            f_hash,
            lambda e: HashVerification(False, record.stored_digest, "", f"Verification error: {e}"),
        )
        sig_v = self._guarded(
            "signature",
            evidence_id,
            f_sig,
            lambda e: SignatureVerification(
                SIGNATURE_UNAVAILABLE, False, "Signature could not be checked", error=str(e)
            ),
        )
        ts_v = self._guarded(
            "timestamp",
            evidence_id,
            f_ts,
            lambda e: TimestampVerification(
                TIMESTAMP_UNAVAILABLE,
                False,
                self._timestamper.source if self._timestamper is not None else EXTERNAL_SOURCE,
                "Timestamp could not be checked",
                error=str(e),
            ),
        )
        custody_v, chain = self._guarded(
            "custody",
            evidence_id,
            f_custody,
            lambda e: (
                CustodyVerification(False, 0, None, None, [], [f"Verification error: {e}"]),
                [],
            ),
        )
        if ts_v is None:
            ts_v = self.local_timestamp_from(chain)

        inputs = ScoreInputs(
            hash_valid=hash_v.is_valid,
            custody_valid=custody_v.is_valid,
            custody_issue_count=len(custody_v.issues),
            signature=sig_v.status if sig_v is not None else None,
            signature_reason=sig_v.error if sig_v is not None else None,
            timestamp=ts_v.status if ts_v is not None else None,
            timestamp_reason=ts_v.error if ts_v is not None else None,
        )
        outcome = assess(inputs, self._policy)

        verdict = VerificationVerdict(
            evidence_id=record.evidence_id,
            filename=record.filename,
            overall_valid=outcome.overall_valid,
            confidence_score=outcome.score,
            hash_verification=hash_v,
            custody_verification=custody_v,
            signature_verification=sig_v,
            timestamp_verification=ts_v,
            verified_at=self._clock(),
            summary=outcome.summary,
            recommendations=outcome.recommendations,
        )

        self._ledger.append(
            record.evidence_id,
            CustodyAction.VERIFICATION,
            actor,
            {
                "overall_valid": verdict.overall_valid,
                "confidence_score": verdict.confidence_score,
                "hash_valid": hash_v.is_valid,
                "signature_valid": sig_v.is_valid if sig_v is not None else None,
                "timestamp_valid": ts_v.is_valid if ts_v is not None else None,
                "custody_valid": custody_v.is_valid,
            },
        )
        log.info(
            "verification_finished",
            extra={
                "evidence_id": evidence_id,
                "overall_valid": verdict.overall_valid,
                "confidence_score": verdict.confidence_score,
            },
        )
        return verdict

    def quick_verification(self, evidence_id: str, actor: str = SYSTEM_ACTOR) -> QuickVerification:
        """Hash-only recheck; appends one INTEGRITY_CHECK entry."""

        record = self._store.get_evidence(evidence_id)
        hash_v = self.check_hash(record)
        self._ledger.append(
            record.evidence_id,
            CustodyAction.INTEGRITY_CHECK,
            actor,
            {
                "is_valid": hash_v.is_valid,
                "current_hash": hash_v.calculated_hash,
                "stored_hash": hash_v.stored_hash,
            },
        )
        return QuickVerification(
            is_intact=hash_v.is_valid,
            file_hash=hash_v.calculated_hash,
            hash_matches=hash_v.is_valid,
            message=(
                "File intact - hash matches"
                if hash_v.is_valid
                else "WARNING: File was modified - hash does not match"
            ),
        )

    def verify_uploaded_content_against_store(
        self, content_locator: Union[str, Path], actor: str = SYSTEM_ACTOR
    ) -> QuickVerification:
        """Look up supplied content by digest and recheck the stored original.

        Never raises: failures are reported in the message.
        """

        file_hash = ""
        try:
            file_hash = digest_of(content_locator)
            try:
                record = self._store.find_evidence_by_digest(file_hash)
            except EvidenceNotFound:
                return QuickVerification(
                    is_intact=False,
                    file_hash=file_hash,
                    hash_matches=False,
                    message="File not found in the evidence store",
                )

            hash_v = self.check_hash(record)
            self._ledger.append(
                record.evidence_id,
                CustodyAction.INTEGRITY_CHECK,
                actor,
                {
                    "is_valid": hash_v.is_valid,
                    "current_hash": hash_v.calculated_hash,
                    "stored_hash": hash_v.stored_hash,
                    "submitted_hash": file_hash,
                },
            )
        except (HashGuardError, OSError, sqlite3.Error) as e:
            log.error("file_verification_failed", extra={"error": str(e)})
            return QuickVerification(
                is_intact=False,
                file_hash=file_hash,
                hash_matches=False,
                message=f"Verification error: {e}",
            )

        return QuickVerification(
            is_intact=hash_v.is_valid,
            file_hash=file_hash,
            hash_matches=True,
            message=(
                "File found and intact in the store"
                if hash_v.is_valid
                else "WARNING: Evidence found but the original file was modified"
            ),
        )
