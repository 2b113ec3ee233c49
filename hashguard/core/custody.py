from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

from hashguard.core.models import (
    CustodyAction,
    CustodyEntry,
    EvidenceRecord,
    normalize_action,
    utc_now,
)
from hashguard.core.storage.sqlite_store import SQLiteEvidenceStore

log = logging.getLogger("hashguard.custody")

DEFAULT_GAP_HOURS = 24

MISSING_UPLOAD_ISSUE = "Missing initial upload record for this evidence"
INTEGRITY_CHECK_RECOMMENDATION = "Perform integrity checks on this evidence periodically"
MULTIPLE_ACTORS_RECOMMENDATION = (
    "Involve multiple actors in the chain of custody for better auditability"
)

ISSUE_PENALTY = 20
INTEGRITY_CHECK_BONUS = 10
MULTIPLE_ACTORS_BONUS = 5


@dataclass(frozen=True, slots=True)
class CustodyValidation:
    """Structural audit of one evidence's custody chain.

    integrity_score is a heuristic audit signal, not a cryptographic proof.
    Only issues affect is_valid; recommendations never do.
    """

    is_valid: bool
    issues: List[str]
    total_entries: int
    integrity_score: int
    recommendations: List[str]


@dataclass(frozen=True, slots=True)
class CustodySummary:
    total_actions: int
    first_action: Optional[datetime]
    last_action: Optional[datetime]
    actors: List[str]
    actions: List[str]


@dataclass(frozen=True, slots=True)
class CustodyReport:
    """Read-only composition for human audit review."""

    evidence: Dict[str, Any]
    chain: List[CustodyEntry]
    summary: CustodySummary


def distinct_in_order(values) -> List[str]:
    """Distinct values in first-seen order."""

    seen: Dict[str, None] = {}
    for v in values:
        seen.setdefault(v, None)
    return list(seen)


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def validate_chain(
    chain: List[CustodyEntry], *, gap_hours: float = DEFAULT_GAP_HOURS
) -> CustodyValidation:
    """Validate an ascending custody chain.

    Steps (order-sensitive, deterministic):
    1. no UPLOAD entry -> issue
    2. consecutive entries more than gap_hours apart -> one issue per gap
    3. no INTEGRITY_CHECK entry -> recommendation
    4. exactly one distinct actor -> recommendation
    5. score = 100 - 20*issues (+10 integrity check) (+5 several actors), clamped
    6. valid iff no issues

    Time:  O(n)
    Space: O(n)
    """

    issues: List[str] = []
    recommendations: List[str] = []

    actions = [e.action for e in chain]
    if CustodyAction.UPLOAD.value not in actions:
        issues.append(MISSING_UPLOAD_ISSUE)

    for prev, cur in zip(chain, chain[1:]):
        hours = (cur.created_at - prev.created_at).total_seconds() / 3600.0
        if hours > gap_hours:
            issues.append(
                f"Time gap of {_round_half_up(hours)} hours between actions at "
                f"{prev.created_at.isoformat()} and {cur.created_at.isoformat()}"
            )

    has_integrity_check = CustodyAction.INTEGRITY_CHECK.value in actions
    if not has_integrity_check:
        recommendations.append(INTEGRITY_CHECK_RECOMMENDATION)

    actors = set(e.actor for e in chain)
    if len(actors) == 1:
        recommendations.append(MULTIPLE_ACTORS_RECOMMENDATION)

    score = 100 - ISSUE_PENALTY * len(issues)
    if has_integrity_check:
        score += INTEGRITY_CHECK_BONUS
    if len(actors) > 1:
        score += MULTIPLE_ACTORS_BONUS
    score = max(0, min(100, score))

    return CustodyValidation(
        is_valid=not issues,
        issues=issues,
        total_entries=len(chain),
        integrity_score=score,
        recommendations=recommendations,
    )


class CustodyLedger:
    """Append-only chain-of-custody log over the evidence store.

    Responsibilities
    - append entries (action upper-cased, actor stored verbatim)
    - chronological retrieval and global lookups by actor/action
    - structural validation and audit reports

    Security invariants
    - there is no update or delete operation
    - appends are serialized so created_at never decreases in commit order
    - unknown evidence ids fail with EvidenceNotFound and leave state unchanged

    """

    def __init__(
        self,
        store: SQLiteEvidenceStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        gap_hours: float = DEFAULT_GAP_HOURS,
    ) -> None:
        self._store = store
        self._clock = clock
        self._gap_hours = gap_hours
        self._append_lock = threading.Lock()

    @property
    def gap_hours(self) -> float:
        return self._gap_hours

    def append(
        self,
        evidence_id: str,
        action: Any,
        actor: str,
        details: Optional[Mapping[str, Any]] = None,
    ) -> CustodyEntry:
        token = normalize_action(action)
        with self._append_lock:
            entry = self._store.insert_custody_entry(
                entry_id=uuid4().hex,
                evidence_id=evidence_id,
                action=token,
                actor=str(actor),
                details=dict(details or {}),
                created_at=self._clock(),
            )
        log.info(
            "custody_append",
            extra={
                "evidence_id": entry.evidence_id,
                "action": entry.action,
                "actor": entry.actor,
                "seq": entry.seq,
            },
        )
        return entry

    def chain_for(self, evidence_id: str) -> List[CustodyEntry]:
        self._store.get_evidence(evidence_id)
        return self._store.custody_entries(evidence_id)

    def last_entry_for(self, evidence_id: str) -> Optional[CustodyEntry]:
        self._store.get_evidence(evidence_id)
        return self._store.last_custody_entry(evidence_id)

    def entries_by_actor(self, actor: str) -> List[CustodyEntry]:
        return self._store.custody_entries_where(actor=str(actor))

    def entries_by_action(self, action: Any) -> List[CustodyEntry]:
        return self._store.custody_entries_where(action=normalize_action(action))

    def validate(self, evidence_id: str) -> CustodyValidation:
        """Audit the chain structure of one evidence record.

        The integrity score is a heuristic signal for reviewers. It proves
        nothing cryptographically; hash and signature checks do that.
        """

        return validate_chain(self.chain_for(evidence_id), gap_hours=self._gap_hours)

    def report(self, evidence_id: str) -> CustodyReport:
        record: EvidenceRecord = self._store.get_evidence(evidence_id)
        chain = self._store.custody_entries(evidence_id)
        summary = CustodySummary(
            total_actions=len(chain),
            first_action=chain[0].created_at if chain else None,
            last_action=chain[-1].created_at if chain else None,
            actors=distinct_in_order(e.actor for e in chain),
            actions=distinct_in_order(e.action for e in chain),
        )
        return CustodyReport(evidence=record.summary(), chain=chain, summary=summary)
