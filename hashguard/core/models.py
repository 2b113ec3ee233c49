from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

SYSTEM_ACTOR = "SYSTEM"


class CustodyAction(str, Enum):
    """Known custody action tokens.

    The vocabulary is open: unknown tokens are stored upper-cased, not rejected.
    """

    UPLOAD = "UPLOAD"
    ACCESS = "ACCESS"
    VERIFICATION = "VERIFICATION"
    SIGNATURE = "SIGNATURE"
    TIMESTAMP = "TIMESTAMP"
    TRANSFER = "TRANSFER"
    MODIFICATION = "MODIFICATION"
    DELETION = "DELETION"
    INTEGRITY_CHECK = "INTEGRITY_CHECK"


def normalize_action(action: Any) -> str:
    """Canonical storage/comparison form of an action token."""

    if isinstance(action, CustodyAction):
        return action.value
    token = str(action or "").strip().upper()
    if not token:
        raise ValueError("custody action must be a non-empty token")
    return token


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Return a tz-aware UTC datetime (naive values are taken as UTC)."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class EvidenceRecord:
    """Content-addressed description of a preserved artifact.

    Security invariants
    - stored_digest is set once at creation and never changes
    - any content change must produce a new record
    - metadata is an opaque enrichment document; the engine never reads it

    """

    evidence_id: str
    content_locator: str
    stored_digest: str
    filename: str = ""
    signature_reference: Optional[str] = None
    signing_public_key: Optional[str] = None
    timestamp_reference: Optional[str] = None
    collected_by: Optional[str] = None
    collected_at: Optional[datetime] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def summary(self) -> Dict[str, Any]:
        """Small view used in custody reports and lookups."""

        return {
            "evidence_id": self.evidence_id,
            "filename": self.filename,
            "stored_digest": self.stored_digest,
            "collected_by": self.collected_by,
            "created_at": self.created_at.isoformat(),
            "has_signature": bool(self.signature_reference),
            "has_timestamp": bool(self.timestamp_reference),
        }


@dataclass(frozen=True, slots=True)
class CustodyEntry:
    """One append-only chain-of-custody record.

    Ordering: (created_at, seq) ascending is the canonical history.
    The actor is free text and need not resolve to an account.
    """

    entry_id: str
    seq: int
    evidence_id: str
    action: str
    actor: str
    details: Dict[str, Any]
    created_at: datetime
