from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ApiError(BaseModel):
    """Standard API error payload."""

    error: str
    detail: Optional[str] = None


class EvidenceOut(BaseModel):
    """Evidence record as exposed over HTTP (no server-side paths)."""

    evidence_id: str
    filename: str
    stored_digest: str
    collected_by: Optional[str] = None
    collected_at: Optional[str] = None
    description: Optional[str] = None
    has_signature: bool = False
    has_timestamp: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: str


class EvidenceListOut(BaseModel):
    items: List[EvidenceOut] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10


class CustodyEntryOut(BaseModel):
    entry_id: str
    seq: int
    evidence_id: str
    action: str
    actor: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: str


class CustodyAppendIn(BaseModel):
    """Manual custody append; the actor is the authenticated caller."""

    action: str = Field(min_length=1, max_length=64)
    details: Dict[str, Any] = Field(default_factory=dict)


class CustodyValidationOut(BaseModel):
    is_valid: bool
    issues: List[str] = Field(default_factory=list)
    total_entries: int
    integrity_score: int
    recommendations: List[str] = Field(default_factory=list)


class CustodySummaryOut(BaseModel):
    total_actions: int
    first_action: Optional[str] = None
    last_action: Optional[str] = None
    actors: List[str] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)


class CustodyReportOut(BaseModel):
    evidence: Dict[str, Any]
    chain: List[CustodyEntryOut] = Field(default_factory=list)
    summary: CustodySummaryOut


class KeyInfoOut(BaseModel):
    key_id: str
    fingerprint: str
    user_ids: List[str] = Field(default_factory=list)
    algorithm: str
    bit_size: int
    creation_time: Optional[str] = None


class PublicKeyOut(BaseModel):
    public_key: str
    key_info: KeyInfoOut


class HashVerificationOut(BaseModel):
    is_valid: bool
    stored_hash: str
    calculated_hash: str
    message: str


class SignatureVerificationOut(BaseModel):
    status: str
    is_valid: bool
    message: str
    key_info: Optional[KeyInfoOut] = None
    error: Optional[str] = None


class TimestampVerificationOut(BaseModel):
    status: str
    is_valid: bool
    source: str
    message: str
    anchor_time: Optional[str] = None
    anchor_height: Optional[int] = None
    error: Optional[str] = None


class CustodyVerificationOut(BaseModel):
    is_valid: bool
    total_entries: int
    first_entry: Optional[str] = None
    last_entry: Optional[str] = None
    actors: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    integrity_score: int = 0


class VerificationOut(BaseModel):
    evidence_id: str
    filename: str
    overall_valid: bool
    confidence_score: int
    hash_verification: HashVerificationOut
    signature_verification: Optional[SignatureVerificationOut] = None
    timestamp_verification: Optional[TimestampVerificationOut] = None
    custody_verification: CustodyVerificationOut
    verified_at: str
    summary: str
    recommendations: List[str] = Field(default_factory=list)


class QuickVerificationOut(BaseModel):
    is_intact: bool
    file_hash: str
    hash_matches: bool
    message: str


class IntegrityCheckOut(BaseModel):
    is_valid: bool
    current_hash: str
    stored_hash: str


class TimestampOut(BaseModel):
    """Outcome of a timestamp request; source LOCAL_SYSTEM means no external proof."""

    evidence_id: str
    source: str
    timestamp: str
    anchored: bool
    fallback_reason: Optional[str] = None


class UpgradeOut(BaseModel):
    evidence_id: str
    upgraded: bool
    info: Dict[str, Any] = Field(default_factory=dict)
