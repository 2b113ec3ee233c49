from __future__ import annotations

import base64
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from hashguard.config import HashGuardConfig
from hashguard.core.anchoring import EXTERNAL_SOURCE, STATUS_CONFIRMED, AnchorClient, AnchorStatus
from hashguard.core.digest import digest_of_bytes
from hashguard.core.evidence import EvidenceStore
from hashguard.core.scoring import ADD_SIGNATURE, ADD_TIMESTAMP, DO_NOT_USE, HASH_MISMATCH, TIMESTAMP_UNAVAILABLE
from hashguard.core.services import Services, build_services
from hashguard.core.signing import KeyMaterial
from hashguard.core.timestamping import LOCAL_SOURCE, AnchorVerification, TimestampVerifier
from hashguard.core.verification import VerificationEngine
from hashguard.errors import EvidenceNotFound

SEED = b"\x01" * 32
ANCHOR_TIME = datetime(2024, 5, 1, tzinfo=timezone.utc)


class ConfirmingAnchor(AnchorClient):
    source = "TestAnchor"

    def stamp(self, digest: bytes, *, timeout: float) -> bytes:
        return b"anchored:" + digest

    def verify(self, proof: bytes, digest: bytes, *, timeout: float) -> AnchorStatus:
        return AnchorStatus(True, STATUS_CONFIRMED, anchor_time=ANCHOR_TIME, anchor_height=1)

    def upgrade(self, proof: bytes, *, timeout: float) -> Optional[bytes]:
        return None

    def info(self, proof: bytes) -> Dict[str, Any]:
        return {}


def _services(tmp_path: Path, anchor_client: Optional[AnchorClient] = None) -> Services:
    cfg = HashGuardConfig(
        db_path=tmp_path / "hashguard.db",
        storage_dir=tmp_path / "store",
        key_dir=tmp_path / "keys",
        anchor_dir=tmp_path / "timestamps",
    )
    return build_services(cfg, key_material=KeyMaterial.from_seed(SEED), anchor_client=anchor_client)


def _ingest(svc: Services, tmp_path: Path, data: bytes = b"crime scene photo", name: str = "photo.jpg"):
    src = tmp_path / name
    src.write_bytes(data)
    return svc.evidence.register(src, collected_by="officer.jones", filename=name)


def test_fresh_evidence_scores_seventy_and_logs_verification(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    rec = _ingest(svc, tmp_path)

    verdict = svc.engine.verify(rec.evidence_id, "analyst")
    assert verdict.overall_valid is True
    assert verdict.confidence_score == 70
    assert verdict.hash_verification.is_valid is True
    assert verdict.hash_verification.message == "Hash intact"
    assert verdict.signature_verification is None
    assert verdict.timestamp_verification is None
    assert verdict.recommendations == [ADD_SIGNATURE, ADD_TIMESTAMP]
    assert verdict.custody_verification.total_entries == 1

    chain = svc.ledger.chain_for(rec.evidence_id)
    assert [e.action for e in chain] == ["UPLOAD", "VERIFICATION"]
    assert chain[1].actor == "analyst"
    assert chain[1].details["confidence_score"] == 70
    assert chain[1].details["overall_valid"] is True
    svc.close()


def test_signed_evidence_scores_ninety(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    rec = _ingest(svc, tmp_path)
    svc.evidence.sign_evidence(rec.evidence_id, "lab")

    verdict = svc.engine.verify(rec.evidence_id)
    assert verdict.confidence_score == 90
    assert verdict.signature_verification.status == "valid"
    assert verdict.signature_verification.key_info.algorithm == "Ed25519"
    assert verdict.summary.endswith("Excellent integrity and authenticity.")
    svc.close()


def test_signed_and_anchored_evidence_scores_hundred(tmp_path: Path) -> None:
    svc = _services(tmp_path, anchor_client=ConfirmingAnchor())
    rec = _ingest(svc, tmp_path)
    svc.evidence.sign_evidence(rec.evidence_id, "lab")
    outcome = svc.evidence.timestamp_evidence(rec.evidence_id, "lab")
    assert outcome.is_local is False

    verdict = svc.engine.verify(rec.evidence_id)
    assert verdict.confidence_score == 100
    assert verdict.overall_valid is True
    assert verdict.timestamp_verification.status == "confirmed"
    assert verdict.timestamp_verification.anchor_time == ANCHOR_TIME
    assert verdict.recommendations == []
    svc.close()


def test_local_timestamp_is_reported_but_earns_nothing(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    rec = _ingest(svc, tmp_path)
    outcome = svc.evidence.timestamp_evidence(rec.evidence_id, "lab")
    assert outcome.is_local is True
    assert svc.evidence.get(rec.evidence_id).timestamp_reference is None

    verdict = svc.engine.verify(rec.evidence_id)
    ts = verdict.timestamp_verification
    assert ts.status == "local"
    assert ts.source == LOCAL_SOURCE
    assert ts.is_valid is False
    assert verdict.confidence_score == 70
    assert any(r.startswith("Timestamp could not be confirmed") for r in verdict.recommendations)
    assert ADD_TIMESTAMP not in verdict.recommendations
    svc.close()


def test_tampered_content_is_invalid(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    rec = _ingest(svc, tmp_path)
    Path(rec.content_locator).write_bytes(b"edited photo")

    verdict = svc.engine.verify(rec.evidence_id)
    assert verdict.overall_valid is False
    assert verdict.confidence_score == 30
    assert verdict.hash_verification.message == "Hash does not match - file was modified"
    assert verdict.recommendations[:2] == [DO_NOT_USE, HASH_MISMATCH]
    svc.close()


def test_missing_content_is_a_negative_hash_result(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    rec = _ingest(svc, tmp_path)
    Path(rec.content_locator).unlink()

    verdict = svc.engine.verify(rec.evidence_id)
    assert verdict.overall_valid is False
    assert verdict.hash_verification.calculated_hash == ""
    assert verdict.hash_verification.message.startswith("File not found in storage")
    svc.close()


def test_forged_signature_scores_sixty(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    rec = _ingest(svc, tmp_path)
    signed = svc.evidence.sign_evidence(rec.evidence_id, "lab")

    forged = KeyMaterial.from_seed(b"\x09" * 32).private_key.sign(rec.stored_digest.encode("ascii"))
    Path(signed.signature_reference).write_text(base64.b64encode(forged).decode("ascii"), encoding="ascii")

    verdict = svc.engine.verify(rec.evidence_id)
    assert verdict.signature_verification.status == "invalid"
    assert verdict.confidence_score == 60
    assert verdict.overall_valid is False
    svc.close()


def test_missing_signature_artifact_is_invalid(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    rec = _ingest(svc, tmp_path)
    signed = svc.evidence.sign_evidence(rec.evidence_id, "lab")
    Path(signed.signature_reference).unlink()

    verdict = svc.engine.verify(rec.evidence_id)
    assert verdict.signature_verification.status == "invalid"
    assert verdict.overall_valid is False
    svc.close()


def test_unknown_evidence_raises_and_appends_nothing(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    with pytest.raises(EvidenceNotFound):
        svc.engine.verify("does-not-exist")
    with pytest.raises(EvidenceNotFound):
        svc.engine.quick_verification("does-not-exist")
    assert svc.ledger.entries_by_action("VERIFICATION") == []
    svc.close()


def test_quick_verification_appends_integrity_check(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    rec = _ingest(svc, tmp_path)

    ok = svc.engine.quick_verification(rec.evidence_id, "clerk")
    assert ok.is_intact is True
    assert ok.hash_matches is True
    assert ok.file_hash == rec.stored_digest
    assert ok.message == "File intact - hash matches"

    Path(rec.content_locator).write_bytes(b"changed")
    bad = svc.engine.quick_verification(rec.evidence_id, "clerk")
    assert bad.is_intact is False
    assert bad.message.startswith("WARNING")

    actions = [e.action for e in svc.ledger.chain_for(rec.evidence_id)]
    assert actions == ["UPLOAD", "INTEGRITY_CHECK", "INTEGRITY_CHECK"]
    svc.close()


def test_verify_supplied_file_against_store(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    rec = _ingest(svc, tmp_path, data=b"original bytes", name="doc.pdf")

    copy = tmp_path / "copy.pdf"
    copy.write_bytes(b"original bytes")
    found = svc.engine.verify_uploaded_content_against_store(copy, "clerk")
    assert found.is_intact is True
    assert found.file_hash == digest_of_bytes(b"original bytes")
    assert found.message == "File found and intact in the store"

    stranger = tmp_path / "stranger.pdf"
    stranger.write_bytes(b"something else")
    missing = svc.engine.verify_uploaded_content_against_store(stranger, "clerk")
    assert missing.is_intact is False
    assert missing.message == "File not found in the evidence store"

    gone = svc.engine.verify_uploaded_content_against_store(tmp_path / "nope.pdf", "clerk")
    assert gone.is_intact is False
    assert gone.message.startswith("Verification error")

    Path(rec.content_locator).write_bytes(b"tampered")
    modified = svc.engine.verify_uploaded_content_against_store(copy, "clerk")
    assert modified.is_intact is False
    assert modified.hash_matches is True
    assert modified.message.startswith("WARNING")
    svc.close()


def test_upload_then_verification_with_bare_components(tmp_path: Path) -> None:
    from hashguard.core.custody import CustodyLedger
    from hashguard.core.models import EvidenceRecord
    from hashguard.core.signing import SignatureVerifier
    from hashguard.core.storage.sqlite_store import SQLiteEvidenceStore

    content = tmp_path / "e1.bin"
    content.write_bytes(b"E1 content")
    store = SQLiteEvidenceStore(tmp_path / "e1.db")
    store.init_schema()
    store.insert_evidence(
        EvidenceRecord(evidence_id="E1", content_locator=str(content), stored_digest=digest_of_bytes(b"E1 content"))
    )
    ledger = CustodyLedger(store)
    ledger.append("E1", "UPLOAD", "alice")

    engine = VerificationEngine(store, ledger, SignatureVerifier())
    try:
        verdict = engine.verify("E1")
    finally:
        engine.close()

    assert verdict.overall_valid is True
    assert verdict.confidence_score == 70
    assert [e.action for e in ledger.chain_for("E1")] == ["UPLOAD", "VERIFICATION"]


class BrokenTimestampVerifier(TimestampVerifier):
    def verify_anchor(self, digest: str, anchor_reference: str) -> AnchorVerification:
        raise OSError("proof store offline")


def _anchored(svc: Services, tmp_path: Path):
    rec = _ingest(svc, tmp_path)
    assert svc.evidence.timestamp_evidence(rec.evidence_id, "lab").is_local is False
    return svc.evidence.get(rec.evidence_id)


@pytest.mark.parametrize("with_timestamper", [False, True], ids=["no-timestamper", "unconfigured-anchoring"])
def test_external_anchor_without_anchoring_is_not_labelled_local(tmp_path: Path, with_timestamper: bool) -> None:
    svc = _services(tmp_path, anchor_client=ConfirmingAnchor())
    rec = _anchored(svc, tmp_path)

    timestamper = TimestampVerifier(None) if with_timestamper else None
    engine = VerificationEngine(svc.store, svc.ledger, svc.signer, timestamper)
    try:
        ts = engine.verify(rec.evidence_id).timestamp_verification
    finally:
        engine.close()
        if timestamper is not None:
            timestamper.close()

    assert ts.status == TIMESTAMP_UNAVAILABLE
    assert ts.source == EXTERNAL_SOURCE
    assert ts.source != LOCAL_SOURCE
    assert ts.is_valid is False
    svc.close()


def test_failing_anchor_check_keeps_client_source(tmp_path: Path) -> None:
    svc = _services(tmp_path, anchor_client=ConfirmingAnchor())
    rec = _anchored(svc, tmp_path)

    timestamper = BrokenTimestampVerifier(ConfirmingAnchor())
    engine = VerificationEngine(svc.store, svc.ledger, svc.signer, timestamper)
    try:
        verdict = engine.verify(rec.evidence_id)
    finally:
        engine.close()
        timestamper.close()

    ts = verdict.timestamp_verification
    assert ts.status == TIMESTAMP_UNAVAILABLE
    assert ts.source == "TestAnchor"
    assert ts.error == "proof store offline"
    assert verdict.confidence_score == 70
    svc.close()


class LookupOnlyStore:
    def __init__(self, inner) -> None:
        self._inner = inner

    def get_evidence(self, evidence_id: str):
        return self._inner.get_evidence(evidence_id)

    def find_evidence_by_digest(self, digest: str):
        return self._inner.find_evidence_by_digest(digest)

    def custody_entries(self, evidence_id: str):
        return self._inner.custody_entries(evidence_id)


def test_engine_only_needs_the_lookup_surface(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    rec = _ingest(svc, tmp_path, data=b"body cam clip", name="clip.mp4")
    store = LookupOnlyStore(svc.store)
    assert isinstance(store, EvidenceStore)

    engine = VerificationEngine(store, svc.ledger, svc.signer)
    try:
        verdict = engine.verify(rec.evidence_id, "analyst")
        found = engine.verify_uploaded_content_against_store(rec.content_locator, "clerk")
    finally:
        engine.close()

    assert verdict.confidence_score == 70
    assert verdict.custody_verification.total_entries == 1
    assert found.is_intact is True
    svc.close()
