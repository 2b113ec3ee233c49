from __future__ import annotations

import logging
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from starlette.requests import Request

from hashguard import __version__
from hashguard.api.auth import Actor, Role, authenticate, load_auth_config, requires_auth
from hashguard.api.middleware import CustodyAuditMiddleware
from hashguard.api.models import (
    CustodyAppendIn,
    CustodyEntryOut,
    CustodyReportOut,
    CustodyValidationOut,
    EvidenceListOut,
    EvidenceOut,
    IntegrityCheckOut,
    KeyInfoOut,
    PublicKeyOut,
    QuickVerificationOut,
    TimestampOut,
    UpgradeOut,
    VerificationOut,
)
from hashguard.config import HashGuardConfig
from hashguard.core.anchoring import AnchorClient
from hashguard.core.models import CustodyEntry, EvidenceRecord, as_utc, normalize_action
from hashguard.core.services import build_services
from hashguard.core.signing import KeyMaterial
from hashguard.errors import (
    AnchorServiceUnavailable,
    ContentUnavailable,
    DuplicateEvidence,
    EvidenceNotFound,
    HashGuardError,
    KeyUnavailable,
    MalformedInput,
)
from hashguard.utils.json_safe import to_jsonable

log = logging.getLogger("hashguard.api")

ANONYMOUS_ACTOR = "anonymous"

_ERROR_STATUS = (
    (EvidenceNotFound, 404, "evidence_not_found"),
    (ContentUnavailable, 404, "content_unavailable"),
    (MalformedInput, 400, "malformed_input"),
    (DuplicateEvidence, 409, "duplicate_evidence"),
    (KeyUnavailable, 503, "key_unavailable"),
    (AnchorServiceUnavailable, 503, "anchor_service_unavailable"),
)


def _error_status(exc: HashGuardError):
    for cls, status, code in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status, code
    return 500, "internal_error"


def _evidence_out(record: EvidenceRecord) -> EvidenceOut:
    return EvidenceOut(
        evidence_id=record.evidence_id,
        filename=record.filename,
        stored_digest=record.stored_digest,
        collected_by=record.collected_by,
        collected_at=record.collected_at.isoformat() if record.collected_at else None,
        description=record.description,
        has_signature=bool(record.signature_reference),
        has_timestamp=bool(record.timestamp_reference),
        metadata=to_jsonable(record.metadata or {}),
        created_at=record.created_at.isoformat(),
    )


def _entry_out(entry: CustodyEntry) -> CustodyEntryOut:
    return CustodyEntryOut(**to_jsonable(entry))


def create_app(
    config: Optional[HashGuardConfig] = None,
    *,
    key_material: Optional[KeyMaterial] = None,
    anchor_client: Optional[AnchorClient] = None,
) -> FastAPI:
    """Create the FastAPI app around one set of engine services.

    Security notes:
    - Without configured API keys (and HASHGUARD_REQUIRE_AUTH unset) every
      caller is the anonymous ADMIN: development mode only.
    - Server-side paths of stored content are never returned.

    """

    cfg = config or HashGuardConfig.from_env()
    mapping = load_auth_config()
    must_auth = requires_auth(mapping)

    log.setLevel(cfg.log_level)

    services = build_services(cfg, key_material=key_material, anchor_client=anchor_client)

    app = FastAPI(title="HashGuard API", version=__version__)
    app.state.cfg = cfg
    app.state.must_auth = must_auth
    app.state.services = services

    app.add_middleware(CustodyAuditMiddleware)

    @app.exception_handler(HashGuardError)
    async def hashguard_error_handler(request: Request, exc: HashGuardError) -> JSONResponse:
        status, code = _error_status(exc)
        if status >= 500:
            log.warning(
                "request_failed",
                extra={"request_id": getattr(request.state, "request_id", None), "error": code},
            )
        return JSONResponse(status_code=status, content={"error": code, "detail": str(exc)})

    def get_actor(
        request: Request,
        x_hashguard_api_key: Optional[str] = Header(default=None),
    ) -> Actor:
        """Authenticate request; fail closed (401) when auth is required."""

        if not must_auth:
            actor = Actor(actor_id=ANONYMOUS_ACTOR, role=Role.ADMIN)
        else:
            actor = authenticate(x_hashguard_api_key, mapping)
            if actor is None:
                raise HTTPException(status_code=401, detail="unauthorized")

        request.state.actor_id = actor.actor_id
        return actor

    def _require_role(actor: Actor, role: Role) -> None:
        if not actor.has_role(role):
            raise HTTPException(status_code=403, detail="forbidden")

    def _save_upload_to_temp(upload: UploadFile) -> Path:
        """Persist an UploadFile to a temporary file on disk.

        Security notes:
        - Client filename never becomes part of the path.
        - Reads in chunks and enforces max_upload_bytes.

        """

        tmpdir = Path(tempfile.mkdtemp(prefix="hashguard_api_"))
        out = tmpdir / "upload.bin"
        total = 0
        try:
            with out.open("wb") as f:
                while True:
                    chunk = upload.file.read(1024 * 1024)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > cfg.max_upload_bytes:
                        raise HTTPException(status_code=413, detail="upload_too_large")
                    f.write(chunk)
        except Exception:
            shutil.rmtree(tmpdir, ignore_errors=True)
            raise
        return out

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "version": __version__,
            "auth_required": must_auth,
            "signing_key_loaded": services.signer.key_material is not None,
            "anchoring": services.timestamper.source if services.timestamper.configured else None,
        }

    # --- evidence -----------------------------------------------------

    @app.post("/evidence", response_model=EvidenceOut, status_code=201)
    def create_evidence_endpoint(
        actor: Actor = Depends(get_actor),
        file: UploadFile = File(...),
        collected_by: Optional[str] = Form(default=None),
        collected_at: Optional[str] = Form(default=None),
        description: Optional[str] = Form(default=None),
    ) -> EvidenceOut:
        """Register uploaded content as evidence (digest, duplicate check, UPLOAD entry)."""

        _require_role(actor, Role.USER)
        when: Optional[datetime] = None
        if collected_at:
            try:
                when = as_utc(datetime.fromisoformat(collected_at))
            except ValueError:
                raise HTTPException(status_code=400, detail="collected_at must be ISO 8601")

        path = _save_upload_to_temp(file)
        try:
            record = services.evidence.register(
                path,
                collected_by=collected_by or actor.actor_id,
                filename=file.filename,
                collected_at=when,
                description=description,
            )
        finally:
            shutil.rmtree(path.parent, ignore_errors=True)
        return _evidence_out(record)

    @app.get("/evidence", response_model=EvidenceListOut)
    def list_evidence_endpoint(
        actor: Actor = Depends(get_actor), page: int = 1, limit: int = 10
    ) -> EvidenceListOut:
        _require_role(actor, Role.USER)
        records, total = services.evidence.list_page(page=page, limit=limit)
        return EvidenceListOut(
            items=[_evidence_out(r) for r in records],
            total=total,
            page=max(1, int(page)),
            limit=max(1, min(500, int(limit))),
        )

    @app.get("/evidence/by-hash/{digest}", response_model=EvidenceOut)
    def evidence_by_hash_endpoint(digest: str, actor: Actor = Depends(get_actor)) -> EvidenceOut:
        _require_role(actor, Role.USER)
        return _evidence_out(services.evidence.find_by_digest(digest))

    @app.get("/evidence/{evidence_id}", response_model=EvidenceOut)
    def get_evidence_endpoint(evidence_id: str, actor: Actor = Depends(get_actor)) -> EvidenceOut:
        _require_role(actor, Role.USER)
        return _evidence_out(services.evidence.get(evidence_id))

    @app.post("/evidence/{evidence_id}/integrity-check", response_model=IntegrityCheckOut)
    def integrity_check_endpoint(
        evidence_id: str, actor: Actor = Depends(get_actor)
    ) -> IntegrityCheckOut:
        _require_role(actor, Role.USER)
        res = services.evidence.check_integrity(evidence_id, actor.actor_id)
        return IntegrityCheckOut(**to_jsonable(res))

    @app.post("/evidence/{evidence_id}/sign", response_model=EvidenceOut)
    def sign_evidence_endpoint(evidence_id: str, actor: Actor = Depends(get_actor)) -> EvidenceOut:
        """Sign the stored digest; 503 when no private key is loaded."""

        _require_role(actor, Role.SUPER)
        return _evidence_out(services.evidence.sign_evidence(evidence_id, actor.actor_id))

    @app.post("/evidence/{evidence_id}/timestamp", response_model=TimestampOut)
    def timestamp_evidence_endpoint(
        evidence_id: str, actor: Actor = Depends(get_actor), fallback: bool = True
    ) -> TimestampOut:
        """Anchor the digest externally.

        fallback=true records a LOCAL_SYSTEM timestamp when anchoring is
        unavailable; fallback=false turns that into a 503.
        """

        _require_role(actor, Role.SUPER)
        res = services.evidence.timestamp_evidence(
            evidence_id, actor.actor_id, allow_local_fallback=bool(fallback)
        )
        return TimestampOut(
            evidence_id=evidence_id,
            source=res.source,
            timestamp=res.timestamp.isoformat(),
            anchored=res.reference is not None,
            fallback_reason=res.fallback_reason,
        )

    # --- verification -------------------------------------------------

    @app.post("/verification/{evidence_id}/complete", response_model=VerificationOut)
    def complete_verification_endpoint(
        evidence_id: str, actor: Actor = Depends(get_actor)
    ) -> VerificationOut:
        _require_role(actor, Role.SUPER)
        verdict = services.engine.verify(evidence_id, actor.actor_id)
        return VerificationOut(**to_jsonable(verdict))

    @app.get("/verification/{evidence_id}/quick", response_model=QuickVerificationOut)
    def quick_verification_endpoint(
        evidence_id: str, actor: Actor = Depends(get_actor)
    ) -> QuickVerificationOut:
        _require_role(actor, Role.USER)
        res = services.engine.quick_verification(evidence_id, actor.actor_id)
        return QuickVerificationOut(**to_jsonable(res))

    @app.post("/verification/file", response_model=QuickVerificationOut)
    def verify_file_endpoint(
        actor: Actor = Depends(get_actor), file: UploadFile = File(...)
    ) -> QuickVerificationOut:
        """Check whether supplied bytes match stored evidence, and whether that is intact."""

        _require_role(actor, Role.SUPER)
        path = _save_upload_to_temp(file)
        try:
            res = services.engine.verify_uploaded_content_against_store(path, actor.actor_id)
        finally:
            shutil.rmtree(path.parent, ignore_errors=True)
        return QuickVerificationOut(**to_jsonable(res))

    # --- custody ------------------------------------------------------

    @app.get("/custody/evidence/{evidence_id}", response_model=List[CustodyEntryOut])
    def custody_chain_endpoint(
        evidence_id: str, actor: Actor = Depends(get_actor)
    ) -> List[CustodyEntryOut]:
        _require_role(actor, Role.USER)
        return [_entry_out(e) for e in services.ledger.chain_for(evidence_id)]

    @app.post("/custody/evidence/{evidence_id}", response_model=CustodyEntryOut, status_code=201)
    def custody_append_endpoint(
        evidence_id: str, body: CustodyAppendIn, actor: Actor = Depends(get_actor)
    ) -> CustodyEntryOut:
        """Append a manual custody entry; the actor is the authenticated caller."""

        _require_role(actor, Role.ADMIN)
        try:
            action = normalize_action(body.action)
        except ValueError as e:
            raise MalformedInput(str(e)) from e
        entry = services.ledger.append(evidence_id, action, actor.actor_id, body.details)
        return _entry_out(entry)

    @app.get("/custody/evidence/{evidence_id}/report", response_model=CustodyReportOut)
    def custody_report_endpoint(
        evidence_id: str, actor: Actor = Depends(get_actor)
    ) -> CustodyReportOut:
        _require_role(actor, Role.USER)
        return CustodyReportOut(**to_jsonable(services.ledger.report(evidence_id)))

    @app.get("/custody/evidence/{evidence_id}/validate", response_model=CustodyValidationOut)
    def custody_validate_endpoint(
        evidence_id: str, actor: Actor = Depends(get_actor)
    ) -> CustodyValidationOut:
        _require_role(actor, Role.USER)
        return CustodyValidationOut(**to_jsonable(services.ledger.validate(evidence_id)))

    @app.get("/custody/evidence/{evidence_id}/last", response_model=Optional[CustodyEntryOut])
    def custody_last_endpoint(
        evidence_id: str, actor: Actor = Depends(get_actor)
    ) -> Optional[CustodyEntryOut]:
        _require_role(actor, Role.USER)
        entry = services.ledger.last_entry_for(evidence_id)
        return _entry_out(entry) if entry is not None else None

    @app.get("/custody/actor/{actor_id}", response_model=List[CustodyEntryOut])
    def custody_by_actor_endpoint(
        actor_id: str, actor: Actor = Depends(get_actor)
    ) -> List[CustodyEntryOut]:
        _require_role(actor, Role.USER)
        return [_entry_out(e) for e in services.ledger.entries_by_actor(actor_id)]

    @app.get("/custody/action/{action}", response_model=List[CustodyEntryOut])
    def custody_by_action_endpoint(
        action: str, actor: Actor = Depends(get_actor)
    ) -> List[CustodyEntryOut]:
        _require_role(actor, Role.USER)
        return [_entry_out(e) for e in services.ledger.entries_by_action(action)]

    # --- keys and anchors ---------------------------------------------

    @app.get("/signature/public-key", response_model=PublicKeyOut)
    def public_key_endpoint(actor: Actor = Depends(get_actor)) -> PublicKeyOut:
        _require_role(actor, Role.USER)
        return PublicKeyOut(
            public_key=services.signer.public_key_pem(),
            key_info=KeyInfoOut(**to_jsonable(services.signer.key_info())),
        )

    @app.get("/signature/key-info", response_model=KeyInfoOut)
    def key_info_endpoint(actor: Actor = Depends(get_actor)) -> KeyInfoOut:
        _require_role(actor, Role.USER)
        return KeyInfoOut(**to_jsonable(services.signer.key_info()))

    @app.post("/timestamp/upgrade/{evidence_id}", response_model=UpgradeOut)
    def upgrade_timestamp_endpoint(
        evidence_id: str, actor: Actor = Depends(get_actor)
    ) -> UpgradeOut:
        _require_role(actor, Role.SUPER)
        upgraded = services.evidence.upgrade_timestamp(evidence_id, actor.actor_id)
        record = services.evidence.get(evidence_id)
        info = services.timestamper.anchor_info(record.timestamp_reference)
        return UpgradeOut(evidence_id=evidence_id, upgraded=upgraded, info=to_jsonable(info))

    return app


def app_from_env() -> FastAPI:
    """Factory used by Uvicorn entrypoints (hashguard.api.server:app_from_env, factory=True).

    Reads every HASHGUARD_* setting via HashGuardConfig.from_env().
    """

    return create_app(HashGuardConfig.from_env())
