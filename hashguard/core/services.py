from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from hashguard.config import HashGuardConfig
from hashguard.core.anchoring import AnchorClient, EsploraBlockSource, OpenTimestampsClient
from hashguard.core.custody import CustodyLedger
from hashguard.core.evidence import EvidenceService
from hashguard.core.signing import KeyMaterial, SignatureVerifier, provision_key_material
from hashguard.core.storage.sqlite_store import SQLiteEvidenceStore
from hashguard.core.timestamping import TimestampVerifier
from hashguard.core.verification import VerificationEngine
from hashguard.errors import KeyUnavailable

log = logging.getLogger("hashguard")


@dataclass(frozen=True)
class Services:
    """Wired engine components shared by the API and the CLI."""

    config: HashGuardConfig
    store: SQLiteEvidenceStore
    ledger: CustodyLedger
    signer: SignatureVerifier
    timestamper: TimestampVerifier
    engine: VerificationEngine
    evidence: EvidenceService

    def close(self) -> None:
        self.engine.close()
        self.timestamper.close()


def load_signing_key(
    config: HashGuardConfig, *, allow_generate: Optional[bool] = None
) -> Optional[KeyMaterial]:
    """Key provisioning; a missing key leaves the service verify-degraded.

    Security notes:
    - production profile never generates a key.
    - allow_generate=False only loads existing key files.

    """

    if allow_generate is None:
        allow_generate = not config.is_production
    try:
        return provision_key_material(
            key_dir=config.key_dir,
            user_id=config.signer_id,
            private_key_path=config.private_key_path,
            public_key_path=config.public_key_path,
            passphrase=config.key_passphrase,
            allow_generate=allow_generate,
        )
    except KeyUnavailable as e:
        log.warning("signing_key_unavailable", extra={"error": str(e)})
        return None


def default_anchor_client(config: HashGuardConfig) -> Optional[AnchorClient]:
    if not config.anchor_enabled:
        return None
    return OpenTimestampsClient(
        config.calendar_urls,
        block_source=EsploraBlockSource(config.block_explorer_url),
    )


def build_services(
    config: HashGuardConfig,
    *,
    key_material: Optional[KeyMaterial] = None,
    anchor_client: Optional[AnchorClient] = None,
    provision_keys: bool = True,
    generate_keys: Optional[bool] = None,
) -> Services:
    """Create the store schema and wire every component from config.

    key_material / anchor_client override what the config would load, so
    tests can inject deterministic keys and an in-process anchor client.
    """

    logging.getLogger("hashguard").setLevel(config.log_level)

    store = SQLiteEvidenceStore(config.db_path)
    store.init_schema()

    if key_material is None and provision_keys:
        key_material = load_signing_key(config, allow_generate=generate_keys)
    if anchor_client is None:
        anchor_client = default_anchor_client(config)

    ledger = CustodyLedger(store, gap_hours=config.custody_gap_hours)
    signer = SignatureVerifier(key_material)
    timestamper = TimestampVerifier(
        anchor_client,
        anchor_dir=config.anchor_dir,
        timeout_sec=config.anchor_timeout_sec,
    )
    engine = VerificationEngine(
        store, ledger, signer, timestamper, workers=config.verify_workers
    )
    evidence = EvidenceService(
        store, ledger, signer, timestamper, storage_dir=config.storage_dir
    )
    return Services(
        config=config,
        store=store,
        ledger=ledger,
        signer=signer,
        timestamper=timestamper,
        engine=engine,
        evidence=evidence,
    )
