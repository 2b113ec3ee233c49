from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from hashguard.config import HashGuardConfig
from hashguard.core.models import SYSTEM_ACTOR, as_utc, normalize_action
from hashguard.core.services import Services, build_services
from hashguard.core.signing import (
    DEFAULT_KEY_PREFIX,
    KeyMaterial,
    key_paths,
    write_key_material,
)
from hashguard.errors import HashGuardError
from hashguard.utils.json_safe import to_jsonable

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_FAILED = 3


def _print_json(obj: Any) -> None:
    print(json.dumps(to_jsonable(obj), indent=2, sort_keys=True, default=str))


def _config(args: argparse.Namespace) -> HashGuardConfig:
    """Environment config with command-line overrides."""

    return HashGuardConfig.from_env(
        db_path=Path(args.db) if args.db else None,
        storage_dir=Path(args.storage_dir) if args.storage_dir else None,
        key_dir=Path(args.key_dir) if args.key_dir else None,
        anchor_dir=Path(args.anchor_dir) if args.anchor_dir else None,
        anchor_enabled=True if args.anchor else None,
        profile=args.profile,
    )


def _services(args: argparse.Namespace, *, keys: bool = False) -> Services:
    # Only commands that sign or verify load key material; none generate it.
    return build_services(_config(args), provision_keys=keys, generate_keys=False)


def _usage_error(message: str) -> int:
    print(f"error: {message}", file=sys.stderr)
    return EXIT_USAGE


def _parse_details(pairs: Optional[List[str]], raw_json: Optional[str]) -> Dict[str, Any]:
    details: Dict[str, Any] = {}
    if raw_json:
        loaded = json.loads(raw_json)
        if not isinstance(loaded, dict):
            raise ValueError("--details-json must be a JSON object")
        details.update(loaded)
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"--detail expects key=value, got {pair!r}")
        details[key] = value
    return details


def _evidence_view(record) -> Dict[str, Any]:
    view = record.summary()
    view.update(
        {
            "collected_at": record.collected_at,
            "description": record.description,
            "metadata": record.metadata,
            "signature_reference": record.signature_reference,
            "timestamp_reference": record.timestamp_reference,
        }
    )
    return view


def cmd_db_init(args: argparse.Namespace) -> int:
    """Create the SQLite schema (idempotent)."""

    services = _services(args)
    try:
        _print_json({"ok": True, "db": str(services.store.db_path)})
    finally:
        services.close()
    return EXIT_OK


def cmd_ingest(args: argparse.Namespace) -> int:
    """Register a local file as evidence.

    Security notes:
    - The file is copied into the storage directory; the digest is taken
      from the stored copy.

    """

    src = Path(args.path)
    if not src.is_file():
        return _usage_error(f"file not found: {src}")

    try:
        collected_at = as_utc(datetime.fromisoformat(args.collected_at)) if args.collected_at else None
    except ValueError:
        return _usage_error(f"--collected-at is not an ISO 8601 time: {args.collected_at!r}")

    services = _services(args)
    try:
        record = services.evidence.register(
            src,
            collected_by=args.collected_by,
            filename=args.filename,
            collected_at=collected_at,
            description=args.description,
        )
    finally:
        services.close()
    _print_json(_evidence_view(record))
    return EXIT_OK


def cmd_show(args: argparse.Namespace) -> int:
    services = _services(args)
    try:
        record = services.evidence.get(args.evidence_id)
    finally:
        services.close()
    _print_json(_evidence_view(record))
    return EXIT_OK


def cmd_verify(args: argparse.Namespace) -> int:
    """Full verification; exit 3 when the evidence is not valid.

    Existing key files are loaded for records signed before the public key
    was stored with them. A missing key is never generated here.
    """

    services = _services(args, keys=True)
    try:
        verdict = services.engine.verify(args.evidence_id, args.actor)
    finally:
        services.close()
    _print_json(verdict)
    return EXIT_OK if verdict.overall_valid else EXIT_FAILED


def cmd_quick_verify(args: argparse.Namespace) -> int:
    services = _services(args)
    try:
        res = services.engine.quick_verification(args.evidence_id, args.actor)
    finally:
        services.close()
    _print_json(res)
    return EXIT_OK if res.is_intact else EXIT_FAILED


def cmd_verify_file(args: argparse.Namespace) -> int:
    """Look a local file up by digest and recheck the stored original."""

    services = _services(args)
    try:
        res = services.engine.verify_uploaded_content_against_store(args.path, args.actor)
    finally:
        services.close()
    _print_json(res)
    return EXIT_OK if res.is_intact else EXIT_FAILED


def cmd_custody_append(args: argparse.Namespace) -> int:
    try:
        details = _parse_details(args.detail, args.details_json)
        action = normalize_action(args.action)
    except ValueError as e:
        return _usage_error(str(e))

    services = _services(args)
    try:
        entry = services.ledger.append(args.evidence_id, action, args.actor, details)
    finally:
        services.close()
    _print_json(entry)
    return EXIT_OK


def cmd_custody_chain(args: argparse.Namespace) -> int:
    services = _services(args)
    try:
        chain = services.ledger.chain_for(args.evidence_id)
    finally:
        services.close()
    _print_json({"evidence_id": args.evidence_id, "chain": chain})
    return EXIT_OK


def cmd_custody_report(args: argparse.Namespace) -> int:
    services = _services(args)
    try:
        report = services.ledger.report(args.evidence_id)
    finally:
        services.close()
    _print_json(report)
    return EXIT_OK


def cmd_custody_validate(args: argparse.Namespace) -> int:
    """Structural custody audit; exit 3 when the chain has issues."""

    services = _services(args)
    try:
        validation = services.ledger.validate(args.evidence_id)
    finally:
        services.close()
    _print_json(validation)
    return EXIT_OK if validation.is_valid else EXIT_FAILED


def cmd_custody_by_actor(args: argparse.Namespace) -> int:
    services = _services(args)
    try:
        entries = services.ledger.entries_by_actor(args.actor_id)
    finally:
        services.close()
    _print_json({"actor": args.actor_id, "entries": entries})
    return EXIT_OK


def cmd_custody_by_action(args: argparse.Namespace) -> int:
    try:
        action = normalize_action(args.action)
    except ValueError as e:
        return _usage_error(str(e))

    services = _services(args)
    try:
        entries = services.ledger.entries_by_action(action)
    finally:
        services.close()
    _print_json({"action": action, "entries": entries})
    return EXIT_OK


def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate an Ed25519 signing key pair.

    Security notes:
    - Store the private key securely. Anyone with it can forge signatures.
    - Existing key files are never overwritten.

    """

    cfg = _config(args)
    paths = key_paths(args.out_dir or cfg.key_dir, prefix=args.prefix)
    existing = [p for p in (paths.private_key_path, paths.public_key_path) if Path(p).exists()]
    if existing:
        return _usage_error(f"key file already exists: {existing[0]}")

    material = KeyMaterial.generate(user_id=args.user_id or cfg.signer_id)
    write_key_material(material, paths, passphrase=cfg.key_passphrase)
    _print_json(
        {
            "private_key": paths.private_key_path,
            "public_key": paths.public_key_path,
            "encrypted": bool(cfg.key_passphrase),
        }
    )
    return EXIT_OK


def cmd_key_info(args: argparse.Namespace) -> int:
    services = _services(args, keys=True)
    try:
        out: Dict[str, Any] = {"key_info": services.signer.key_info()}
        if args.public_key:
            out["public_key"] = services.signer.public_key_pem()
    finally:
        services.close()
    _print_json(out)
    return EXIT_OK


def cmd_sign(args: argparse.Namespace) -> int:
    """Sign the stored digest with the configured key (see `keygen`)."""

    services = _services(args, keys=True)
    try:
        record = services.evidence.sign_evidence(args.evidence_id, args.actor)
    finally:
        services.close()
    _print_json(_evidence_view(record))
    return EXIT_OK


def cmd_timestamp(args: argparse.Namespace) -> int:
    """Anchor the evidence digest; falls back to a local timestamp unless --no-fallback."""

    services = _services(args)
    try:
        res = services.evidence.timestamp_evidence(
            args.evidence_id, args.actor, allow_local_fallback=not args.no_fallback
        )
    finally:
        services.close()
    _print_json(
        {
            "evidence_id": args.evidence_id,
            "source": res.source,
            "timestamp": res.timestamp,
            "anchored": res.reference is not None,
            "timestamp_reference": res.reference,
            "fallback_reason": res.fallback_reason,
        }
    )
    return EXIT_OK


def cmd_timestamp_upgrade(args: argparse.Namespace) -> int:
    services = _services(args)
    try:
        upgraded = services.evidence.upgrade_timestamp(args.evidence_id, args.actor)
        record = services.evidence.get(args.evidence_id)
        info = services.timestamper.anchor_info(record.timestamp_reference)
    finally:
        services.close()
    _print_json({"evidence_id": args.evidence_id, "upgraded": upgraded, "info": info})
    return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HashGuard API server.

    Security notes:
    - If HASHGUARD_API_KEYS is set, requests must provide X-HashGuard-API-Key.
    - Bind to 127.0.0.1 by default (safer than 0.0.0.0).

    """

    import uvicorn

    from hashguard.api.server import create_app

    app = create_app(_config(args))
    uvicorn.run(app, host=args.host, port=int(args.port), log_level=args.log_level)
    return EXIT_OK


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", default=None, help="SQLite DB path (default: HASHGUARD_DB_PATH)")
    common.add_argument("--storage-dir", default=None, help="Evidence content directory")
    common.add_argument("--key-dir", default=None, help="Signing key directory")
    common.add_argument("--anchor-dir", default=None, help="Timestamp proof directory")
    common.add_argument(
        "--anchor", action="store_true", help="Enable OpenTimestamps anchoring for this run"
    )
    common.add_argument(
        "--profile", default=None, choices=["development", "production"], help="Deployment profile"
    )
    return common


def _with_actor(p: argparse.ArgumentParser) -> None:
    p.add_argument("--actor", default=SYSTEM_ACTOR, help="Actor recorded in the custody log")


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser."""
    p = argparse.ArgumentParser(prog="hashguard", description="HashGuard evidence integrity CLI")
    sub = p.add_subparsers(dest="cmd", required=True)
    common = _common_options()

    dbi = sub.add_parser("db-init", parents=[common], help="Initialize the SQLite evidence store")
    dbi.set_defaults(func=cmd_db_init)

    ing = sub.add_parser("ingest", parents=[common], help="Register a local file as evidence")
    ing.add_argument("path", help="Path to file")
    ing.add_argument("--collected-by", required=True, help="Who collected the evidence")
    ing.add_argument("--collected-at", default=None, help="ISO 8601 collection time (default: now)")
    ing.add_argument("--filename", default=None, help="Original file name (default: basename)")
    ing.add_argument("--description", default=None, help="Free-text description")
    ing.set_defaults(func=cmd_ingest)

    sh = sub.add_parser("show", parents=[common], help="Show an evidence record")
    sh.add_argument("evidence_id")
    sh.set_defaults(func=cmd_show)

    vf = sub.add_parser("verify", parents=[common], help="Full verification with confidence score")
    vf.add_argument("evidence_id")
    _with_actor(vf)
    vf.set_defaults(func=cmd_verify)

    qv = sub.add_parser("quick-verify", parents=[common], help="Hash-only integrity recheck")
    qv.add_argument("evidence_id")
    _with_actor(qv)
    qv.set_defaults(func=cmd_quick_verify)

    vfi = sub.add_parser(
        "verify-file", parents=[common], help="Check a local file against stored evidence"
    )
    vfi.add_argument("path")
    _with_actor(vfi)
    vfi.set_defaults(func=cmd_verify_file)

    ca = sub.add_parser("custody-append", parents=[common], help="Append a custody entry")
    ca.add_argument("evidence_id")
    ca.add_argument("action", help="Custody action (e.g., ACCESS, TRANSFER)")
    _with_actor(ca)
    ca.add_argument("--detail", action="append", default=None, help="key=value (repeatable)")
    ca.add_argument("--details-json", default=None, help="Details as a JSON object")
    ca.set_defaults(func=cmd_custody_append)

    cc = sub.add_parser("custody-chain", parents=[common], help="Show the custody chain")
    cc.add_argument("evidence_id")
    cc.set_defaults(func=cmd_custody_chain)

    cr = sub.add_parser("custody-report", parents=[common], help="Custody report for audit review")
    cr.add_argument("evidence_id")
    cr.set_defaults(func=cmd_custody_report)

    cv = sub.add_parser("custody-validate", parents=[common], help="Validate the custody chain")
    cv.add_argument("evidence_id")
    cv.set_defaults(func=cmd_custody_validate)

    cba = sub.add_parser("custody-by-actor", parents=[common], help="Entries recorded by an actor")
    cba.add_argument("actor_id")
    cba.set_defaults(func=cmd_custody_by_actor)

    cbx = sub.add_parser("custody-by-action", parents=[common], help="Entries with an action")
    cbx.add_argument("action")
    cbx.set_defaults(func=cmd_custody_by_action)

    kg = sub.add_parser("keygen", parents=[common], help="Generate an Ed25519 signing key pair")
    kg.add_argument("--out-dir", default=None, help="Directory for key files (default: key dir)")
    kg.add_argument("--prefix", default=DEFAULT_KEY_PREFIX, help="Filename prefix for key files")
    kg.add_argument("--user-id", default=None, help="Signer identity (default: HASHGUARD_SIGNER_ID)")
    kg.set_defaults(func=cmd_keygen)

    ki = sub.add_parser("key-info", parents=[common], help="Show the signing key provenance")
    ki.add_argument("--public-key", action="store_true", help="Include the PEM public key")
    ki.set_defaults(func=cmd_key_info)

    sg = sub.add_parser("sign", parents=[common], help="Sign an evidence digest")
    sg.add_argument("evidence_id")
    _with_actor(sg)
    sg.set_defaults(func=cmd_sign)

    ts = sub.add_parser("timestamp", parents=[common], help="Timestamp an evidence digest")
    ts.add_argument("evidence_id")
    _with_actor(ts)
    ts.add_argument(
        "--no-fallback",
        action="store_true",
        help="Fail instead of recording a local timestamp when anchoring is unavailable",
    )
    ts.set_defaults(func=cmd_timestamp)

    tu = sub.add_parser(
        "timestamp-upgrade", parents=[common], help="Upgrade a pending timestamp proof"
    )
    tu.add_argument("evidence_id")
    _with_actor(tu)
    tu.set_defaults(func=cmd_timestamp_upgrade)

    sv = sub.add_parser("serve", parents=[common], help="Run the HashGuard FastAPI server")
    sv.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    sv.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    sv.add_argument("--log-level", default="info", help="Uvicorn log level")
    sv.set_defaults(func=cmd_serve)

    return p


def main(argv: List[str] | None = None) -> int:
    """CLI entry."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    try:
        return int(args.func(args))
    except HashGuardError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
