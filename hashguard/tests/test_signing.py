from __future__ import annotations

import base64
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from hashguard.core.digest import digest_of_bytes
from hashguard.core.signing import (
    ALGORITHM,
    BIT_SIZE,
    KeyMaterial,
    SignatureVerifier,
    fingerprint_of,
    key_paths,
    load_key_material,
    provision_key_material,
    write_key_material,
)
from hashguard.errors import KeyUnavailable, MalformedInput

SEED = b"\x01" * 32


def test_sign_and_verify_digest() -> None:
    signer = SignatureVerifier(KeyMaterial.from_seed(SEED))
    digest = digest_of_bytes(b"evidence")

    sig = signer.sign(digest)
    base64.b64decode(sig, validate=True)
    assert signer.verify(digest, sig) is True
    # the signed message is the lower-case digest
    assert signer.verify(digest.upper(), sig) is True
    assert signer.verify(digest_of_bytes(b"other"), sig) is False


def test_signature_is_deterministic_for_seeded_key() -> None:
    digest = digest_of_bytes(b"evidence")
    a = SignatureVerifier(KeyMaterial.from_seed(SEED)).sign(digest)
    b = SignatureVerifier(KeyMaterial.from_seed(SEED)).sign(digest)
    assert a == b


def test_verify_fails_closed_on_garbage() -> None:
    signer = SignatureVerifier(KeyMaterial.from_seed(SEED))
    digest = digest_of_bytes(b"evidence")
    assert signer.verify(digest, "not base64 !!") is False
    assert signer.verify(digest, base64.b64encode(b"\x00" * 64).decode()) is False
    assert signer.verify(digest, signer.sign(digest), public_key_pem="-----BEGIN nonsense") is False


def test_verify_with_embedded_public_key_ignores_loaded_key() -> None:
    original = KeyMaterial.from_seed(SEED)
    digest = digest_of_bytes(b"evidence")
    sig = SignatureVerifier(original).sign(digest)

    other = SignatureVerifier(KeyMaterial.from_seed(b"\x02" * 32))
    assert other.verify(digest, sig) is False
    assert other.verify(digest, sig, public_key_pem=original.public_key_pem()) is True


def test_missing_key_material_is_reported_not_false() -> None:
    signer = SignatureVerifier()
    digest = digest_of_bytes(b"evidence")
    with pytest.raises(KeyUnavailable):
        signer.sign(digest)
    with pytest.raises(KeyUnavailable):
        signer.verify(digest, "AAAA")
    with pytest.raises(KeyUnavailable):
        signer.public_key_pem()


def test_sign_rejects_malformed_digest() -> None:
    signer = SignatureVerifier(KeyMaterial.from_seed(SEED))
    with pytest.raises(MalformedInput):
        signer.sign("abc")


def test_key_info_describes_loaded_key() -> None:
    material = KeyMaterial.from_seed(SEED, user_id="Lab <lab@example.org>")
    info = SignatureVerifier(material).key_info()
    fp = fingerprint_of(material.public_key)

    assert info.fingerprint == fp
    assert info.key_id == fp[-16:]
    assert info.user_ids == ("Lab <lab@example.org>",)
    assert info.algorithm == ALGORITHM
    assert info.bit_size == BIT_SIZE
    assert info.creation_time is not None


def test_write_and_load_encrypted_key(tmp_path: Path) -> None:
    material = KeyMaterial.from_seed(SEED, user_id="lab")
    paths = write_key_material(material, key_paths(tmp_path, prefix="unit"), passphrase="s3cret")
    assert Path(paths.private_key_path).name == "unit_private.pem"

    loaded = load_key_material(
        public_key_path=paths.public_key_path,
        private_key_path=paths.private_key_path,
        passphrase="s3cret",
    )
    assert loaded.can_sign
    assert loaded.user_ids == ("lab",)
    assert fingerprint_of(loaded.public_key) == fingerprint_of(material.public_key)

    verify_only = load_key_material(public_key_path=paths.public_key_path)
    assert verify_only.can_sign is False


def test_provision_generates_once_then_loads(tmp_path: Path) -> None:
    first = provision_key_material(key_dir=tmp_path, user_id="HashGuard System")
    second = provision_key_material(key_dir=tmp_path, user_id="someone else")

    assert first.generated is True
    assert fingerprint_of(first.public_key) == fingerprint_of(second.public_key)
    assert second.user_ids == ("HashGuard System",)
    assert second.can_sign


def test_provision_refuses_to_generate_when_disabled(tmp_path: Path) -> None:
    with pytest.raises(KeyUnavailable):
        provision_key_material(key_dir=tmp_path, user_id="x", allow_generate=False)
    assert list(tmp_path.iterdir()) == []


def test_provision_concurrent_startup_generates_one_key(tmp_path: Path) -> None:
    key_dir = tmp_path / "keys"

    def provision(_: int) -> str:
        material = provision_key_material(key_dir=key_dir, user_id="HashGuard System")
        return fingerprint_of(material.public_key)

    with ThreadPoolExecutor(max_workers=8) as pool:
        fingerprints = set(pool.map(provision, range(16)))

    assert len(fingerprints) == 1
    assert sorted(p.name for p in key_dir.iterdir()) == [
        "hashguard_ed25519_private.pem",
        "hashguard_ed25519_public.pem",
        "hashguard_ed25519_public.pem.json",
    ]
    loaded = load_key_material(
        public_key_path=key_paths(key_dir).public_key_path,
        private_key_path=key_paths(key_dir).private_key_path,
    )
    assert fingerprint_of(loaded.public_key) in fingerprints
    assert loaded.can_sign
