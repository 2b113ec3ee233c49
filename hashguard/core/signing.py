from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from hashguard.core.digest import require_well_formed_digest
from hashguard.errors import KeyUnavailable

log = logging.getLogger("hashguard.signing")

ALGORITHM = "Ed25519"
BIT_SIZE = 256
DEFAULT_KEY_PREFIX = "hashguard_ed25519"

_PROVISION_LOCK = threading.Lock()


@dataclass(frozen=True)
class KeyPairPaths:
    """Key file locations on disk."""

    private_key_path: str
    public_key_path: str
    info_path: str


@dataclass(frozen=True)
class KeyInfo:
    """Provenance metadata of a verification key."""

    key_id: str
    fingerprint: str
    user_ids: Tuple[str, ...]
    algorithm: str
    bit_size: int
    creation_time: Optional[datetime]


@dataclass(frozen=True)
class KeyMaterial:
    """Process-wide signing key pair.

    Security notes:
    - private_key is None for verify-only deployments.
    - generated=True marks a self-provisioned key with no external trust chain.

    """

    public_key: Ed25519PublicKey
    private_key: Optional[Ed25519PrivateKey] = None
    user_ids: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None
    generated: bool = False

    @classmethod
    def generate(cls, *, user_id: str) -> "KeyMaterial":
        priv = Ed25519PrivateKey.generate()
        return cls(
            public_key=priv.public_key(),
            private_key=priv,
            user_ids=(user_id,),
            created_at=datetime.now(timezone.utc),
            generated=True,
        )

    @classmethod
    def from_seed(
        cls,
        seed: bytes,
        *,
        user_id: str = "test",
        created_at: Optional[datetime] = None,
    ) -> "KeyMaterial":
        """Deterministic key pair from a 32-byte seed (tests, fixtures)."""

        priv = Ed25519PrivateKey.from_private_bytes(bytes(seed))
        return cls(
            public_key=priv.public_key(),
            private_key=priv,
            user_ids=(user_id,),
            created_at=created_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

    @property
    def can_sign(self) -> bool:
        return self.private_key is not None

    def public_key_pem(self) -> str:
        return _public_pem(self.public_key)


def _public_pem(public_key: Ed25519PublicKey) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def _raw_public_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def fingerprint_of(public_key: Ed25519PublicKey) -> str:
    """SHA-256 over the raw public key bytes, upper-case hex."""

    return hashlib.sha256(_raw_public_bytes(public_key)).hexdigest().upper()


def load_public_key_pem(data: Union[str, bytes]) -> Ed25519PublicKey:
    """Parse an Ed25519 public key from PEM text."""

    raw = data.encode("ascii") if isinstance(data, str) else bytes(data)
    key = serialization.load_pem_public_key(raw)
    if not isinstance(key, Ed25519PublicKey):
        raise TypeError("not an Ed25519 public key")
    return key


def _info_path_for(public_key_path: Union[str, Path]) -> Path:
    return Path(f"{public_key_path}.json")


def key_paths(key_dir: Union[str, Path], *, prefix: str = DEFAULT_KEY_PREFIX) -> KeyPairPaths:
    out = Path(key_dir)
    pub = out / f"{prefix}_public.pem"
    return KeyPairPaths(
        private_key_path=str(out / f"{prefix}_private.pem"),
        public_key_path=str(pub),
        info_path=str(_info_path_for(pub)),
    )


def write_key_material(
    material: KeyMaterial,
    paths: KeyPairPaths,
    *,
    passphrase: Optional[str] = None,
) -> KeyPairPaths:
    """Persist a key pair as PEM plus a small provenance sidecar.

    Security notes:
    - Without a passphrase the private key is written unencrypted; protect it
      with file permissions (0600 is applied where the OS supports it).
    - Consider an HSM or KMS for production deployments.

    """

    if material.private_key is None:
        raise KeyUnavailable("cannot persist key material without a private key")

    for p in (paths.private_key_path, paths.public_key_path, paths.info_path):
        Path(p).parent.mkdir(parents=True, exist_ok=True)

    encryption = (
        serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
        if passphrase
        else serialization.NoEncryption()
    )
    priv_bytes = material.private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )
    Path(paths.private_key_path).write_bytes(priv_bytes)
    try:
        os.chmod(paths.private_key_path, 0o600)
    except OSError:
        pass
    Path(paths.public_key_path).write_text(material.public_key_pem(), encoding="ascii")

    info = {
        "algorithm": ALGORITHM,
        "user_ids": list(material.user_ids),
        "created_at": material.created_at.isoformat() if material.created_at else None,
        "generated": material.generated,
    }
    Path(paths.info_path).write_text(
        json.dumps(info, indent=2, sort_keys=True) + "\n", encoding="utf-8"
    )
    return paths


def _read_info(public_key_path: Path) -> Tuple[Tuple[str, ...], Optional[datetime], bool]:
    """Read the provenance sidecar; without one, fall back to the PEM mtime."""

    info_path = _info_path_for(public_key_path)
    if info_path.exists():
        info = json.loads(info_path.read_text(encoding="utf-8"))
        created = info.get("created_at")
        return (
            tuple(str(u) for u in info.get("user_ids") or []),
            datetime.fromisoformat(created) if created else None,
            bool(info.get("generated", False)),
        )
    mtime = datetime.fromtimestamp(public_key_path.stat().st_mtime, tz=timezone.utc)
    return (), mtime, False


def load_key_material(
    *,
    public_key_path: Union[str, Path],
    private_key_path: Optional[Union[str, Path]] = None,
    passphrase: Optional[str] = None,
) -> KeyMaterial:
    """Load key material from PEM files.

    The private key is optional (verify-only deployments).
    """

    pub_path = Path(public_key_path)
    public_key = load_public_key_pem(pub_path.read_bytes())

    private_key: Optional[Ed25519PrivateKey] = None
    if private_key_path and Path(private_key_path).exists():
        loaded = serialization.load_pem_private_key(
            Path(private_key_path).read_bytes(),
            password=passphrase.encode("utf-8") if passphrase else None,
        )
        if not isinstance(loaded, Ed25519PrivateKey):
            raise TypeError("not an Ed25519 private key")
        if _raw_public_bytes(loaded.public_key()) != _raw_public_bytes(public_key):
            raise KeyUnavailable("private key does not match public key")
        private_key = loaded

    user_ids, created_at, generated = _read_info(pub_path)
    return KeyMaterial(
        public_key=public_key,
        private_key=private_key,
        user_ids=user_ids,
        created_at=created_at,
        generated=generated,
    )


def provision_key_material(
    *,
    key_dir: Union[str, Path],
    user_id: str,
    private_key_path: Optional[Union[str, Path]] = None,
    public_key_path: Optional[Union[str, Path]] = None,
    passphrase: Optional[str] = None,
    allow_generate: bool = True,
) -> KeyMaterial:
    """Explicit startup step: load configured keys, or generate and persist a pair.

    Idempotent and safe under concurrent startup: the check-then-generate runs
    under a process-wide lock, so a second caller loads what the first wrote.

    Security notes:
    - A generated key has no external trust chain; a warning is logged.
    - allow_generate=False (production profile) raises KeyUnavailable instead.

    """

    defaults = key_paths(key_dir)
    pub_path = Path(public_key_path or defaults.public_key_path)
    priv_path = Path(private_key_path or defaults.private_key_path)

    with _PROVISION_LOCK:
        if pub_path.exists():
            material = load_key_material(
                public_key_path=pub_path,
                private_key_path=priv_path,
                passphrase=passphrase,
            )
            log.info(
                "signing_key_loaded",
                extra={
                    "key_id": fingerprint_of(material.public_key)[-16:],
                    "can_sign": material.can_sign,
                },
            )
            return material

        if not allow_generate:
            raise KeyUnavailable(
                f"signing key not found at {pub_path} and generation is disabled"
            )

        material = KeyMaterial.generate(user_id=user_id)
        write_key_material(
            material,
            KeyPairPaths(
                private_key_path=str(priv_path),
                public_key_path=str(pub_path),
                info_path=str(_info_path_for(pub_path)),
            ),
            passphrase=passphrase,
        )
        log.warning(
            "signing_key_generated: self-provisioned key has no external trust chain",
            extra={
                "key_id": fingerprint_of(material.public_key)[-16:],
                "key_dir": str(pub_path.parent),
            },
        )
        return material


class SignatureVerifier:
    """Detached Ed25519 signatures over evidence digests.

    The signed message is the lower-case hex digest as ASCII bytes.
    Signatures are base64 text, stored as a separate artifact.

    Security notes:
    - verify() fails closed: any error returns False and is logged.
    - Missing key material raises KeyUnavailable so callers can tell
      "could not check" apart from "checked and invalid".

    """

    def __init__(self, key_material: Optional[KeyMaterial] = None) -> None:
        self._material = key_material

    @property
    def key_material(self) -> Optional[KeyMaterial]:
        return self._material

    def sign(self, digest: str) -> str:
        canonical = require_well_formed_digest(digest)
        if self._material is None or self._material.private_key is None:
            raise KeyUnavailable("private signing key not loaded")
        sig = self._material.private_key.sign(canonical.encode("ascii"))
        log.info("digest_signed", extra={"digest_prefix": canonical[:16]})
        return base64.b64encode(sig).decode("ascii")

    def _resolve_public_key(self, public_key_pem: Optional[str]) -> Ed25519PublicKey:
        if public_key_pem:
            return load_public_key_pem(public_key_pem)
        if self._material is None:
            raise KeyUnavailable("public verification key not loaded")
        return self._material.public_key

    def verify(self, digest: str, signature: str, public_key_pem: Optional[str] = None) -> bool:
        public_key = self._resolve_public_key_or_none(public_key_pem)
        if public_key is None:
            return False

        try:
            sig = base64.b64decode(str(signature).strip().encode("ascii"), validate=True)
            public_key.verify(sig, str(digest).lower().encode("ascii"))
        except InvalidSignature:
            log.warning("signature_invalid", extra={"digest_prefix": str(digest)[:16]})
            return False
        except (binascii.Error, UnicodeError, ValueError) as e:
            log.warning("signature_unreadable", extra={"digest_prefix": str(digest)[:16], "error": str(e)})
            return False
        return True

    def _resolve_public_key_or_none(self, public_key_pem: Optional[str]) -> Optional[Ed25519PublicKey]:
        """Resolve the verification key; KeyUnavailable propagates, bad PEM fails closed."""

        try:
            return self._resolve_public_key(public_key_pem)
        except KeyUnavailable:
            raise
        except (TypeError, ValueError) as e:
            log.warning("signature_public_key_unreadable", extra={"error": str(e)})
            return None

    def public_key_pem(self) -> str:
        if self._material is None:
            raise KeyUnavailable("public verification key not loaded")
        return self._material.public_key_pem()

    def key_info(self, public_key_pem: Optional[str] = None) -> KeyInfo:
        """Provenance of the given key, or of the loaded key."""

        public_key = self._resolve_public_key(public_key_pem)
        fp = fingerprint_of(public_key)

        user_ids: Tuple[str, ...] = ()
        created: Optional[datetime] = None
        material = self._material
        if material is not None and _raw_public_bytes(material.public_key) == _raw_public_bytes(public_key):
            user_ids = material.user_ids
            created = material.created_at

        return KeyInfo(
            key_id=fp[-16:],
            fingerprint=fp,
            user_ids=user_ids,
            algorithm=ALGORITHM,
            bit_size=BIT_SIZE,
            creation_time=created,
        )
