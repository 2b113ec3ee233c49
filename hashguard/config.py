from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

PROFILE_DEVELOPMENT = "development"
PROFILE_PRODUCTION = "production"

DEFAULT_SIGNER_ID = "HashGuard System <system@hashguard.local>"
DEFAULT_CALENDAR_URLS = ("https://alice.btc.calendar.opentimestamps.org",)
DEFAULT_BLOCK_EXPLORER_URL = "https://blockstream.info/api"


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.environ.get(name, "").strip()
    return raw or default


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable.

    Security notes:
    - Env vars are treated as trusted server configuration.
    - Unparseable values fall back to the default.

    """

    raw = os.environ.get(name, "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    return raw in {"1", "true", "TRUE", "yes", "YES", "on", "ON"}


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return tuple(default)
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True, slots=True)
class HashGuardConfig:
    """Deployment configuration for the engine, API and CLI.

    Security notes:
    - key_passphrase is held in memory only; never logged.
    - profile=production refuses to self-provision a signing key.

    """

    db_path: Path = Path("hashguard.db")
    storage_dir: Path = Path("evidence_store")
    profile: str = PROFILE_DEVELOPMENT

    key_dir: Path = Path("keys")
    private_key_path: Optional[Path] = None
    public_key_path: Optional[Path] = None
    key_passphrase: Optional[str] = field(default=None, repr=False)
    signer_id: str = DEFAULT_SIGNER_ID

    anchor_enabled: bool = False
    calendar_urls: Tuple[str, ...] = DEFAULT_CALENDAR_URLS
    block_explorer_url: str = DEFAULT_BLOCK_EXPLORER_URL
    anchor_dir: Path = Path("timestamps")
    anchor_timeout_sec: int = 10

    custody_gap_hours: int = 24
    max_upload_bytes: int = 25 * 1024 * 1024
    verify_workers: int = 4
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.profile == PROFILE_PRODUCTION

    @classmethod
    def from_env(cls, **overrides) -> "HashGuardConfig":
        """Build a config from HASHGUARD_* environment variables.

        Keyword overrides win over the environment (used by the CLI flags).
        """

        priv = _env_str("HASHGUARD_PRIVATE_KEY_PATH")
        pub = _env_str("HASHGUARD_PUBLIC_KEY_PATH")
        values = dict(
            db_path=Path(_env_str("HASHGUARD_DB_PATH", "hashguard.db")),
            storage_dir=Path(_env_str("HASHGUARD_STORAGE_DIR", "evidence_store")),
            profile=(_env_str("HASHGUARD_PROFILE", PROFILE_DEVELOPMENT) or "").lower(),
            key_dir=Path(_env_str("HASHGUARD_KEY_DIR", "keys")),
            private_key_path=Path(priv) if priv else None,
            public_key_path=Path(pub) if pub else None,
            key_passphrase=os.environ.get("HASHGUARD_KEY_PASSPHRASE") or None,
            signer_id=_env_str("HASHGUARD_SIGNER_ID", DEFAULT_SIGNER_ID),
            anchor_enabled=_env_bool("HASHGUARD_ANCHOR_ENABLED", False),
            calendar_urls=_env_list("HASHGUARD_OTS_CALENDAR_URLS", DEFAULT_CALENDAR_URLS),
            block_explorer_url=_env_str("HASHGUARD_BLOCK_EXPLORER_URL", DEFAULT_BLOCK_EXPLORER_URL),
            anchor_dir=Path(_env_str("HASHGUARD_ANCHOR_DIR", "timestamps")),
            anchor_timeout_sec=_env_int("HASHGUARD_ANCHOR_TIMEOUT_SEC", 10),
            custody_gap_hours=_env_int("HASHGUARD_CUSTODY_GAP_HOURS", 24),
            max_upload_bytes=_env_int("HASHGUARD_MAX_UPLOAD_BYTES", 25 * 1024 * 1024),
            verify_workers=max(1, _env_int("HASHGUARD_VERIFY_WORKERS", 4)),
            log_level=(_env_str("HASHGUARD_LOG_LEVEL", "INFO") or "INFO").upper(),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
