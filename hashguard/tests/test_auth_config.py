from __future__ import annotations

from pathlib import Path

from hashguard.api.auth import Role, _parse_api_keys, authenticate, requires_auth
from hashguard.config import HashGuardConfig


def test_parse_api_keys_skips_malformed_entries() -> None:
    mapping = _parse_api_keys("k1:alice:admin; k2:bob:USER ;bad;k3::USER;k4:carol:ROOT;")
    assert set(mapping) == {"k1", "k2"}
    assert mapping["k1"].role is Role.ADMIN
    assert mapping["k2"].actor_id == "bob"


def test_roles_are_ordered() -> None:
    mapping = _parse_api_keys("k:sam:SUPER")
    sam = authenticate("k", mapping)
    assert sam.has_role(Role.USER)
    assert sam.has_role(Role.SUPER)
    assert not sam.has_role(Role.ADMIN)
    assert authenticate("nope", mapping) is None
    assert authenticate(None, mapping) is None


def test_requires_auth_policy(monkeypatch) -> None:
    monkeypatch.delenv("HASHGUARD_REQUIRE_AUTH", raising=False)
    assert requires_auth({}) is False
    assert requires_auth(_parse_api_keys("k:a:USER")) is True
    monkeypatch.setenv("HASHGUARD_REQUIRE_AUTH", "1")
    assert requires_auth({}) is True


def test_config_from_env_with_overrides(monkeypatch) -> None:
    monkeypatch.setenv("HASHGUARD_PROFILE", "Production")
    monkeypatch.setenv("HASHGUARD_CUSTODY_GAP_HOURS", "48")
    monkeypatch.setenv("HASHGUARD_VERIFY_WORKERS", "not-a-number")
    monkeypatch.setenv("HASHGUARD_OTS_CALENDAR_URLS", "https://a.test, https://b.test")

    cfg = HashGuardConfig.from_env(db_path=Path("/tmp/x.db"), storage_dir=None)
    assert cfg.is_production
    assert cfg.custody_gap_hours == 48
    assert cfg.verify_workers == 4
    assert cfg.calendar_urls == ("https://a.test", "https://b.test")
    assert cfg.db_path == Path("/tmp/x.db")
    assert cfg.storage_dir == Path("evidence_store")
    assert "key_passphrase" not in repr(cfg)
