from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Optional


class Role(IntEnum):
    """Ordered roles: a higher role includes every lower one."""

    USER = 1
    SUPER = 2
    ADMIN = 3

    @classmethod
    def parse(cls, raw: str) -> Optional["Role"]:
        try:
            return cls[raw.strip().upper()]
        except KeyError:
            return None


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller of the API.

    Security notes:
    - actor_id and role come from the server-side key mapping only.
    - actor_id is what custody entries record as the actor.

    """

    actor_id: str
    role: Role

    def has_role(self, required: Role) -> bool:
        return self.role >= required


def _parse_api_keys(raw: str) -> Dict[str, Actor]:
    """Parse HASHGUARD_API_KEYS into an API key -> Actor mapping.

    Format (semicolon-separated entries):
      <APIKEY>:<ACTOR_ID>:<ROLE>;

    Example:
      HASHGUARD_API_KEYS="k1:alice:ADMIN;k2:bob:USER"

    Security notes:
    - Env var is trusted server configuration.
    - Unknown roles or malformed entries are ignored (fail-closed by omission).

    """

    out: Dict[str, Actor] = {}
    for entry in (raw or "").split(";"):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":", 2)
        if len(parts) != 3:
            continue
        key, actor_id = parts[0].strip(), parts[1].strip()
        role = Role.parse(parts[2])
        if not key or not actor_id or role is None:
            continue
        out[key] = Actor(actor_id=actor_id, role=role)
    return out


def load_auth_config() -> Dict[str, Actor]:
    return _parse_api_keys(os.environ.get("HASHGUARD_API_KEYS", ""))


def requires_auth(mapping: Dict[str, Actor]) -> bool:
    """Return True if the API should require authentication.

    Policy:
    - If HASHGUARD_REQUIRE_AUTH=1, always require.
    - Else, require iff at least one API key is configured.

    """

    if os.environ.get("HASHGUARD_REQUIRE_AUTH", "").strip() in {"1", "true", "TRUE", "yes", "YES"}:
        return True
    return bool(mapping)


def authenticate(api_key: Optional[str], mapping: Dict[str, Actor]) -> Optional[Actor]:
    """Resolve an API key to its actor.

    Security notes:
    - Constant-time comparison against every configured key.
    - Returns None on failure.

    """

    if not api_key:
        return None

    found: Optional[Actor] = None
    for k, actor in mapping.items():
        if hmac.compare_digest(k.encode("utf-8"), api_key.encode("utf-8")):
            found = actor
    return found
