from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Union

from hashguard.errors import ContentUnavailable, MalformedInput

CHUNK_SIZE = 1024 * 1024

_SHA256_RE = re.compile(r"[0-9a-fA-F]{64}")


def digest_of(content_locator: Union[str, Path], *, chunk_size: int = CHUNK_SIZE) -> str:
    """Stream SHA-256 of the content behind a locator.

    Security notes:
    - Reads in bounded chunks; never loads the whole object.
    - Any OS-level failure is reported as ContentUnavailable.

    Time:  O(n)
    Space: O(chunk_size)
    """

    path = Path(content_locator)
    h = hashlib.sha256()
    try:
        with path.open("rb") as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                h.update(chunk)
    except OSError as e:
        raise ContentUnavailable(f"cannot read content at {path}: {e.strerror or e}") from e
    return h.hexdigest()


def digest_of_bytes(data: bytes) -> str:
    """SHA-256 of an in-memory buffer, lower-case hex."""

    return hashlib.sha256(bytes(data)).hexdigest()


def digests_equal(a: str, b: str) -> bool:
    """Case-insensitive comparison of two hex digests."""

    if a is None or b is None:
        return False
    return str(a).lower() == str(b).lower()


def is_well_formed_digest(s: object) -> bool:
    """True iff s is exactly 64 hexadecimal characters."""

    return isinstance(s, str) and _SHA256_RE.fullmatch(s) is not None


def require_well_formed_digest(s: object) -> str:
    """Validate a caller-supplied digest at a boundary.

    Returns the canonical lower-case form.
    """

    if not is_well_formed_digest(s):
        raise MalformedInput("digest must be exactly 64 hexadecimal characters")
    return str(s).lower()
