from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from hashguard.core.digest import (
    digest_of,
    digest_of_bytes,
    digests_equal,
    is_well_formed_digest,
    require_well_formed_digest,
)
from hashguard.errors import ContentUnavailable, MalformedInput

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_digest_of_empty_file_is_known_constant(tmp_path: Path) -> None:
    p = tmp_path / "empty.bin"
    p.write_bytes(b"")
    assert digest_of(p) == EMPTY_SHA256
    assert digest_of_bytes(b"") == EMPTY_SHA256


def test_digest_of_streams_in_chunks(tmp_path: Path) -> None:
    data = b"abc" * 100_000
    p = tmp_path / "big.bin"
    p.write_bytes(data)

    expected = hashlib.sha256(data).hexdigest()
    assert digest_of(p, chunk_size=7) == expected
    assert digest_of(str(p)) == expected
    assert expected == expected.lower()


def test_digest_of_missing_content_raises_content_unavailable(tmp_path: Path) -> None:
    with pytest.raises(ContentUnavailable):
        digest_of(tmp_path / "nope.bin")


def test_digests_equal_ignores_case() -> None:
    d = digest_of_bytes(b"x")
    assert digests_equal(d, d.upper())
    assert not digests_equal(d, digest_of_bytes(b"y"))
    assert not digests_equal(d, None)


def test_well_formed_digest_boundaries() -> None:
    assert is_well_formed_digest("a" * 64)
    assert is_well_formed_digest("A" * 64)
    assert not is_well_formed_digest("a" * 63)
    assert not is_well_formed_digest("a" * 65)
    assert not is_well_formed_digest("g" * 64)
    assert not is_well_formed_digest(None)

    assert require_well_formed_digest("AB" * 32) == "ab" * 32
    with pytest.raises(MalformedInput):
        require_well_formed_digest("zz")
