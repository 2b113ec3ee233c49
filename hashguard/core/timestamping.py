from __future__ import annotations

import concurrent.futures
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from hashguard.core.anchoring import (
    EXTERNAL_SOURCE,
    STATUS_INVALID,
    STATUS_UNAVAILABLE,
    AnchorClient,
)
from hashguard.core.digest import is_well_formed_digest, require_well_formed_digest
from hashguard.core.models import utc_now
from hashguard.errors import AnchorServiceUnavailable, ContentUnavailable

log = logging.getLogger("hashguard.timestamping")

LOCAL_SOURCE = "LOCAL_SYSTEM"
PROOF_SUFFIX = ".ots"

T = TypeVar("T")


@dataclass(frozen=True)
class LocalTimestamp:
    """Trust-weaker fallback: the server's own clock, no external proof."""

    digest: str
    timestamp: datetime
    source: str = LOCAL_SOURCE


@dataclass(frozen=True)
class AnchorVerification:
    is_valid: bool
    status: str
    source: str
    anchor_time: Optional[datetime] = None
    anchor_height: Optional[int] = None
    error: Optional[str] = None


class TimestampVerifier:
    """Orchestrates an external anchoring client with bounded calls.

    Responsibilities
    - create/verify/upgrade anchor proofs stored under anchor_dir
    - local fallback timestamps, always distinguishable by source=LOCAL_SYSTEM

    Security notes:
    - Every client call runs on a worker thread and is abandoned after
      timeout_sec; verification then reports a soft failure.
    - verify_anchor never raises for pending, missing or unreachable proofs.

    """

    def __init__(
        self,
        client: Optional[AnchorClient] = None,
        *,
        anchor_dir: Union[str, Path] = "timestamps",
        timeout_sec: float = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._anchor_dir = Path(anchor_dir)
        self._timeout = float(timeout_sec)
        self._clock = clock
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="hashguard-anchor"
        )

    @property
    def configured(self) -> bool:
        return self._client is not None

    @property
    def source(self) -> str:
        return self._client.source if self._client is not None else EXTERNAL_SOURCE

    @staticmethod
    def is_well_formed_digest(s: object) -> bool:
        return is_well_formed_digest(s)

    def _require_client(self) -> AnchorClient:
        if self._client is None:
            raise AnchorServiceUnavailable("timestamp anchoring is not configured")
        return self._client

    def _bounded(self, fn: Callable[[], T]) -> T:
        future = self._pool.submit(fn)
        try:
            return future.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def create_anchor(self, digest: str) -> str:
        """Submit a digest and store the proof; returns the proof path."""

        canonical = require_well_formed_digest(digest)
        client = self._require_client()
        try:
            proof = self._bounded(lambda: client.stamp(bytes.fromhex(canonical), timeout=self._timeout))
        except concurrent.futures.TimeoutError as e:
            raise AnchorServiceUnavailable(
                f"anchor submission timed out after {self._timeout:g}s"
            ) from e
        except AnchorServiceUnavailable:
            raise
        except Exception as e:
            raise AnchorServiceUnavailable(f"anchor submission failed: {e}") from e

        self._anchor_dir.mkdir(parents=True, exist_ok=True)
        path = self._anchor_dir / f"{canonical}{PROOF_SUFFIX}"
        _write_atomic(path, proof)
        log.info("anchor_created", extra={"digest_prefix": canonical[:16], "proof_path": str(path)})
        return str(path)

    def create_local_timestamp(self, digest: str) -> LocalTimestamp:
        canonical = require_well_formed_digest(digest)
        ts = LocalTimestamp(digest=canonical, timestamp=self._clock())
        log.info("local_timestamp_created", extra={"digest_prefix": canonical[:16]})
        return ts

    def verify_anchor(self, digest: str, anchor_reference: str) -> AnchorVerification:
        if not is_well_formed_digest(digest):
            return AnchorVerification(
                False, STATUS_INVALID, self.source, error="Digest is not 64 hexadecimal characters"
            )
        if self._client is None:
            return AnchorVerification(
                False, STATUS_UNAVAILABLE, EXTERNAL_SOURCE, error="Timestamp anchoring is not available"
            )
        client = self._client

        path = Path(anchor_reference)
        try:
            proof = path.read_bytes()
        except OSError:
            return AnchorVerification(
                False, STATUS_INVALID, client.source, error="Timestamp proof file not found"
            )

        try:
            status = self._bounded(
                lambda: client.verify(proof, bytes.fromhex(digest), timeout=self._timeout)
            )
        except concurrent.futures.TimeoutError:
            log.warning("anchor_verify_timeout", extra={"proof_path": str(path)})
            return AnchorVerification(
                False,
                STATUS_UNAVAILABLE,
                client.source,
                error=f"Timestamp verification timed out after {self._timeout:g}s",
            )
        except Exception as e:
            log.warning("anchor_verify_failed", extra={"proof_path": str(path), "error": str(e)})
            return AnchorVerification(
                False, STATUS_UNAVAILABLE, client.source, error=f"Verification failed: {e}"
            )

        if status.is_valid:
            log.info("anchor_verified", extra={"digest_prefix": digest[:16], "height": status.anchor_height})
        return AnchorVerification(
            is_valid=status.is_valid,
            status=status.status,
            source=client.source,
            anchor_time=status.anchor_time,
            anchor_height=status.anchor_height,
            error=status.error,
        )

    def upgrade_anchor(self, anchor_reference: str) -> bool:
        """Try to strengthen a pending proof in place.

        Idempotent: a finalized proof is left untouched and False is returned.
        """

        client = self._require_client()
        path = Path(anchor_reference)
        try:
            proof = path.read_bytes()
        except OSError as e:
            raise ContentUnavailable(f"timestamp proof not found: {path}") from e

        try:
            upgraded = self._bounded(lambda: client.upgrade(proof, timeout=self._timeout))
        except concurrent.futures.TimeoutError as e:
            raise AnchorServiceUnavailable(
                f"anchor upgrade timed out after {self._timeout:g}s"
            ) from e

        if upgraded is None or upgraded == proof:
            return False
        _write_atomic(path, upgraded)
        log.info("anchor_upgraded", extra={"proof_path": str(path)})
        return True

    def anchor_info(self, anchor_reference: str) -> Dict[str, Any]:
        client = self._require_client()
        path = Path(anchor_reference)
        try:
            proof = path.read_bytes()
        except OSError as e:
            raise ContentUnavailable(f"timestamp proof not found: {path}") from e
        return client.info(proof)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)


def _write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)
