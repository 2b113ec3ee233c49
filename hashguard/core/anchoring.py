from __future__ import annotations

import json
import logging
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from opentimestamps.calendar import CommitmentNotFoundError, RemoteCalendar
from opentimestamps.core.notary import BitcoinBlockHeaderAttestation, PendingAttestation
from opentimestamps.core.op import OpSHA256
from opentimestamps.core.serialize import BytesDeserializationContext, BytesSerializationContext
from opentimestamps.core.timestamp import DetachedTimestampFile, Timestamp

from hashguard.errors import AnchorServiceUnavailable

log = logging.getLogger("hashguard.timestamping")

USER_AGENT = "hashguard"

STATUS_CONFIRMED = "confirmed"
STATUS_PENDING = "pending"
STATUS_INVALID = "invalid"
STATUS_UNAVAILABLE = "unavailable"

# Reported for an anchor reference whose client is unknown or not configured.
EXTERNAL_SOURCE = "external"


@dataclass(frozen=True)
class AnchorStatus:
    """Outcome of checking one anchor proof against a digest."""

    is_valid: bool
    status: str
    anchor_time: Optional[datetime] = None
    anchor_height: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class BlockHeaderInfo:
    height: int
    merkle_root: str
    time: datetime


class AnchorClient(ABC):
    """External timestamp-anchoring protocol, as the Timestamp Verifier consumes it.

    Proofs are opaque bytes stored by the caller. All methods may block on
    the network; the caller bounds them with a timeout.
    """

    source: str = EXTERNAL_SOURCE

    @abstractmethod
    def stamp(self, digest: bytes, *, timeout: float) -> bytes:
        """Submit a digest; return a (possibly pending) proof."""

    @abstractmethod
    def verify(self, proof: bytes, digest: bytes, *, timeout: float) -> AnchorStatus:
        """Check a proof commits to digest and is anchored."""

    @abstractmethod
    def upgrade(self, proof: bytes, *, timeout: float) -> Optional[bytes]:
        """Return a strengthened proof, or None when nothing changed or already final."""

    @abstractmethod
    def info(self, proof: bytes) -> Dict[str, Any]:
        """Describe a proof without network access."""


def _get_json(url: str, *, timeout: float) -> Any:
    """GET a URL and decode JSON (or plain text when not JSON).

    Security notes:
    - Uses default SSL context (verification ON).
    - Response bodies are untrusted input.
    """

    req = Request(url=url, method="GET", headers={"User-Agent": USER_AGENT})
    ctx = ssl.create_default_context()
    try:
        with urlopen(req, context=ctx, timeout=timeout) as resp:
            body = resp.read()
    except HTTPError as e:
        raise RuntimeError(f"block explorer returned HTTP {e.code} for {url}") from e
    except URLError as e:
        raise RuntimeError(f"network error: {e.reason}") from e

    text = body.decode("utf-8", errors="strict").strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class EsploraBlockSource:
    """Block header lookup against an Esplora-style REST API.

    GET {base}/block-height/{h} -> block hash (text)
    GET {base}/block/{hash}     -> {"merkle_root": ..., "timestamp": ...}
    """

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def __call__(self, height: int, *, timeout: float) -> BlockHeaderInfo:
        block_hash = _get_json(f"{self.base_url}/block-height/{int(height)}", timeout=timeout)
        if not isinstance(block_hash, str) or not block_hash:
            raise RuntimeError(f"no block at height {height}")
        block = _get_json(f"{self.base_url}/block/{quote(block_hash)}", timeout=timeout)
        if not isinstance(block, dict):
            raise RuntimeError("unexpected block payload")
        return BlockHeaderInfo(
            height=int(height),
            merkle_root=str(block.get("merkle_root", "")).lower(),
            time=datetime.fromtimestamp(int(block["timestamp"]), tz=timezone.utc),
        )


BlockSource = Callable[..., BlockHeaderInfo]


def serialize_proof(dtf: DetachedTimestampFile) -> bytes:
    ctx = BytesSerializationContext()
    dtf.serialize(ctx)
    return ctx.getbytes()


def deserialize_proof(data: bytes) -> DetachedTimestampFile:
    return DetachedTimestampFile.deserialize(BytesDeserializationContext(bytes(data)))


def _walk(timestamp: Timestamp) -> Iterator[Timestamp]:
    yield timestamp
    for sub in timestamp.ops.values():
        yield from _walk(sub)


def _bitcoin_attestations(timestamp: Timestamp) -> List[Tuple[bytes, BitcoinBlockHeaderAttestation]]:
    return [
        (msg, att)
        for msg, att in timestamp.all_attestations()
        if isinstance(att, BitcoinBlockHeaderAttestation)
    ]


class OpenTimestampsClient(AnchorClient):
    """OpenTimestamps calendars + Bitcoin block headers.

    - stamp: submit the digest to every configured calendar, merge what answers
    - verify: find a Bitcoin attestation, check its merkle root against the block
    - upgrade: ask calendars to complete pending attestations

    Security notes:
    - Pending attestations are only followed to configured calendar URLs.
    - A proof with only pending attestations is reported as pending, never valid.

    """

    source = "OpenTimestamps"

    def __init__(
        self,
        calendar_urls: Sequence[str],
        *,
        block_source: Optional[BlockSource] = None,
        calendar_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.calendar_urls = [u.rstrip("/") for u in calendar_urls if u]
        self._block_source = block_source
        self._calendar_factory = calendar_factory or (
            lambda url: RemoteCalendar(url, user_agent=USER_AGENT)
        )

    def stamp(self, digest: bytes, *, timeout: float) -> bytes:
        if not self.calendar_urls:
            raise AnchorServiceUnavailable("no OpenTimestamps calendars configured")

        dtf = DetachedTimestampFile(OpSHA256(), Timestamp(bytes(digest)))
        merged = 0
        for url in self.calendar_urls:
            try:
                calendar_ts = self._calendar_factory(url).submit(bytes(digest), timeout=timeout)
                dtf.timestamp.merge(calendar_ts)
                merged += 1
            except Exception as e:
                log.warning("calendar_submit_failed", extra={"calendar": url, "error": str(e)})
        if merged == 0:
            raise AnchorServiceUnavailable("no calendar accepted the digest")
        return serialize_proof(dtf)

    def verify(self, proof: bytes, digest: bytes, *, timeout: float) -> AnchorStatus:
        try:
            dtf = deserialize_proof(proof)
        except Exception as e:
            return AnchorStatus(False, STATUS_INVALID, error=f"Unreadable timestamp proof: {e}")

        if dtf.file_digest != bytes(digest):
            return AnchorStatus(False, STATUS_INVALID, error="Timestamp proof does not commit to this digest")

        attested = _bitcoin_attestations(dtf.timestamp)
        if not attested:
            return AnchorStatus(False, STATUS_PENDING, error="Timestamp not yet confirmed on the blockchain")

        msg, att = min(attested, key=lambda pair: pair[1].height)
        if self._block_source is None:
            return AnchorStatus(
                False,
                STATUS_UNAVAILABLE,
                anchor_height=att.height,
                error="No block source configured to confirm the attestation",
            )
        try:
            header = self._block_source(att.height, timeout=timeout)
        except Exception as e:
            return AnchorStatus(
                False, STATUS_UNAVAILABLE, anchor_height=att.height, error=f"Block lookup failed: {e}"
            )

        # Explorers show the merkle root in display (reversed) byte order.
        if header.merkle_root != msg[::-1].hex():
            return AnchorStatus(
                False,
                STATUS_INVALID,
                anchor_height=att.height,
                error=f"Attested merkle root does not match block {att.height}",
            )
        return AnchorStatus(True, STATUS_CONFIRMED, anchor_time=header.time, anchor_height=att.height)

    def upgrade(self, proof: bytes, *, timeout: float) -> Optional[bytes]:
        dtf = deserialize_proof(proof)
        if _bitcoin_attestations(dtf.timestamp):
            return None

        pending: List[Tuple[Timestamp, PendingAttestation]] = [
            (sub, att)
            for sub in _walk(dtf.timestamp)
            for att in sub.attestations
            if isinstance(att, PendingAttestation)
        ]

        changed = False
        for sub, att in pending:
            uri = str(att.uri).rstrip("/")
            if uri not in self.calendar_urls:
                log.warning("calendar_not_allowed", extra={"calendar": uri})
                continue
            try:
                upgraded = self._calendar_factory(uri).get_timestamp(sub.msg, timeout=timeout)
            except CommitmentNotFoundError:
                continue
            except Exception as e:
                log.warning("calendar_upgrade_failed", extra={"calendar": uri, "error": str(e)})
                continue
            sub.merge(upgraded)
            changed = True

        return serialize_proof(dtf) if changed else None

    def info(self, proof: bytes) -> Dict[str, Any]:
        dtf = deserialize_proof(proof)
        calendars = sorted(
            {
                str(att.uri)
                for _msg, att in dtf.timestamp.all_attestations()
                if isinstance(att, PendingAttestation)
            }
        )
        return {
            "file_hash": dtf.file_digest.hex(),
            "is_pending": not _bitcoin_attestations(dtf.timestamp),
            "calendars": calendars or list(self.calendar_urls),
            "size": len(proof),
        }
