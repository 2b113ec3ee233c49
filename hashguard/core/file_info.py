from __future__ import annotations

import mimetypes
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

SNIFF_PREFIX_BYTES = 512


@dataclass(frozen=True, slots=True)
class FileInfo:
    """Bounded, metadata-only view of an evidence file.

    Stored as the opaque enrichment document of an evidence record; the
    verification engine never reads it.

    Security notes:
    - File contents are untrusted.
    - Sniffing reads only a small prefix (bounded).

    """

    size_bytes: int
    extension: str
    mime_type: str
    mime_confidence: str  # "high" | "medium" | "low"

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "size_bytes": self.size_bytes,
            "extension": self.extension,
            "mime_type": self.mime_type,
            "mime_confidence": self.mime_confidence,
        }


def sniff_file_info(
    path: str, *, filename: Optional[str] = None, prefix_bytes: int = SNIFF_PREFIX_BYTES
) -> FileInfo:
    """Describe a file from its size, name and first bytes.

    filename is the client-supplied name; it only drives the low-confidence
    guess, magic bytes win over it.
    """

    st = os.stat(path)
    name = filename or path
    ext = os.path.splitext(name)[1].lower()

    guessed_mime, _enc = mimetypes.guess_type(name)
    mime = guessed_mime or "application/octet-stream"
    confidence = "low"

    try:
        with open(path, "rb") as f:
            head = f.read(prefix_bytes)
    except OSError:
        return FileInfo(size_bytes=int(st.st_size), extension=ext, mime_type=mime, mime_confidence=confidence)

    magic = _magic_mime(head)
    if magic is not None:
        mime, confidence = magic, "high"
    elif _looks_like_json(head):
        mime, confidence = "application/json", "medium"

    return FileInfo(size_bytes=int(st.st_size), extension=ext, mime_type=mime, mime_confidence=confidence)


def _magic_mime(prefix: bytes) -> Optional[str]:
    if prefix.startswith(b"%PDF-"):
        return "application/pdf"
    if prefix.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if prefix.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if prefix.startswith(b"GIF87a") or prefix.startswith(b"GIF89a"):
        return "image/gif"
    if prefix[:4] in (b"II*\x00", b"MM\x00*"):
        return "image/tiff"
    if prefix[4:8] == b"ftyp":
        return "video/mp4"
    if prefix.startswith(b"RIFF") and prefix[8:12] == b"WAVE":
        return "audio/wav"
    if prefix.startswith(b"PK\x03\x04"):
        return "application/zip"
    if prefix.startswith(b"\x1f\x8b"):
        return "application/gzip"
    return None


def _looks_like_json(prefix: bytes) -> bool:
    # Leading non-whitespace only; never parses.
    p = prefix[3:] if prefix.startswith(b"\xef\xbb\xbf") else prefix
    p = p.lstrip()
    return p.startswith(b"{") or p.startswith(b"[")
