from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

log = logging.getLogger("hashguard.api")

REQUEST_ID_HEADER = "X-Request-ID"

_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._-]{1,128}")

# Routes that address one evidence record; by-hash and file lookups do not.
_EVIDENCE_PATH_RE = re.compile(
    r"^/(?:evidence|verification|custody/evidence|timestamp/upgrade)/(?P<evidence_id>[^/]+)(?:/|$)"
)
_NOT_AN_ID = frozenset({"by-hash", "file"})


def evidence_id_from_path(path: str) -> Optional[str]:
    m = _EVIDENCE_PATH_RE.match(path)
    if m is None or m.group("evidence_id") in _NOT_AN_ID:
        return None
    return m.group("evidence_id")


class CustodyAuditMiddleware(BaseHTTPMiddleware):
    """Request id plus one audit line per request.

    The line carries the evidence id and the authenticated custody actor, so
    an API call can be matched to the custody entries it produced.

    Security notes:
    - A client X-Request-ID is kept only if short and made of safe
      characters; otherwise a fresh one is generated (log injection).
    - Never logs bodies, uploaded file names or API keys.

    """

    async def dispatch(self, request: Request, call_next: Callable):
        rid = request.headers.get(REQUEST_ID_HEADER)
        if not rid or not _REQUEST_ID_RE.fullmatch(rid):
            rid = uuid4().hex
        request.state.request_id = rid

        start = time.monotonic()
        response: Optional[Response] = None
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = rid
            return response
        finally:
            evidence_id = evidence_id_from_path(request.url.path)
            log.info(
                "api_request",
                extra={
                    "request_id": rid,
                    "actor_id": getattr(request.state, "actor_id", None),
                    "evidence_id": evidence_id,
                    "custody_write": evidence_id is not None and request.method == "POST",
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": getattr(response, "status_code", None),
                    "duration_ms": int((time.monotonic() - start) * 1000),
                },
            )
