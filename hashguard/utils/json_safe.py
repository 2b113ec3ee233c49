from __future__ import annotations

from dataclasses import fields, is_dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping
from uuid import UUID


def to_jsonable(obj: Any) -> Any:
    """
    Convert engine results (dataclasses, datetimes, enums) to JSON-serializable values.

    Security considerations:
    - does NOT execute or import anything dynamically.
    - unknown objects fall back to str(), never to repr of internals.

    """
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj

    if isinstance(obj, Enum):
        return obj.value

    # datetime/date -> ISO 8601
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()

    if isinstance(obj, (Path, UUID)):
        return str(obj)

    if isinstance(obj, (bytes, bytearray)):
        return bytes(obj).hex()

    # dataclasses: shallow walk keeps nested datetimes intact for conversion
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}

    if isinstance(obj, Mapping):
        return {str(k): to_jsonable(v) for k, v in obj.items()}

    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_jsonable(x) for x in obj]

    return str(obj)
