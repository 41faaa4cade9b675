"""JSON encoding helpers."""

from __future__ import annotations

import datetime
import enum
import json
from typing import Any, Sequence


def json_default(obj: object) -> object:
    """Fallback encoder for values found in boundary contexts."""
    if isinstance(obj, (datetime.date, datetime.datetime)):
        return obj.isoformat()
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


def canonical_json(fields: Sequence[Any]) -> bytes:
    """Encode an ordered field sequence into the byte string used for signing.

    Fields are serialized as a compact JSON array, so field order is fixed by
    the caller rather than by dict insertion order. Only ``str`` and ``int``
    values are accepted; floats are rejected because their textual form is not
    stable across encoders.
    """
    for value in fields:
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise TypeError(
                f"canonical_json only accepts str and int fields, got {type(value).__name__}"
            )
    return json.dumps(list(fields), separators=(",", ":"), ensure_ascii=True).encode("ascii")


def serialized_size(value: object) -> int:
    """Length of ``value`` once JSON-encoded, used for request-size metrics."""
    return len(json.dumps(value, default=json_default))
