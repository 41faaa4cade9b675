"""Masking helpers for audit metadata, boundary details and log lines.

``redact_sensitive_fields`` returns a copy of a JSON-like value with every
credential-looking key replaced by a mask. ``sanitize_log_value`` strips
control characters from user-supplied strings before they reach a log line.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

_MAX_REDACT_DEPTH = 20

# Substrings matched case-insensitively against mapping keys.
SENSITIVE_KEY_MARKERS: tuple[str, ...] = (
    "password",
    "secret",
    "token",
    "apikey",
    "api_key",
    "credential",
    "authorization",
    "signature",
)

_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


def sanitize_log_value(value: object) -> str:
    """Replace control characters (tab excepted) with ``_``."""
    return _CONTROL_CHAR_RE.sub("_", str(value))


def is_sensitive_key(key: object) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in SENSITIVE_KEY_MARKERS)


def redact_sensitive_fields(
    value: object,
    *,
    mask: str = "***",
    depth: int = 0,
    max_depth: int = _MAX_REDACT_DEPTH,
) -> object:
    """Copy ``value`` with sensitive mapping entries masked.

    Tuples come back as lists. Anything nested deeper than ``max_depth`` is
    replaced wholesale by ``mask``.
    """
    if depth >= max_depth:
        return mask
    if isinstance(value, Mapping):
        return {
            key: mask
            if is_sensitive_key(key)
            else redact_sensitive_fields(item, mask=mask, depth=depth + 1, max_depth=max_depth)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [
            redact_sensitive_fields(item, mask=mask, depth=depth + 1, max_depth=max_depth)
            for item in value
        ]
    return value
