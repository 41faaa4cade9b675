"""Clock helpers. Stores take an injectable ``clock`` that defaults to ``epoch_seconds``."""

from __future__ import annotations

import time
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def epoch_seconds() -> float:
    return time.time()


def to_millis(seconds: float) -> int:
    return int(seconds * 1000)


def from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
