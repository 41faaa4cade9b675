"""Logging helpers for the n8n MCP security core."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from n8n_mcp_security.config import load_settings

_logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# HTTP client and form parsers pulled in by starlette; their DEBUG output can
# echo request bodies and Authorization headers.
_QUIET_LOGGERS = ("httpx", "httpcore", "multipart", "python_multipart")

# AUDIT lines are also kept at INFO when the root level is raised.
_AUDIT_LOGGER = "n8n_mcp_security.audit"


def configure_logging() -> None:
    """Configure process-wide logging from settings."""
    settings = load_settings()
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [_with_format(logging.StreamHandler(sys.stderr))]

    if settings.logging.file:
        try:
            Path(settings.logging.file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(_with_format(logging.FileHandler(settings.logging.file)))
        except OSError as exc:
            _logger.warning("Failed to open log file %s: %s", settings.logging.file, exc)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    logging.getLogger(_AUDIT_LOGGER).setLevel(min(level, logging.INFO))


def _with_format(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    return handler
