"""Logging helpers with secret redaction."""

from __future__ import annotations

import logging
import re
from typing import Iterable

_REDACTIONS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_.]+"), "Bearer [REDACTED]"),
    (re.compile(r"sk-[A-Za-z0-9\-_]{8,}"), "sk-[REDACTED]"),
]

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_default_level: str | int = logging.INFO


def redact(text: str, extra_secrets: Iterable[str] | None = None) -> str:
    """Redact bearer tokens, API keys and explicit secrets from text."""
    redacted = text
    for pattern, replacement in _REDACTIONS:
        redacted = pattern.sub(replacement, redacted)
    if extra_secrets:
        for secret in extra_secrets:
            if secret:
                redacted = redacted.replace(secret, "[REDACTED]")
    return redacted


def get_logger(name: str, level: str | int | None = None) -> logging.Logger:
    """Return a logger under the patchforge namespace with one stream handler."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(_default_level)
    if level is not None:
        logger.setLevel(level)
    return logger


def set_log_level(level: str | int) -> None:
    """Apply a level to every patchforge logger, including ones created later."""
    global _default_level
    if isinstance(level, str):
        level = level.upper()
    _default_level = level
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith("patchforge") and isinstance(logger, logging.Logger):
            logger.setLevel(level)
