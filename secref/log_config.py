#!/usr/bin/env python3
"""
Loguru setup for the sync jobs.

Installs a single stderr sink whose level comes from LOG_LEVEL. Production
runs (ENVIRONMENT=prod) emit JSON lines. Every record is patched so API keys
and similar values never reach the sink.
"""

import os
import re
import sys
from typing import Optional

from loguru import logger

# exact extra field names, compared lowercased
SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "x-openfigi-apikey",
        "token",
        "access_token",
        "secret",
        "password",
        "authorization",
        "credentials",
    }
)

_REDACTION_PATTERNS = [
    # key=value / key: value for the usual suspects
    re.compile(
        r"((?:api[_-]?key|apikey|token|secret|password|authorization)\s*[=:]\s*)[^\s,}\]]+",
        re.IGNORECASE,
    ),
    re.compile(r"(X-OPENFIGI-APIKEY['\"]?\s*[=:]\s*['\"]?)[^\s,'\"}]+", re.IGNORECASE),
    re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+"),
    # JWTs
    re.compile(r"()eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+"),
    # long opaque keys
    re.compile(r"()\b[A-Za-z0-9]{32,}\b"),
]

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def redact_text(text: str) -> str:
    """Mask credential-looking values inside a log message."""
    for pattern in _REDACTION_PATTERNS:
        text = pattern.sub(r"\1[REDACTED]", text)
    return text


def redact_record(record: dict) -> None:
    """Loguru patcher masking the message and credential fields bound via extra."""
    record["message"] = redact_text(record["message"])
    for key in list(record["extra"].keys()):
        if key.lower() in SENSITIVE_KEYS:
            record["extra"][key] = "[REDACTED]"


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """
    Replace loguru's default sink with the project sink.

    Args:
        level: Minimum level; defaults to LOG_LEVEL or INFO
        json_logs: Serialize records as JSON; defaults to True when ENVIRONMENT=prod
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_logs is None:
        json_logs = os.getenv("ENVIRONMENT", "") == "prod"

    logger.remove()
    logger.configure(patcher=redact_record)
    if json_logs:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=DEFAULT_FORMAT, colorize=True)
