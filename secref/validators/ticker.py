#!/usr/bin/env python3
"""
Ticker symbol validation.

Accepts 1-5 alphanumeric base symbols with an optional share class suffix
(".B", ".WS") or preferred suffix ("-PA"), 10 characters at most.
"""

import re

from .result import ValidationResult, require_str

TICKER_REGEX = re.compile(r"^([A-Z0-9]{1,5})(\.[A-Z]{1,3}|-P[A-Z])?$")
STRICT_TICKER_REGEX = re.compile(r"^[A-Z]{1,5}(\.[A-Z])?$")
MAX_TICKER_LENGTH = 10


def validate_ticker(value: str) -> ValidationResult:
    """
    Validate a ticker symbol.

    Raises:
        TypeError: If value is not a string
    """
    require_str(value, "Ticker")
    cleaned = value.strip().upper()

    if not cleaned:
        return ValidationResult(valid=False, error="Ticker cannot be empty")

    if len(cleaned) > MAX_TICKER_LENGTH:
        return ValidationResult(
            valid=False,
            error=f'Invalid ticker length: "{value}". Maximum {MAX_TICKER_LENGTH} characters including suffix.',
        )

    match = TICKER_REGEX.match(cleaned)
    if not match:
        return ValidationResult(
            valid=False,
            error=(
                f'Invalid ticker format: "{value}". Must be 1-5 alphanumeric characters, '
                "optionally followed by share class (.XX) or preferred (-PX)"
            ),
        )

    suffix = match.group(2)
    return ValidationResult(
        valid=True,
        normalized=cleaned,
        metadata={
            "base_ticker": match.group(1),
            "suffix": suffix,
            "is_preferred": bool(suffix and suffix.startswith("-P")),
            "is_share_class": bool(suffix and suffix.startswith(".")),
            "is_strict_format": bool(STRICT_TICKER_REGEX.match(cleaned)),
        },
    )


def validate_ticker_strict(value: str) -> ValidationResult:
    """Only plain letters with an optional single-letter share class pass."""
    result = validate_ticker(value)
    if not result.valid:
        return result

    if not result.metadata["is_strict_format"]:
        return ValidationResult(
            valid=False,
            error=(
                f'Ticker "{value}" uses extended format. For strict validation, '
                "use 1-5 letters with optional .X suffix."
            ),
        )
    return result
