#!/usr/bin/env python3
"""
CUSIP validation and normalization.

Accepted inputs:
    - 9 characters: full CUSIP (6 issuer + 2 issue + 1 check digit)
    - 8 characters: CUSIP without check digit, one is computed
    - 6 characters: issuer code, padded with "00" plus a computed check digit

A wrong check digit does not reject the value. Legacy filings carry CUSIPs
with bad check digits, so the result is still valid and reports
``check_digit_valid=False``.
"""

import re

from loguru import logger

from .result import ValidationResult, require_str

CUSIP_REGEX = re.compile(r"^[A-Z0-9]{6,9}$")

_SPECIAL_VALUES = {"*": 36, "@": 37, "#": 38}


def _char_value(char: str) -> int:
    if char.isdigit():
        return int(char)
    if "A" <= char <= "Z":
        return ord(char) - 55  # A=10 ... Z=35
    return _SPECIAL_VALUES.get(char, 0)


def calculate_cusip_check_digit(cusip: str) -> int:
    """
    Calculate the CUSIP check digit from the first 8 characters.

    Args:
        cusip: CUSIP of 6-9 characters; short values are right-padded with "0"

    Returns:
        Check digit 0-9
    """
    chars = cusip[:8].upper().ljust(8, "0")
    total = 0
    for position, char in enumerate(chars):
        value = _char_value(char)
        if position % 2 == 1:
            value *= 2
        total += value // 10 + value % 10
    return (10 - total % 10) % 10


def _has_valid_check_digit(cusip: str) -> bool:
    if len(cusip) < 9:
        return True
    return str(calculate_cusip_check_digit(cusip)) == cusip[8]


def _to_nine_characters(cusip: str) -> str:
    if len(cusip) == 9:
        return cusip
    base = cusip + "00" if len(cusip) == 6 else cusip.ljust(8, "0")
    return base + str(calculate_cusip_check_digit(base))


def validate_cusip(value: str) -> ValidationResult:
    """
    Validate a CUSIP and normalize it to 9 characters.

    Args:
        value: Raw CUSIP text (whitespace and case are ignored)

    Returns:
        ValidationResult with issuer/issue/check digit metadata

    Raises:
        TypeError: If value is not a string
    """
    require_str(value, "CUSIP")
    cleaned = value.strip().upper()

    if not cleaned:
        return ValidationResult(valid=False, error="CUSIP cannot be empty")

    if not CUSIP_REGEX.match(cleaned):
        return ValidationResult(
            valid=False,
            error=f'Invalid CUSIP format: "{value}". Must be 6-9 alphanumeric characters',
        )

    normalized = _to_nine_characters(cleaned)
    check_digit_valid = _has_valid_check_digit(normalized)
    if not check_digit_valid:
        logger.debug(f"CUSIP {normalized} has invalid check digit (may be legacy data)")

    return ValidationResult(
        valid=True,
        normalized=normalized,
        check_digit_valid=check_digit_valid,
        metadata={
            "original_length": len(cleaned),
            "issuer": normalized[:6],
            "issue": normalized[6:8],
            "check_digit": normalized[8:9],
        },
    )


def assert_cusip(value: str) -> str:
    """Return the normalized CUSIP or raise ValueError."""
    result = validate_cusip(value)
    if not result.valid:
        raise ValueError(result.error)
    return result.normalized


def normalize_cusip(value: str) -> str:
    """Strip whitespace, upper-case and cut to 9 characters without validating."""
    return re.sub(r"\s+", "", value).upper()[:9]
