#!/usr/bin/env python3
"""
ISIN validation plus CUSIP <-> ISIN conversion for US securities.
"""

import re
from typing import Optional

from loguru import logger

from .result import ValidationResult, require_str

ISIN_REGEX = re.compile(r"^[A-Z]{2}[A-Z0-9]{9}[0-9]$")

KNOWN_COUNTRY_CODES = {
    "US", "CA", "GB", "DE", "FR", "JP", "CH", "AU", "NL", "BE", "IT", "ES",
    "HK", "SG", "KR", "TW", "IN", "BR", "MX", "ZA", "IE", "LU", "AT", "DK",
    "SE", "NO", "FI", "PT", "GR", "NZ", "IL", "AE", "SA", "QA", "KW", "BH",
}


def calculate_isin_check_digit(isin: str) -> int:
    """
    Luhn check digit over the first 11 characters, letters expanded to two digits.

    Args:
        isin: ISIN body (at least the 11 characters before the check digit)

    Returns:
        Check digit 0-9
    """
    digits = "".join(
        str(ord(char) - 55) if char.isalpha() else char for char in isin[:11].upper()
    )

    total = 0
    double = True  # rightmost digit is doubled
    for char in reversed(digits):
        digit = int(char)
        if double:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
        double = not double
    return (10 - total % 10) % 10


def validate_isin(value: str) -> ValidationResult:
    """
    Validate an ISIN.

    Args:
        value: Raw ISIN text

    Returns:
        ValidationResult; for US ISINs metadata["cusip"] holds the embedded CUSIP

    Raises:
        TypeError: If value is not a string
    """
    require_str(value, "ISIN")
    cleaned = value.strip().upper()

    if not cleaned:
        return ValidationResult(valid=False, error="ISIN cannot be empty")

    if len(cleaned) != 12:
        return ValidationResult(
            valid=False,
            error=f'Invalid ISIN length: "{value}". Must be exactly 12 characters, got {len(cleaned)}',
        )

    if not ISIN_REGEX.match(cleaned):
        return ValidationResult(
            valid=False,
            error=(
                f'Invalid ISIN format: "{value}". Must be 2 letters (country) '
                "+ 9 alphanumeric (NSIN) + 1 digit (check)"
            ),
        )

    country_code = cleaned[:2]
    check_digit_valid = str(calculate_isin_check_digit(cleaned)) == cleaned[11]
    if not check_digit_valid:
        logger.debug(f"ISIN {cleaned} has invalid check digit")

    return ValidationResult(
        valid=True,
        normalized=cleaned,
        check_digit_valid=check_digit_valid,
        metadata={
            "country_code": country_code,
            "nsin": cleaned[2:11],
            "check_digit": cleaned[11],
            "cusip": cleaned[2:11] if country_code == "US" else None,
            "is_known_country": country_code in KNOWN_COUNTRY_CODES,
        },
    )


def assert_isin(value: str) -> str:
    """Return the normalized ISIN or raise ValueError."""
    result = validate_isin(value)
    if not result.valid:
        raise ValueError(result.error)
    return result.normalized


def cusip_to_isin(cusip: str) -> str:
    """Build the US ISIN for a CUSIP (padded to 9 characters)."""
    require_str(cusip, "CUSIP")
    body = "US" + cusip.strip().upper().ljust(9, "0")[:9]
    return body + str(calculate_isin_check_digit(body))


def isin_to_cusip(isin: str) -> Optional[str]:
    """Embedded CUSIP of a valid US ISIN, otherwise None."""
    result = validate_isin(isin)
    if not result.valid:
        return None
    return result.metadata.get("cusip")
