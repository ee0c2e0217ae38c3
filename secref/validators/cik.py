#!/usr/bin/env python3
"""
CIK validation. EDGAR writes CIKs both zero-padded and bare.
"""

import re

from .result import ValidationResult, require_str

CIK_REGEX = re.compile(r"^\d{1,10}$")


def validate_cik(value: str) -> ValidationResult:
    """Validate a CIK; the normalized form has no leading zeros."""
    require_str(value, "CIK")
    cleaned = value.strip()

    if not cleaned:
        return ValidationResult(valid=False, error="CIK cannot be empty")

    if not CIK_REGEX.match(cleaned):
        return ValidationResult(
            valid=False,
            error=f'Invalid CIK format: "{value}". Must be 1-10 digits',
        )

    normalized = cleaned.lstrip("0") or "0"
    return ValidationResult(
        valid=True,
        normalized=normalized,
        metadata={"padded": normalized.zfill(10)},
    )


def normalize_cik(value: str) -> str:
    """Strip leading zeros, keeping a single "0" for an all-zero CIK."""
    return str(value).strip().lstrip("0") or "0"


def pad_cik(value: str) -> str:
    """Zero-pad to the 10 digits used in EDGAR API URLs."""
    return normalize_cik(value).zfill(10)
