"""
Identifier validators for CUSIP, ISIN, ticker and CIK values.

Validators are pure functions returning a ValidationResult. Malformed input
yields ``valid=False`` with a readable ``error``; only non-string input raises.
"""

from .cik import normalize_cik, pad_cik, validate_cik
from .cusip import assert_cusip, calculate_cusip_check_digit, normalize_cusip, validate_cusip
from .dates import (
    date_to_quarter,
    parse_date,
    quarter_end,
    quarter_start,
    quarters_between,
    validate_quarter,
)
from .isin import (
    assert_isin,
    calculate_isin_check_digit,
    cusip_to_isin,
    isin_to_cusip,
    validate_isin,
)
from .result import ValidationResult
from .ticker import validate_ticker, validate_ticker_strict

__all__ = [
    "ValidationResult",
    "assert_cusip",
    "assert_isin",
    "calculate_cusip_check_digit",
    "calculate_isin_check_digit",
    "cusip_to_isin",
    "date_to_quarter",
    "isin_to_cusip",
    "normalize_cik",
    "normalize_cusip",
    "pad_cik",
    "parse_date",
    "quarter_end",
    "quarter_start",
    "quarters_between",
    "validate_cik",
    "validate_cusip",
    "validate_isin",
    "validate_quarter",
    "validate_ticker",
    "validate_ticker_strict",
]
