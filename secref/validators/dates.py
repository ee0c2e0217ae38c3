#!/usr/bin/env python3
"""
Quarter and filing date helpers.

EDGAR mixes date formats: form.idx uses YYYY-MM-DD, SEC headers use YYYYMMDD
and the bulk data sets use DD-MMM-YYYY.
"""

import re
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple, Union

from .result import ValidationResult, require_str

QUARTER_REGEX = re.compile(r"^(\d{4})Q([1-4])$")
MIN_QUARTER_YEAR = 1990
MAX_QUARTER_YEAR = 2050

_DD_MMM_YYYY = re.compile(r"^(\d{1,2})-([A-Za-z]{3})-(\d{4})$")
_MONTHS = {
    "JAN": 1, "FEB": 2, "MAR": 3, "APR": 4, "MAY": 5, "JUN": 6,
    "JUL": 7, "AUG": 8, "SEP": 9, "OCT": 10, "NOV": 11, "DEC": 12,
}


def validate_quarter(value: str) -> ValidationResult:
    """Validate a YYYYQN quarter label such as 2024Q1."""
    require_str(value, "Quarter")
    cleaned = value.strip().upper()

    if not cleaned:
        return ValidationResult(valid=False, error="Quarter cannot be empty")

    match = QUARTER_REGEX.match(cleaned)
    if not match:
        return ValidationResult(
            valid=False,
            error=f'Invalid quarter format: "{value}". Must be YYYYQN (e.g., 2024Q1)',
        )

    year = int(match.group(1))
    if year < MIN_QUARTER_YEAR or year > MAX_QUARTER_YEAR:
        return ValidationResult(
            valid=False,
            error=f'Invalid year in quarter: "{value}". Year must be between {MIN_QUARTER_YEAR}-{MAX_QUARTER_YEAR}',
        )

    return ValidationResult(
        valid=True,
        normalized=cleaned,
        metadata={"year": year, "quarter": int(match.group(2))},
    )


def parse_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    """
    Parse the date formats found in EDGAR data.

    Args:
        value: DD-MMM-YYYY, YYYY-MM-DD, YYYYMMDD, an ISO timestamp or a date

    Returns:
        The date, or None for empty input

    Raises:
        ValueError: If the text is not a recognizable date
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = value.strip()
    if not text:
        return None

    match = _DD_MMM_YYYY.match(text)
    if match and match.group(2).upper() in _MONTHS:
        return date(int(match.group(3)), _MONTHS[match.group(2).upper()], int(match.group(1)))

    if re.match(r"^\d{8}$", text):
        return datetime.strptime(text, "%Y%m%d").date()

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        raise ValueError(f"Unable to parse date: {value}") from None


def date_to_quarter(value: Union[str, date]) -> Tuple[int, int]:
    """(year, quarter) containing the given date."""
    day = parse_date(value)
    return day.year, (day.month - 1) // 3 + 1


def quarter_start(year: int, quarter: int) -> date:
    return date(year, 3 * (quarter - 1) + 1, 1)


def quarter_end(year: int, quarter: int) -> date:
    if quarter == 4:
        return date(year, 12, 31)
    return quarter_start(year, quarter + 1) - timedelta(days=1)


def quarters_between(start: Union[str, date], end: Union[str, date]) -> List[Tuple[int, int]]:
    """
    Every quarter from the one containing ``start`` through the one containing ``end``.

    Returns an empty list when start is after end.
    """
    year, quarter = date_to_quarter(start)
    end_year, end_quarter = date_to_quarter(end)

    quarters = []
    while (year, quarter) <= (end_year, end_quarter):
        quarters.append((year, quarter))
        quarter += 1
        if quarter > 4:
            quarter = 1
            year += 1
    return quarters
