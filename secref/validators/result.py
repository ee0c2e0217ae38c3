"""
Result type shared by the identifier validators.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ValidationResult:
    """Outcome of validating one identifier."""

    valid: bool
    normalized: Optional[str] = None
    error: Optional[str] = None
    check_digit_valid: Optional[bool] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def require_str(value: Any, kind: str) -> str:
    """Non-string input is a programming error, not bad data."""
    if not isinstance(value, str):
        raise TypeError(f"{kind} must be a string, got {type(value).__name__}")
    return value
