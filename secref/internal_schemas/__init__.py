"""
Internal schemas for synced filing rows using Pandera
"""

from .filings_schema import (
    TABLE_SCHEMAS,
    Filing13DGSchema,
    Form345NonDerivTransSchema,
    Form345ReportingOwnerSchema,
    Form345SubmissionSchema,
    Holding13FSchema,
    Submission13FSchema,
    validate_rows,
)

__all__ = [
    "TABLE_SCHEMAS",
    "Filing13DGSchema",
    "Form345NonDerivTransSchema",
    "Form345ReportingOwnerSchema",
    "Form345SubmissionSchema",
    "Holding13FSchema",
    "Submission13FSchema",
    "validate_rows",
]
