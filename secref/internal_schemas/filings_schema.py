#!/usr/bin/env python3
"""
Pandera schema definitions for the filing rows written by the sync.

Each schema mirrors one table in ``secref.db_models``. Rows are validated as a
DataFrame before they are handed to the storage sink.
"""

from typing import Dict, List, Type

import pandas as pd
import pandera.pandas as pa
from pandera.typing import Series

ACCESSION_REGEX = r"^\d{10}-\d{2}-\d{6}$"
ISO_DATE_REGEX = r"^\d{4}-\d{2}-\d{2}$"
CIK_REGEX = r"^\d{1,10}$"


class Submission13FSchema(pa.DataFrameModel):
    """Schema for submissions_13f rows (one per 13F filing)."""

    accession_number: Series[str] = pa.Field(str_matches=ACCESSION_REGEX, unique=True)
    cik: Series[str] = pa.Field(str_matches=CIK_REGEX, description="Filer CIK without leading zeros")
    submission_type: Series[str] = pa.Field(description="13F-HR, 13F-HR/A, 13F-NT, ...")
    period_of_report: Series[str] = pa.Field(nullable=True)
    filing_date: Series[str] = pa.Field(str_matches=ISO_DATE_REGEX)
    filer_name: Series[str] = pa.Field(nullable=True)

    class Config:
        strict = True
        coerce = True


class Holding13FSchema(pa.DataFrameModel):
    """Schema for holdings_13f rows parsed from information tables."""

    accession_number: Series[str] = pa.Field(str_matches=ACCESSION_REGEX)
    row_number: Series[int] = pa.Field(ge=1)
    cusip: Series[str] = pa.Field(nullable=True, str_length={"max_value": 9})
    name_of_issuer: Series[str] = pa.Field(nullable=True)
    title_of_class: Series[str] = pa.Field(nullable=True)
    value: Series[float] = pa.Field(description="Reported market value")
    shares: Series[float] = pa.Field(ge=0)
    shares_type: Series[str] = pa.Field(nullable=True, description="SH or PRN")
    put_call: Series[str] = pa.Field(nullable=True)
    investment_discretion: Series[str] = pa.Field(nullable=True)
    voting_auth_sole: Series[float] = pa.Field(ge=0)
    voting_auth_shared: Series[float] = pa.Field(ge=0)
    voting_auth_none: Series[float] = pa.Field(ge=0)

    class Config:
        strict = True
        coerce = True
        unique = ["accession_number", "row_number"]


class Filing13DGSchema(pa.DataFrameModel):
    """Schema for filings_13dg rows built from Schedule 13D/13G headers."""

    accession_number: Series[str] = pa.Field(str_matches=ACCESSION_REGEX, unique=True)
    form_type: Series[str] = pa.Field(str_contains="13")
    filing_date: Series[str] = pa.Field(str_matches=ISO_DATE_REGEX)
    issuer_cik: Series[str] = pa.Field(nullable=True)
    issuer_name: Series[str] = pa.Field(nullable=True)
    issuer_sic: Series[str] = pa.Field(nullable=True)
    issuer_cusip: Series[str] = pa.Field(nullable=True, str_length={"max_value": 9})
    filed_by_cik: Series[str] = pa.Field(nullable=True)
    filed_by_name: Series[str] = pa.Field(nullable=True)
    securities_class_title: Series[str] = pa.Field(nullable=True)
    percent_of_class: Series[float] = pa.Field(ge=0, le=100)
    shares_owned: Series[float] = pa.Field(ge=0)

    class Config:
        strict = True
        coerce = True


class Form345SubmissionSchema(pa.DataFrameModel):
    """Schema for form345_submissions rows."""

    accession_number: Series[str] = pa.Field(str_matches=ACCESSION_REGEX, unique=True)
    filing_date: Series[str] = pa.Field(str_matches=ISO_DATE_REGEX)
    period_of_report: Series[str] = pa.Field(nullable=True)
    document_type: Series[str] = pa.Field(nullable=True)
    issuer_cik: Series[str] = pa.Field(str_matches=CIK_REGEX)
    issuer_name: Series[str] = pa.Field(nullable=True)
    issuer_trading_symbol: Series[str] = pa.Field(nullable=True)
    no_securities_owned: Series[str] = pa.Field(nullable=True)
    not_subject_sec16: Series[str] = pa.Field(nullable=True)
    remarks: Series[str] = pa.Field(nullable=True)

    class Config:
        strict = True
        coerce = True


class Form345ReportingOwnerSchema(pa.DataFrameModel):
    """Schema for form345_reporting_owners rows."""

    accession_number: Series[str] = pa.Field(str_matches=ACCESSION_REGEX)
    owner_cik: Series[str] = pa.Field(str_matches=CIK_REGEX)
    owner_name: Series[str] = pa.Field(nullable=True)
    owner_relationship: Series[str] = pa.Field(nullable=True)
    officer_title: Series[str] = pa.Field(nullable=True)
    street1: Series[str] = pa.Field(nullable=True)
    city: Series[str] = pa.Field(nullable=True)
    state: Series[str] = pa.Field(nullable=True)
    zip_code: Series[str] = pa.Field(nullable=True)

    class Config:
        strict = True
        coerce = True
        unique = ["accession_number", "owner_cik"]


class Form345NonDerivTransSchema(pa.DataFrameModel):
    """Schema for form345_nonderiv_trans rows."""

    accession_number: Series[str] = pa.Field(str_matches=ACCESSION_REGEX)
    trans_sk: Series[int] = pa.Field(ge=1)
    security_title: Series[str] = pa.Field(nullable=True)
    trans_date: Series[str] = pa.Field(nullable=True)
    trans_code: Series[str] = pa.Field(nullable=True)
    trans_shares: Series[float] = pa.Field()
    trans_price_per_share: Series[float] = pa.Field()
    trans_acquired_disp_cd: Series[str] = pa.Field(nullable=True)
    shares_owned_following: Series[float] = pa.Field()
    direct_indirect_ownership: Series[str] = pa.Field(nullable=True)

    class Config:
        strict = True
        coerce = True
        unique = ["accession_number", "trans_sk"]


TABLE_SCHEMAS: Dict[str, Type[pa.DataFrameModel]] = {
    "submissions_13f": Submission13FSchema,
    "holdings_13f": Holding13FSchema,
    "filings_13dg": Filing13DGSchema,
    "form345_submissions": Form345SubmissionSchema,
    "form345_reporting_owners": Form345ReportingOwnerSchema,
    "form345_nonderiv_trans": Form345NonDerivTransSchema,
}


def validate_rows(schema: Type[pa.DataFrameModel], rows: List[Dict]) -> List[Dict]:
    """
    Validate storage rows against a table schema.

    Args:
        schema: One of the DataFrameModel classes above
        rows: Row dicts keyed by column name

    Returns:
        The rows, unchanged

    Raises:
        pandera.errors.SchemaErrors: If any row violates the schema
    """
    if not rows:
        return rows
    schema.validate(pd.DataFrame(rows), lazy=True)
    return rows
