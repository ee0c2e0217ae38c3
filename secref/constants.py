#!/usr/bin/env python3
"""
Shared constants for identifier resolution and SEC filing sync.
"""

SEC_BASE_URL = "https://www.sec.gov"
SEC_ARCHIVES_URL = f"{SEC_BASE_URL}/Archives/edgar"
SEC_RSS_URL = f"{SEC_BASE_URL}/cgi-bin/browse-edgar"
DEFAULT_USER_AGENT = "SecRef Sync admin@example.com"

OPENFIGI_MAPPING_URL = "https://api.openfigi.com/v3/mapping"

# OpenFIGI quotas (requests per rolling minute)
OPENFIGI_RATE_LIMIT_NO_KEY = 25
OPENFIGI_RATE_LIMIT_WITH_KEY = 250
OPENFIGI_BATCH_SIZE = 10
OPENFIGI_CONCURRENCY = 2

# Mapping cache TTLs in seconds
TRANSIENT_ERROR_TTL = 60 * 60
PERMANENT_ERROR_TTL = 30 * 24 * 60 * 60

PERMANENT_ERROR_MESSAGES = (
    "No mapping found",
    "No matching result",
    "No identifier found.",
)

# Form type groups as they appear in form.idx and the Atom feeds
FORM_13F_TYPES = ["13F-HR", "13F-HR/A", "13F-NT", "13F-NT/A"]
SCHEDULE_13_TYPES = [
    "SC 13D",
    "SC 13D/A",
    "SC 13G",
    "SC 13G/A",
    "SCHEDULE 13D",
    "SCHEDULE 13D/A",
    "SCHEDULE 13G",
    "SCHEDULE 13G/A",
]
FORM_345_TYPES = ["3", "4", "5"]

# Sync sources
SOURCE_BULK_13F = "bulk-13F"
SOURCE_DAILY_SCHEDULE13 = "daily-schedule13"
SOURCE_RSS_13F = "rss-13f"
SOURCE_RSS_SCHEDULE13 = "rss-schedule13"
SOURCE_RSS_FORM4 = "rss-form4"

ALL_SOURCES = [
    SOURCE_BULK_13F,
    SOURCE_DAILY_SCHEDULE13,
    SOURCE_RSS_13F,
    SOURCE_RSS_SCHEDULE13,
    SOURCE_RSS_FORM4,
]

# Tables written by the sync, with their key columns and filing date column
TABLE_KEYS = {
    "submissions_13f": ["accession_number"],
    "holdings_13f": ["accession_number", "row_number"],
    "filings_13dg": ["accession_number"],
    "form345_submissions": ["accession_number"],
    "form345_reporting_owners": ["accession_number", "owner_cik"],
    "form345_nonderiv_trans": ["accession_number", "trans_sk"],
}
PRUNABLE_TABLES = ["submissions_13f", "filings_13dg", "form345_submissions"]

# Child tables pruned together with their header table (joined on accession_number)
CHILD_TABLES = {
    "submissions_13f": ["holdings_13f"],
    "form345_submissions": ["form345_reporting_owners", "form345_nonderiv_trans"],
}
