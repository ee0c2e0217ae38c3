#!/usr/bin/env python3
"""
Core data types: identifier mappings, securities master records,
sync watermarks and EDGAR index/feed entries.

A mapping result is either a MappingSuccess or a MappingFailure. The two are
separate types so a record can never carry a ticker and an error at once.
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from secref.constants import (
    PERMANENT_ERROR_MESSAGES,
    PERMANENT_ERROR_TTL,
    TRANSIENT_ERROR_TTL,
)

# Failure classes
TRANSIENT = "transient"
PERMANENT = "permanent"

# Securities master provenance, lowest precedence first
SOURCE_FILING = "filing"
SOURCE_EXTERNAL_MAPPING = "external-mapping"
SOURCE_MANUAL = "manual"
SOURCE_MERGED = "merged"
SOURCE_PRECEDENCE = {SOURCE_FILING: 1, SOURCE_EXTERNAL_MAPPING: 2, SOURCE_MANUAL: 3}

SECURITY_TYPES = ("EQUITY", "DEBT", "OPTION", "ETF", "ADR", "OTHER")

# Sync watermark status
STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Read an ISO timestamp (or epoch millis) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def classify_error(message: str) -> str:
    """Permanent for "no such security" answers, transient for everything else."""
    lowered = (message or "").strip().lower()
    for permanent in PERMANENT_ERROR_MESSAGES:
        if lowered.startswith(permanent.lower().rstrip(".")):
            return PERMANENT
    return TRANSIENT


def error_ttl(error_class: str) -> timedelta:
    seconds = PERMANENT_ERROR_TTL if error_class == PERMANENT else TRANSIENT_ERROR_TTL
    return timedelta(seconds=seconds)


@dataclass(frozen=True)
class MappingSuccess:
    """A CUSIP resolved to a listing. Never expires."""

    cusip: str
    figi: Optional[str] = None
    ticker: Optional[str] = None
    name: Optional[str] = None
    exchange_code: Optional[str] = None
    security_type: Optional[str] = None
    market_sector: Optional[str] = None
    cached_at: Optional[datetime] = None

    ok = True

    def is_fresh(self, now: datetime) -> bool:
        return True


@dataclass(frozen=True)
class MappingFailure:
    """A failed resolution; retried once ``now`` passes ``expires_at``."""

    cusip: str
    error: str
    error_class: str
    cached_at: datetime
    expires_at: datetime

    ok = False

    def is_fresh(self, now: datetime) -> bool:
        return now <= self.expires_at


MappingResult = Union[MappingSuccess, MappingFailure]


def make_failure(
    cusip: str, error: str, now: datetime, error_class: Optional[str] = None
) -> MappingFailure:
    """Build a failure entry, classifying the error when no class is given."""
    error_class = error_class or classify_error(error)
    return MappingFailure(
        cusip=cusip,
        error=error,
        error_class=error_class,
        cached_at=now,
        expires_at=now + error_ttl(error_class),
    )


def mapping_to_dict(entry: MappingResult) -> Dict[str, Any]:
    data = asdict(entry)
    for key in ("cached_at", "expires_at"):
        if data.get(key) is not None:
            data[key] = data[key].isoformat()
    return data


def mapping_from_dict(cusip: str, data: Dict[str, Any]) -> MappingResult:
    """
    Rebuild a cache entry from its stored form.

    Accepts the camelCase layout of older cache files. Failure entries
    written before expiry tracking get ``expires_at`` from ``cached_at``.

    Raises:
        ValueError: If the entry carries both an error and enrichment fields
    """
    def pick(*keys):
        for key in keys:
            if data.get(key) not in (None, ""):
                return data[key]
        return None

    cached_at = parse_timestamp(pick("cached_at", "cachedAt")) or utcnow()
    error = pick("error")

    if error:
        if pick("ticker", "figi"):
            raise ValueError(f"Cache entry for {cusip} has both an error and a mapping")
        error_class = pick("error_class", "errorClass") or classify_error(error)
        expires_at = parse_timestamp(pick("expires_at", "expiresAt"))
        if expires_at is None:
            expires_at = cached_at + error_ttl(error_class)
        return MappingFailure(
            cusip=cusip,
            error=error,
            error_class=error_class,
            cached_at=cached_at,
            expires_at=expires_at,
        )

    return MappingSuccess(
        cusip=cusip,
        figi=pick("figi"),
        ticker=pick("ticker"),
        name=pick("name"),
        exchange_code=pick("exchange_code", "exchangeCode", "exchCode"),
        security_type=pick("security_type", "securityType"),
        market_sector=pick("market_sector", "marketSector"),
        cached_at=cached_at,
    )


@dataclass
class SecurityRecord:
    """One security in the master index, keyed by CUSIP."""

    cusip: str
    isin: Optional[str] = None
    figi: Optional[str] = None
    ticker: Optional[str] = None
    company_name: Optional[str] = None
    issuer_name: Optional[str] = None
    exchange: Optional[str] = None
    security_type: Optional[str] = None
    market_sector: Optional[str] = None
    source: str = SOURCE_FILING
    last_updated: Optional[datetime] = None
    check_digit_valid: Optional[bool] = None
    # field name -> source that last wrote it
    field_sources: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.last_updated is not None:
            data["last_updated"] = self.last_updated.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityRecord":
        known = {name for name in cls.__dataclass_fields__}
        values = {key: value for key, value in data.items() if key in known}
        values["last_updated"] = parse_timestamp(values.get("last_updated"))
        values["field_sources"] = dict(values.get("field_sources") or {})
        return cls(**values)


@dataclass
class SyncWatermark:
    """Persisted progress for one sync source."""

    source: str
    last_run_at: Optional[datetime] = None
    last_processed_date: Optional[date] = None
    cursor: Optional[str] = None
    boundary_accessions: List[str] = field(default_factory=list)
    recent_accessions: List[str] = field(default_factory=list)
    # filings that failed on their own, retried by later runs
    failed_filings: List[Dict[str, Any]] = field(default_factory=list)
    status: str = STATUS_IDLE
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_run_at"] = self.last_run_at.isoformat() if self.last_run_at else None
        data["last_processed_date"] = (
            self.last_processed_date.isoformat() if self.last_processed_date else None
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncWatermark":
        last_processed = data.get("last_processed_date") or data.get("lastProcessedDate")
        return cls(
            source=data["source"],
            last_run_at=parse_timestamp(data.get("last_run_at") or data.get("lastRunAt")),
            last_processed_date=date.fromisoformat(last_processed[:10]) if last_processed else None,
            cursor=data.get("cursor") or data.get("lastAccessionNumber"),
            boundary_accessions=list(data.get("boundary_accessions") or []),
            recent_accessions=list(data.get("recent_accessions") or []),
            failed_filings=[dict(entry) for entry in data.get("failed_filings") or []],
            status=data.get("status") or STATUS_IDLE,
            last_error=data.get("last_error") or data.get("errorMessage"),
        )


@dataclass(frozen=True)
class FormIndexEntry:
    """One line of an EDGAR form.idx file."""

    form_type: str
    company_name: str
    cik: str
    date_filed: str
    file_name: str

    @property
    def accession_number(self) -> str:
        return self.file_name.rsplit("/", 1)[-1].replace(".txt", "")


@dataclass(frozen=True)
class FeedEntry:
    """One entry of the EDGAR "latest filings" Atom feed."""

    form_type: str
    title: str
    cik: str
    company_name: str
    accession_number: str
    filing_date: str
    updated: str = ""
    link: str = ""
    size: str = ""
