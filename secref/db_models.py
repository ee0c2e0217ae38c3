#!/usr/bin/env python3
"""
Database models and services for identifier resolution and filing sync.

This module provides SQLModel-based database models and services for:
- CUSIP mapping cache (OpenFIGI results, successes and failures)
- 13F submissions and holdings
- Schedule 13D/13G filings
- Form 3/4/5 submissions, reporting owners and non-derivative transactions
"""

from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from loguru import logger
from sqlalchemy import delete, func
from sqlmodel import Field, Session, SQLModel, create_engine, select

from secref.models import (
    MappingFailure,
    MappingResult,
    MappingSuccess,
    error_ttl,
    parse_timestamp,
)


# Mapping cache
class CusipMapping(SQLModel, table=True):
    """Durable tier of the CUSIP mapping cache, one row per normalized CUSIP."""

    __tablename__ = "cusip_mappings"

    cusip: str = Field(primary_key=True, max_length=9)
    figi: Optional[str] = Field(default=None, max_length=12)
    ticker: Optional[str] = Field(default=None, max_length=20, index=True)
    name: Optional[str] = Field(default=None, max_length=200)
    exchange_code: Optional[str] = Field(default=None, max_length=10)
    security_type: Optional[str] = Field(default=None, max_length=50)
    market_sector: Optional[str] = Field(default=None, max_length=50)
    error: Optional[str] = Field(default=None, max_length=500)
    error_class: Optional[str] = Field(default=None, max_length=10)
    cached_at: datetime = Field(default_factory=datetime.now)
    expires_at: Optional[datetime] = Field(default=None, index=True)


# 13F
class Submission13F(SQLModel, table=True):
    """One 13F filing (header level)."""

    __tablename__ = "submissions_13f"

    accession_number: str = Field(primary_key=True, max_length=20)
    cik: str = Field(max_length=10, index=True)
    submission_type: str = Field(max_length=20)
    period_of_report: Optional[str] = Field(default=None, max_length=20)
    filing_date: date = Field(index=True)
    filer_name: Optional[str] = Field(default=None, max_length=200)


class Holding13F(SQLModel, table=True):
    """One information table row of a 13F filing."""

    __tablename__ = "holdings_13f"

    accession_number: str = Field(primary_key=True, max_length=20)
    row_number: int = Field(primary_key=True)
    cusip: Optional[str] = Field(default=None, max_length=9, index=True)
    name_of_issuer: Optional[str] = Field(default=None, max_length=200)
    title_of_class: Optional[str] = Field(default=None, max_length=150)
    value: float = Field(default=0)
    shares: float = Field(default=0)
    shares_type: Optional[str] = Field(default=None, max_length=10)
    put_call: Optional[str] = Field(default=None, max_length=10)
    investment_discretion: Optional[str] = Field(default=None, max_length=10)
    voting_auth_sole: float = Field(default=0)
    voting_auth_shared: float = Field(default=0)
    voting_auth_none: float = Field(default=0)


# Schedule 13D/13G
class Filing13DG(SQLModel, table=True):
    """Beneficial ownership filing parsed from the SEC-HEADER block."""

    __tablename__ = "filings_13dg"

    accession_number: str = Field(primary_key=True, max_length=20)
    form_type: str = Field(max_length=20, index=True)
    filing_date: date = Field(index=True)
    issuer_cik: Optional[str] = Field(default=None, max_length=10, index=True)
    issuer_name: Optional[str] = Field(default=None, max_length=200)
    issuer_sic: Optional[str] = Field(default=None, max_length=200)
    issuer_cusip: Optional[str] = Field(default=None, max_length=9, index=True)
    filed_by_cik: Optional[str] = Field(default=None, max_length=10, index=True)
    filed_by_name: Optional[str] = Field(default=None, max_length=200)
    securities_class_title: Optional[str] = Field(default=None, max_length=200)
    percent_of_class: float = Field(default=0)
    shares_owned: float = Field(default=0)


# Form 3/4/5
class Form345Submission(SQLModel, table=True):
    __tablename__ = "form345_submissions"

    accession_number: str = Field(primary_key=True, max_length=20)
    filing_date: date = Field(index=True)
    period_of_report: Optional[str] = Field(default=None, max_length=20)
    document_type: Optional[str] = Field(default=None, max_length=10)
    issuer_cik: str = Field(max_length=10, index=True)
    issuer_name: Optional[str] = Field(default=None, max_length=200)
    issuer_trading_symbol: Optional[str] = Field(default=None, max_length=20, index=True)
    no_securities_owned: Optional[str] = Field(default=None, max_length=5)
    not_subject_sec16: Optional[str] = Field(default=None, max_length=5)
    remarks: Optional[str] = Field(default=None)


class Form345ReportingOwner(SQLModel, table=True):
    __tablename__ = "form345_reporting_owners"

    accession_number: str = Field(primary_key=True, max_length=20)
    owner_cik: str = Field(primary_key=True, max_length=10)
    owner_name: Optional[str] = Field(default=None, max_length=200)
    owner_relationship: Optional[str] = Field(default=None, max_length=100)
    officer_title: Optional[str] = Field(default=None, max_length=200)
    street1: Optional[str] = Field(default=None, max_length=200)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=20)
    zip_code: Optional[str] = Field(default=None, max_length=20)


class Form345NonDerivTrans(SQLModel, table=True):
    __tablename__ = "form345_nonderiv_trans"

    accession_number: str = Field(primary_key=True, max_length=20)
    trans_sk: int = Field(primary_key=True)
    security_title: Optional[str] = Field(default=None, max_length=200)
    trans_date: Optional[str] = Field(default=None, max_length=20)
    trans_code: Optional[str] = Field(default=None, max_length=5)
    trans_shares: float = Field(default=0)
    trans_price_per_share: float = Field(default=0)
    trans_acquired_disp_cd: Optional[str] = Field(default=None, max_length=5)
    shares_owned_following: float = Field(default=0)
    direct_indirect_ownership: Optional[str] = Field(default=None, max_length=5)


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, database_url: str):
        """Initialize database manager with connection URL."""
        if database_url.startswith("sqlite"):
            # SQLite uses a single-connection pool; pool sizing args are rejected
            self.engine = create_engine(database_url, echo=False)
        else:
            self.engine = create_engine(
                database_url,
                pool_size=10,  # Number of connections to maintain
                max_overflow=20,  # Additional connections when needed
                pool_pre_ping=True,  # Validate connections before use
                pool_recycle=3600,  # Recycle connections after 1 hour
                echo=False,
            )
        # Postgres tables are created by Alembic migrations

    def get_session(self) -> Session:
        """Get a database session context manager."""
        return Session(self.engine)

    def create_tables(self) -> None:
        """Create all tables directly (local SQLite databases and tests)."""
        SQLModel.metadata.create_all(self.engine)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name


class CusipMappingService:
    """Service for CRUD operations on the cusip_mappings table."""

    def __init__(self, db_manager: DatabaseManager):
        """Initialize service with database manager."""
        self.db_manager = db_manager

    def load_all(self) -> Dict[str, MappingResult]:
        """
        Load every cached mapping.

        Returns:
            Dictionary of CUSIP to MappingSuccess/MappingFailure
        """
        entries = {}
        with self.db_manager.get_session() as session:
            for row in session.exec(select(CusipMapping)).all():
                entries[row.cusip] = self._row_to_entry(row)
        return entries

    def upsert_many(self, entries: Iterable[MappingResult]) -> int:
        """
        Insert or overwrite cache rows in one transaction.

        Returns:
            Number of rows written
        """
        count = 0
        with self.db_manager.get_session() as session:
            for entry in entries:
                session.merge(self._entry_to_row(entry))
                count += 1
            session.commit()
        return count

    def delete_many(self, cusips: List[str]) -> int:
        if not cusips:
            return 0
        with self.db_manager.get_session() as session:
            result = session.execute(delete(CusipMapping).where(CusipMapping.cusip.in_(cusips)))
            session.commit()
            return result.rowcount or 0

    def get_cache_stats(self) -> dict:
        """Counts of successful and failed rows."""
        with self.db_manager.get_session() as session:
            rows = list(session.exec(select(CusipMapping)).all())
        failed = [row for row in rows if row.error]
        return {
            "total_cached": len(rows),
            "found_cached": len(rows) - len(failed),
            "not_found_cached": sum(1 for row in failed if row.error_class == "permanent"),
            "transient_cached": sum(1 for row in failed if row.error_class != "permanent"),
        }

    @staticmethod
    def _entry_to_row(entry: MappingResult) -> CusipMapping:
        if isinstance(entry, MappingFailure):
            return CusipMapping(
                cusip=entry.cusip,
                error=entry.error,
                error_class=entry.error_class,
                cached_at=entry.cached_at,
                expires_at=entry.expires_at,
            )
        return CusipMapping(
            cusip=entry.cusip,
            figi=entry.figi,
            ticker=entry.ticker,
            name=entry.name,
            exchange_code=entry.exchange_code,
            security_type=entry.security_type,
            market_sector=entry.market_sector,
            cached_at=entry.cached_at or datetime.now(),
        )

    @staticmethod
    def _row_to_entry(row: CusipMapping) -> MappingResult:
        cached_at = parse_timestamp(row.cached_at)
        if row.error:
            return MappingFailure(
                cusip=row.cusip,
                error=row.error,
                error_class=row.error_class or "transient",
                cached_at=cached_at,
                expires_at=parse_timestamp(row.expires_at) or cached_at + error_ttl(row.error_class),
            )
        return MappingSuccess(
            cusip=row.cusip,
            figi=row.figi,
            ticker=row.ticker,
            name=row.name,
            exchange_code=row.exchange_code,
            security_type=row.security_type,
            market_sector=row.market_sector,
            cached_at=cached_at,
        )


def log_table_counts(db_manager: DatabaseManager, tables: Optional[List[type]] = None) -> Dict[str, int]:
    """Row counts per synced table, logged for the end-of-run summary."""
    tables = tables or [Submission13F, Holding13F, Filing13DG, Form345Submission]
    counts = {}
    with db_manager.get_session() as session:
        for model in tables:
            counts[model.__tablename__] = session.exec(select(func.count()).select_from(model)).one()
    for table, count in counts.items():
        logger.info(f"  {table}: {count:,} rows")
    return counts
