#!/usr/bin/env python3
"""
Securities master index.

One record per CUSIP, merged from OpenFIGI mappings, filings and manual
edits, with secondary indices by ticker, FIGI, ISIN and name. Writes follow a
per-field precedence (manual > external-mapping > filing): a field set by a
stronger source is never overwritten by a weaker one.

The master is persisted as a JSON file when a path is given; indices are
rebuilt from the records on load.
"""

import copy
import json
import os
import re
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from loguru import logger

from secref.mapping_cache import MappingCache
from secref.models import (
    SOURCE_EXTERNAL_MAPPING,
    SOURCE_FILING,
    SOURCE_MANUAL,
    SOURCE_MERGED,
    SOURCE_PRECEDENCE,
    MappingResult,
    MappingSuccess,
    SecurityRecord,
    utcnow,
)
from secref.validators import cusip_to_isin, isin_to_cusip, validate_cusip

CUSIP_PATTERN = re.compile(r"^[A-Z0-9]{6,9}$")
ISIN_PATTERN = re.compile(r"^[A-Z]{2}[A-Z0-9]{10}$")
FIGI_PATTERN = re.compile(r"^BBG[A-Z0-9]{9}$")
TICKER_PATTERN = re.compile(r"^[A-Z0-9]{1,5}(\.[A-Z]{1,3}|-P[A-Z])?$")

# Fields a source can write; cusip, source and bookkeeping are managed here
DATA_FIELDS = (
    "isin",
    "figi",
    "ticker",
    "company_name",
    "issuer_name",
    "exchange",
    "security_type",
    "market_sector",
    "check_digit_valid",
)


def map_security_type(raw: Optional[str]) -> Optional[str]:
    """
    Map an OpenFIGI security type onto EQUITY/DEBT/OPTION/ETF/ADR/OTHER.

    Args:
        raw: securityType / securityType2 as returned by OpenFIGI

    Returns:
        Enum value, or None when no type is known
    """
    if not raw:
        return None

    lowered = raw.lower()
    if "common" in lowered or "equity" in lowered:
        return "EQUITY"
    if "bond" in lowered or "note" in lowered or "debt" in lowered:
        return "DEBT"
    if "option" in lowered or "warrant" in lowered:
        return "OPTION"
    if "etf" in lowered or "etp" in lowered or "fund" in lowered:
        return "ETF"
    if "adr" in lowered or "depositary" in lowered:
        return "ADR"
    return "OTHER"


def _empty(value: Any) -> bool:
    return value is None or value == ""


class SecuritiesMaster:
    """Multi-index securities master with an explicit open/save/close lifecycle."""

    def __init__(self, path: Optional[str] = None, clock: Callable[[], datetime] = utcnow):
        """
        Args:
            path: JSON file for persistence; None keeps the master in memory
            clock: Returns the current aware UTC datetime
        """
        self.path = path
        self.clock = clock
        self._lock = threading.RLock()
        self._securities: Dict[str, SecurityRecord] = {}
        self._reset_indices()
        self._loaded = False
        self._dirty = False
        self.last_updated: Optional[datetime] = None

    def _reset_indices(self) -> None:
        self.by_ticker: Dict[str, List[str]] = {}
        self.by_figi: Dict[str, str] = {}
        self.by_isin: Dict[str, str] = {}
        self.by_name: Dict[str, List[str]] = {}

    def __enter__(self) -> "SecuritiesMaster":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Lifecycle

    def open(self) -> None:
        """Load the master file once."""
        with self._lock:
            if self._loaded:
                return
            self._loaded = True
            if not self.path or not os.path.exists(self.path):
                return

            with open(self.path, "r") as f:
                raw = json.load(f)

            for cusip, data in (raw.get("securities") or {}).items():
                data = dict(data)
                data.setdefault("cusip", cusip)
                record = SecurityRecord.from_dict(data)
                self._securities[record.cusip] = record
                self._index(record)
            logger.info(f"Loaded {len(self._securities)} securities from {self.path}")

    def save(self) -> None:
        """Write the master file atomically (no-op without a path)."""
        with self._lock:
            if not self.path:
                self._dirty = False
                return

            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            self.last_updated = self.clock()
            payload = {
                "securities": {cusip: record.to_dict() for cusip, record in self._securities.items()},
                "indices": {
                    "by_ticker": self.by_ticker,
                    "by_figi": self.by_figi,
                    "by_isin": self.by_isin,
                    "by_name": self.by_name,
                },
                "last_updated": self.last_updated.isoformat(),
                "stats": self._counts(),
            }
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w") as f:
                json.dump(payload, f, indent=2, default=str)
            os.replace(tmp_path, self.path)
            self._dirty = False
            logger.debug(f"Saved {len(self._securities)} securities to {self.path}")

    def close(self) -> None:
        with self._lock:
            if self._dirty:
                self.save()
            self._securities = {}
            self._reset_indices()
            self._loaded = False

    # Index maintenance

    @staticmethod
    def _names(record: SecurityRecord) -> List[str]:
        names = []
        for name in (record.company_name, record.issuer_name):
            if name and name.strip():
                lowered = name.strip().lower()
                if lowered not in names:
                    names.append(lowered)
        return names

    def _index(self, record: SecurityRecord) -> None:
        cusip = record.cusip
        if record.ticker:
            cusips = self.by_ticker.setdefault(record.ticker.lower(), [])
            if cusip not in cusips:
                cusips.append(cusip)
        if record.figi:
            self.by_figi[record.figi.upper()] = cusip
        if record.isin:
            self.by_isin[record.isin.upper()] = cusip
        for name in self._names(record):
            cusips = self.by_name.setdefault(name, [])
            if cusip not in cusips:
                cusips.append(cusip)

    def _unindex(self, record: SecurityRecord) -> None:
        cusip = record.cusip
        if record.ticker:
            self._remove_from_list(self.by_ticker, record.ticker.lower(), cusip)
        if record.figi and self.by_figi.get(record.figi.upper()) == cusip:
            del self.by_figi[record.figi.upper()]
        if record.isin and self.by_isin.get(record.isin.upper()) == cusip:
            del self.by_isin[record.isin.upper()]
        for name in self._names(record):
            self._remove_from_list(self.by_name, name, cusip)

    @staticmethod
    def _remove_from_list(index: Dict[str, List[str]], key: str, cusip: str) -> None:
        cusips = index.get(key)
        if not cusips:
            return
        if cusip in cusips:
            cusips.remove(cusip)
        if not cusips:
            del index[key]

    # Writes

    def upsert(
        self, partial: Union[SecurityRecord, Dict[str, Any]], source: Optional[str] = None
    ) -> SecurityRecord:
        """
        Add or update a security.

        Args:
            partial: Fields to write; must include ``cusip``. Empty values are ignored.
            source: filing / external-mapping / manual; defaults to partial["source"],
                then manual

        Returns:
            The merged record (a copy; mutate via upsert only)

        Raises:
            ValueError: If the CUSIP is missing or malformed, or the source is unknown
        """
        if isinstance(partial, SecurityRecord):
            partial = {key: value for key, value in partial.to_dict().items() if not _empty(value)}
            partial.pop("last_updated", None)
            partial.pop("field_sources", None)

        raw_cusip = partial.get("cusip")
        if not isinstance(raw_cusip, str):
            raise ValueError("Security record requires a string cusip")
        validation = validate_cusip(raw_cusip)
        if not validation.valid:
            raise ValueError(validation.error)
        cusip = validation.normalized

        source = source or partial.get("source") or SOURCE_MANUAL
        if source not in SOURCE_PRECEDENCE:
            raise ValueError(f"Unknown security source: {source}")

        self.open()
        with self._lock:
            existing = self._securities.get(cusip)
            saved_indices = (
                copy.deepcopy(self.by_ticker),
                dict(self.by_figi),
                dict(self.by_isin),
                copy.deepcopy(self.by_name),
            )
            try:
                record = self._merge(existing, cusip, partial, source, validation.check_digit_valid)
                if existing is not None:
                    self._unindex(existing)
                self._index(record)
                self._securities[cusip] = record
            except Exception:
                self.by_ticker, self.by_figi, self.by_isin, self.by_name = saved_indices
                if existing is not None:
                    self._securities[cusip] = existing
                raise

            self._dirty = True
            return copy.deepcopy(record)

    def _merge(
        self,
        existing: Optional[SecurityRecord],
        cusip: str,
        partial: Dict[str, Any],
        source: str,
        check_digit_valid: Optional[bool],
    ) -> SecurityRecord:
        record = copy.deepcopy(existing) if existing else SecurityRecord(cusip=cusip, source=source)
        rank = SOURCE_PRECEDENCE[source]

        updates = {name: partial.get(name) for name in DATA_FIELDS}
        if _empty(updates["check_digit_valid"]):
            updates["check_digit_valid"] = check_digit_valid
        if updates.get("ticker"):
            updates["ticker"] = updates["ticker"].strip().upper()
        if _empty(updates["isin"]) and _empty(record.isin) and len(cusip) == 9:
            updates["isin"] = cusip_to_isin(cusip)

        for name, value in updates.items():
            if _empty(value):
                continue
            current = getattr(record, name)
            owner = record.field_sources.get(name)
            if not _empty(current) and owner and SOURCE_PRECEDENCE.get(owner, 0) > rank:
                continue
            setattr(record, name, value)
            record.field_sources[name] = source

        contributing = set(record.field_sources.values())
        if len(contributing) > 1:
            record.source = SOURCE_MERGED
        elif contributing:
            record.source = contributing.pop()
        else:
            record.source = source
        record.last_updated = self.clock()
        return record

    def add_issuer_name(self, cusip: str, issuer_name: str) -> Optional[SecurityRecord]:
        """
        Record the issuer name seen in a filing.

        Creates a filing-sourced record for an unknown CUSIP. An existing issuer
        name is kept; the company name is never touched.
        """
        if not issuer_name or not issuer_name.strip():
            return None
        validation = validate_cusip(cusip)
        if not validation.valid:
            logger.debug(f"Skipping issuer name for invalid CUSIP {cusip}: {validation.error}")
            return None

        existing = self.get_by_cusip(validation.normalized)
        if existing is not None and existing.issuer_name:
            return existing
        return self.upsert(
            {"cusip": validation.normalized, "issuer_name": issuer_name.strip()}, source=SOURCE_FILING
        )

    def merge_mapping(self, result: MappingResult) -> Optional[SecurityRecord]:
        """Fold a successful OpenFIGI mapping into the master; failures are ignored."""
        if not isinstance(result, MappingSuccess):
            return None
        return self.upsert(
            {
                "cusip": result.cusip,
                "ticker": result.ticker,
                "figi": result.figi,
                "company_name": result.name,
                "exchange": result.exchange_code,
                "security_type": map_security_type(result.security_type),
                "market_sector": result.market_sector,
            },
            source=SOURCE_EXTERNAL_MAPPING,
        )

    def sync_from_cache(self, cache: MappingCache) -> int:
        """
        Merge every successful cached mapping into the master and save.

        Returns:
            Number of records written
        """
        updated = 0
        for entry in cache.successful_entries():
            if not (entry.ticker or entry.figi):
                continue
            if self.merge_mapping(entry) is not None:
                updated += 1

        if updated > 0:
            self.save()
            logger.info(f"Synced {updated} securities from CUSIP cache")
        return updated

    # Reads

    def get_by_cusip(self, cusip: str) -> Optional[SecurityRecord]:
        self.open()
        with self._lock:
            record = self._securities.get(cusip.strip().upper())
            return copy.deepcopy(record) if record else None

    def get_by_ticker(self, ticker: str) -> List[SecurityRecord]:
        """All securities listed under a ticker (case-insensitive)."""
        self.open()
        with self._lock:
            cusips = self.by_ticker.get(ticker.strip().lower(), [])
            return [copy.deepcopy(self._securities[c]) for c in cusips if c in self._securities]

    def get_by_figi(self, figi: str) -> Optional[SecurityRecord]:
        self.open()
        with self._lock:
            cusip = self.by_figi.get(figi.strip().upper())
            return self.get_by_cusip(cusip) if cusip else None

    def get_by_isin(self, isin: str) -> Optional[SecurityRecord]:
        """Look up by ISIN index, then by the CUSIP embedded in a US ISIN."""
        self.open()
        with self._lock:
            cusip = self.by_isin.get(isin.strip().upper())
        if cusip:
            return self.get_by_cusip(cusip)

        embedded = isin_to_cusip(isin)
        return self.get_by_cusip(embedded) if embedded else None

    def search_by_name(self, query: str, limit: int = 10) -> List[SecurityRecord]:
        """
        Rank securities by name match.

        Exact name scores 1000, prefix 100, substring (either direction) 10.
        Each CUSIP appears once with its best score.
        """
        needle = query.strip().lower()
        if len(needle) < 2:
            return []

        self.open()
        with self._lock:
            scores: Dict[str, int] = {}
            for name, cusips in self.by_name.items():
                if needle not in name and name not in needle:
                    continue
                if name == needle:
                    score = 1000
                elif name.startswith(needle):
                    score = 100
                else:
                    score = 10
                for cusip in cusips:
                    if cusip in self._securities and score > scores.get(cusip, 0):
                        scores[cusip] = score

            ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
            return [copy.deepcopy(self._securities[cusip]) for cusip, _ in ranked[:limit]]

    def lookup(self, identifier: str) -> Optional[SecurityRecord]:
        """
        Find a security by any identifier, trying CUSIP, ISIN, FIGI, then ticker.
        """
        upper = identifier.strip().upper()
        if not upper:
            return None

        if CUSIP_PATTERN.match(upper):
            validation = validate_cusip(upper)
            record = self.get_by_cusip(validation.normalized) if validation.valid else None
            if record is None and len(upper) == 9:
                record = self.get_by_cusip(upper)
            if record:
                return record

        if ISIN_PATTERN.match(upper):
            record = self.get_by_isin(upper)
            if record:
                return record

        if FIGI_PATTERN.match(upper):
            record = self.get_by_figi(upper)
            if record:
                return record

        if TICKER_PATTERN.match(upper):
            records = self.get_by_ticker(upper)
            if records:
                return records[0]

        return None

    # Statistics

    def _counts(self) -> Dict[str, int]:
        records = list(self._securities.values())
        return {
            "total_securities": len(records),
            "with_ticker": sum(1 for r in records if r.ticker),
            "with_figi": sum(1 for r in records if r.figi),
            "with_isin": sum(1 for r in records if r.isin),
        }

    def stats(self) -> Dict[str, Any]:
        """Record counts plus the size of each secondary index."""
        self.open()
        with self._lock:
            stats: Dict[str, Any] = self._counts()
            stats["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
            stats["index_sizes"] = {
                "ticker": len(self.by_ticker),
                "figi": len(self.by_figi),
                "isin": len(self.by_isin),
                "name": len(self.by_name),
            }
            return stats

    def __len__(self) -> int:
        self.open()
        return len(self._securities)
