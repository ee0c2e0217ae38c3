#!/usr/bin/env python3
"""
Two-tier cache of CUSIP -> OpenFIGI mapping results.

The hot tier is an in-process dict; the durable tier is a JSON file or the
``cusip_mappings`` table. The durable tier is read once, lazily, and then the
dict is the source of truth for the process. Every ``put``/``put_many`` writes
through to the durable tier. Writers in different processes race with
last-write-wins, which is fine because mappings can always be re-derived.

Freshness rules:
    - successes never expire
    - permanent failures ("No mapping found") are retried after 30 days
    - transient failures (HTTP errors, timeouts, throttling) after 1 hour
"""

import json
import os
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from loguru import logger

from secref.db_models import CusipMappingService, DatabaseManager
from secref.models import (
    PERMANENT,
    MappingFailure,
    MappingResult,
    MappingSuccess,
    mapping_from_dict,
    mapping_to_dict,
    utcnow,
)


class MappingStore(Protocol):
    """Durable tier interface."""

    def load(self) -> Dict[str, MappingResult]: ...

    def upsert(self, entries: List[MappingResult]) -> None: ...

    def delete(self, cusips: List[str]) -> None: ...


class JsonMappingStore:
    """Mapping cache file: {"mappings": {cusip: entry}, "last_updated": iso}."""

    def __init__(self, path: str):
        self.path = path
        self._data: Dict[str, dict] = {}

    def load(self) -> Dict[str, MappingResult]:
        if not os.path.exists(self.path):
            logger.info(f"No mapping cache file at {self.path}, starting empty")
            return {}

        with open(self.path, "r") as f:
            raw = json.load(f)

        mappings = raw.get("mappings", raw) if isinstance(raw, dict) else {}
        entries = {}
        for cusip, value in mappings.items():
            try:
                entries[cusip] = mapping_from_dict(cusip, value)
            except ValueError as e:
                logger.warning(f"Dropping malformed cache entry: {e}")
        self._data = {cusip: mapping_to_dict(entry) for cusip, entry in entries.items()}
        logger.info(f"Loaded {len(entries)} cached mappings from {self.path}")
        return entries

    def upsert(self, entries: List[MappingResult]) -> None:
        for entry in entries:
            self._data[entry.cusip] = mapping_to_dict(entry)
        self._write()

    def delete(self, cusips: List[str]) -> None:
        for cusip in cusips:
            self._data.pop(cusip, None)
        self._write()

    def _write(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(
                {"mappings": self._data, "last_updated": utcnow().isoformat()},
                f,
                indent=2,
                default=str,
            )
        os.replace(tmp_path, self.path)
        logger.debug(f"Saved {len(self._data)} mappings to {self.path}")


class DatabaseMappingStore:
    """Durable tier backed by the cusip_mappings table."""

    def __init__(self, db_manager: DatabaseManager):
        self.service = CusipMappingService(db_manager)

    def load(self) -> Dict[str, MappingResult]:
        entries = self.service.load_all()
        logger.info(f"Loaded {len(entries)} cached mappings from database")
        return entries

    def upsert(self, entries: List[MappingResult]) -> None:
        self.service.upsert_many(entries)

    def delete(self, cusips: List[str]) -> None:
        self.service.delete_many(cusips)


class MappingCache:
    """
    CUSIP mapping cache with an explicit open/close lifecycle.

    The cache is injected into the OpenFIGI client and the securities master;
    nothing about it is module-global.
    """

    def __init__(
        self,
        store: Optional[MappingStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            store: Durable tier; None keeps the cache memory-only
            clock: Returns the current aware UTC datetime
        """
        self.store = store
        self.clock = clock
        self._entries: Dict[str, MappingResult] = {}
        # entries whose durable write failed, retried with the next flush
        self._unflushed: Dict[str, MappingResult] = {}
        self._loaded = False
        self._lock = threading.RLock()

    def __enter__(self) -> "MappingCache":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        """Load the durable tier once."""
        with self._lock:
            if self._loaded:
                return
            if self.store is not None:
                self._entries = dict(self.store.load())
            self._loaded = True

    def close(self) -> None:
        with self._lock:
            if self._unflushed:
                self._flush([])
            self._loaded = False
            self._entries = {}

    def get(self, cusip: str) -> Optional[MappingResult]:
        """
        Fresh entry for a normalized CUSIP, or None when the caller must fetch.

        Stale failures stay in the cache until overwritten by ``put``.
        """
        self.open()
        with self._lock:
            entry = self._entries.get(cusip)
        if entry is None:
            return None
        if entry.is_fresh(self.clock()):
            logger.debug(f"Cache hit: CUSIP {cusip}")
            return entry
        logger.debug(f"Cache entry for {cusip} expired ({entry.error_class}), refetching")
        return None

    def peek(self, cusip: str) -> Optional[MappingResult]:
        """Entry regardless of freshness."""
        self.open()
        with self._lock:
            return self._entries.get(cusip)

    def put(self, entry: MappingResult) -> None:
        self.put_many([entry])

    def put_many(self, entries: Iterable[MappingResult]) -> None:
        """Update both tiers; the durable tier is written once per call."""
        entries = list(entries)
        if not entries:
            return
        self.open()
        with self._lock:
            for entry in entries:
                self._entries[entry.cusip] = entry
            self._flush(entries)

    def _flush(self, entries: List[MappingResult]) -> None:
        if self.store is None:
            return
        for entry in entries:
            self._unflushed[entry.cusip] = entry
        pending = list(self._unflushed.values())
        try:
            self.store.upsert(pending)
        except Exception as e:
            # memory tier stays authoritative; pending rows go out with the next flush
            logger.error(f"Failed to persist {len(pending)} mapping cache entries: {e}")
            return
        self._unflushed = {}

    def clear_expired_errors(self) -> int:
        """
        Drop failure entries whose retry window has passed.

        Returns:
            Number of entries removed
        """
        self.open()
        now = self.clock()
        with self._lock:
            expired = [
                cusip
                for cusip, entry in self._entries.items()
                if isinstance(entry, MappingFailure) and not entry.is_fresh(now)
            ]
            for cusip in expired:
                del self._entries[cusip]
                self._unflushed.pop(cusip, None)
            if expired and self.store is not None:
                self.store.delete(expired)

        logger.info(f"Cleared {len(expired)} expired error entries from mapping cache")
        return len(expired)

    def all_entries(self) -> Dict[str, MappingResult]:
        self.open()
        with self._lock:
            return dict(self._entries)

    def successful_entries(self) -> List[MappingSuccess]:
        return [entry for entry in self.all_entries().values() if isinstance(entry, MappingSuccess)]

    def stats(self) -> dict:
        """
        Cache statistics.

        Returns:
            Dictionary with total, found, permanent-miss and transient counts
        """
        entries = self.all_entries().values()
        failures = [entry for entry in entries if isinstance(entry, MappingFailure)]
        permanent = sum(1 for entry in failures if entry.error_class == PERMANENT)
        return {
            "total_cached": len(entries),
            "found_cached": len(entries) - len(failures),
            "not_found_cached": permanent,
            "transient_cached": len(failures) - permanent,
            "memory_size": len(entries),
        }
