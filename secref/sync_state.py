#!/usr/bin/env python3
"""
Persisted sync progress.

One watermark per source plus per-quarter progress for explicit bulk
backfills. The whole state lives in a single JSON file that is rewritten
atomically on every change; without a path the state is kept in memory.
"""

import copy
import json
import os
import threading
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger

from secref.exceptions import SyncError
from secref.models import STATUS_FAILED, STATUS_IDLE, STATUS_RUNNING, SyncWatermark, utcnow

RECENT_ACCESSIONS_LIMIT = 500
FAILED_FILING_RETRY_LIMIT = 5

QUARTER_PENDING = "pending"
QUARTER_PROCESSING = "processing"
QUARTER_COMPLETE = "complete"
QUARTER_FAILED = "failed"


class SyncStateStore:
    """Watermarks and backfill progress with an explicit lifecycle."""

    def __init__(self, path: Optional[str] = None, clock: Callable[[], datetime] = utcnow):
        """
        Args:
            path: JSON file; None keeps state in memory only
            clock: Returns the current aware UTC datetime
        """
        self.path = path
        self.clock = clock
        self._lock = threading.RLock()
        self._watermarks: Dict[str, SyncWatermark] = {}
        self._backfill: Dict[str, dict] = {}
        self._loaded = False

    def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self.path or not os.path.exists(self.path):
            return

        with open(self.path, "r") as f:
            raw = json.load(f)

        for source, data in (raw.get("sources") or {}).items():
            data = dict(data)
            data.setdefault("source", source)
            self._watermarks[source] = SyncWatermark.from_dict(data)
        self._backfill = dict(raw.get("backfill") or {})
        logger.debug(f"Loaded sync state for {len(self._watermarks)} sources from {self.path}")

    def _save(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        payload = {
            "sources": {source: mark.to_dict() for source, mark in self._watermarks.items()},
            "backfill": self._backfill,
        }
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(payload, f, indent=2, default=str)
        os.replace(tmp_path, self.path)

    def _mutable(self, source: str) -> SyncWatermark:
        self._load()
        if source not in self._watermarks:
            self._watermarks[source] = SyncWatermark(source=source)
        return self._watermarks[source]

    # Watermarks

    def get(self, source: str) -> Optional[SyncWatermark]:
        """Copy of the watermark for a source, or None if it never ran."""
        with self._lock:
            self._load()
            mark = self._watermarks.get(source)
            return copy.deepcopy(mark) if mark else None

    def all(self) -> Dict[str, SyncWatermark]:
        with self._lock:
            self._load()
            return copy.deepcopy(self._watermarks)

    def mark_started(self, source: str) -> SyncWatermark:
        with self._lock:
            mark = self._mutable(source)
            mark.status = STATUS_RUNNING
            mark.last_run_at = self.clock()
            mark.last_error = None
            self._save()
            return copy.deepcopy(mark)

    def advance(
        self,
        source: str,
        processed_date: date,
        accessions: Iterable[str] = (),
        cursor: Optional[str] = None,
    ) -> SyncWatermark:
        """
        Move the watermark forward after a batch is committed.

        Args:
            source: Sync source name
            processed_date: Latest filing date in the committed batch
            accessions: Accession numbers committed on ``processed_date``
            cursor: Last feed accession, for feed sources

        Raises:
            SyncError: If ``processed_date`` is before the current watermark
        """
        accessions = list(accessions)
        with self._lock:
            mark = self._mutable(source)
            current = mark.last_processed_date

            if current is not None and processed_date < current:
                raise SyncError(
                    f"Watermark for {source} cannot move back from {current} to {processed_date}",
                    source=source,
                )

            if current == processed_date:
                boundary = list(mark.boundary_accessions)
                boundary.extend(a for a in accessions if a not in boundary)
                mark.boundary_accessions = boundary
            else:
                mark.boundary_accessions = list(dict.fromkeys(accessions))
            mark.last_processed_date = processed_date

            if cursor:
                mark.cursor = cursor
            self._remember(mark, accessions)
            self._save()
            return copy.deepcopy(mark)

    def remember_accessions(self, source: str, accessions: Iterable[str]) -> None:
        """Add committed feed accessions to the bounded dedup window."""
        with self._lock:
            self._remember(self._mutable(source), list(accessions))
            self._save()

    @staticmethod
    def _remember(mark: SyncWatermark, accessions: List[str]) -> None:
        recent = [a for a in mark.recent_accessions if a not in accessions]
        recent.extend(dict.fromkeys(accessions))
        mark.recent_accessions = recent[-RECENT_ACCESSIONS_LIMIT:]

    # Failed filings

    def record_failures(self, source: str, failures: Iterable[Dict]) -> None:
        """
        Add filings that failed on their own to the source's retry list.

        Each failure is a dict with accession_number, filing_date (ISO),
        form_type, cik, company_name and error. A filing already on the list
        has its attempt count bumped.
        """
        failures = list(failures)
        if not failures:
            return
        with self._lock:
            mark = self._mutable(source)
            known = {entry["accession_number"]: entry for entry in mark.failed_filings}
            for failure in failures:
                entry = known.get(failure["accession_number"])
                if entry is None:
                    entry = dict(failure, attempts=0)
                    mark.failed_filings.append(entry)
                    known[entry["accession_number"]] = entry
                entry["attempts"] += 1
                entry["error"] = failure.get("error")
                if entry["attempts"] == FAILED_FILING_RETRY_LIMIT:
                    logger.error(
                        f"{source}: giving up on {entry['accession_number']} after "
                        f"{entry['attempts']} attempts: {entry['error']}"
                    )
            self._save()

    def clear_failures(self, source: str, accessions: Iterable[str]) -> None:
        """Drop filings from the retry list once they are handled."""
        accessions = set(accessions)
        with self._lock:
            mark = self._mutable(source)
            remaining = [e for e in mark.failed_filings if e["accession_number"] not in accessions]
            if len(remaining) != len(mark.failed_filings):
                mark.failed_filings = remaining
                self._save()

    def retryable_failures(self, source: str) -> List[Dict]:
        """Failed filings still under the attempt limit."""
        mark = self.get(source)
        if mark is None:
            return []
        return [e for e in mark.failed_filings if e.get("attempts", 0) < FAILED_FILING_RETRY_LIMIT]

    def mark_idle(self, source: str) -> SyncWatermark:
        with self._lock:
            mark = self._mutable(source)
            mark.status = STATUS_IDLE
            mark.last_error = None
            self._save()
            return copy.deepcopy(mark)

    def mark_failed(self, source: str, error: BaseException) -> SyncWatermark:
        with self._lock:
            mark = self._mutable(source)
            mark.status = STATUS_FAILED
            mark.last_error = str(error) or error.__class__.__name__
            self._save()
            logger.error(f"Sync source {source} failed: {mark.last_error}")
            return copy.deepcopy(mark)

    # Bulk backfill progress

    def get_backfill(self, form_type: str) -> Optional[dict]:
        with self._lock:
            self._load()
            progress = self._backfill.get(form_type)
            return copy.deepcopy(progress) if progress else None

    def init_backfill(self, form_type: str, quarters: List[str]) -> dict:
        """
        Register quarters for a backfill; quarters already tracked keep their status.

        Args:
            form_type: e.g. "13F"
            quarters: Quarter labels such as "2024Q1"
        """
        with self._lock:
            self._load()
            now = self.clock().isoformat()
            progress = self._backfill.get(form_type)
            if progress is None:
                progress = {"form_type": form_type, "quarters": [], "started_at": now}
                self._backfill[form_type] = progress

            known = {q["quarter"] for q in progress["quarters"]}
            for quarter in quarters:
                if quarter not in known:
                    progress["quarters"].append({"quarter": quarter, "status": QUARTER_PENDING})
            progress["quarters"].sort(key=lambda q: q["quarter"])
            progress["last_updated_at"] = now
            self._save()
            return copy.deepcopy(progress)

    def update_quarter(self, form_type: str, quarter: str, **update) -> dict:
        """
        Update one quarter's progress entry (status, rows, error, ...).

        Raises:
            SyncError: If the backfill or the quarter is not registered
        """
        with self._lock:
            self._load()
            progress = self._backfill.get(form_type)
            if progress is None:
                raise SyncError(f"No backfill progress found for {form_type}")

            entry = next((q for q in progress["quarters"] if q["quarter"] == quarter), None)
            if entry is None:
                raise SyncError(f"Quarter {quarter} not found in {form_type} backfill")

            now = self.clock().isoformat()
            entry.update(update)
            status = update.get("status")
            if status == QUARTER_PROCESSING:
                entry["started_at"] = now
                progress["current_quarter"] = quarter
            elif status in (QUARTER_COMPLETE, QUARTER_FAILED):
                entry["completed_at"] = now
                progress["current_quarter"] = None
            progress["last_updated_at"] = now
            self._save()
            return copy.deepcopy(entry)

    def next_pending_quarter(self, form_type: str) -> Optional[str]:
        """First quarter that is pending or failed, in quarter order."""
        progress = self.get_backfill(form_type)
        if not progress:
            return None
        for entry in progress["quarters"]:
            if entry["status"] in (QUARTER_PENDING, QUARTER_FAILED):
                return entry["quarter"]
        return None

    def is_backfill_complete(self, form_type: str) -> bool:
        progress = self.get_backfill(form_type)
        if not progress:
            return False
        return all(entry["status"] == QUARTER_COMPLETE for entry in progress["quarters"])
