#!/usr/bin/env python3
"""
Incremental sync of SEC filings into a storage sink.

Each source (quarterly index or Atom feed) keeps a watermark in the
SyncStateStore. A run fetches entries from the watermark forward, skips
accessions already committed, builds table rows in sorted batches, commits
each batch through the sink and only then advances the watermark.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger
from pandera.errors import SchemaErrors
from tqdm import tqdm

from secref.config_utils import SecRefConfig
from secref.constants import (
    ALL_SOURCES,
    FORM_13F_TYPES,
    FORM_345_TYPES,
    PRUNABLE_TABLES,
    SCHEDULE_13_TYPES,
    SOURCE_BULK_13F,
    SOURCE_DAILY_SCHEDULE13,
    SOURCE_RSS_13F,
    SOURCE_RSS_FORM4,
    SOURCE_RSS_SCHEDULE13,
    TABLE_KEYS,
)
from secref.exceptions import SECFetchError, SECRateLimitError, SyncError
from secref.internal_schemas import TABLE_SCHEMAS, validate_rows
from secref.models import STATUS_FAILED, utcnow
from secref.openfigi_client import OpenFIGIClient
from secref.parsers import header_to_filing_record, parse_form345_xml, parse_schedule13_header
from secref.sec_client import SECHTTPClient
from secref.securities_master import SecuritiesMaster
from secref.storage import StorageSink
from secref.sync_state import (
    QUARTER_COMPLETE,
    QUARTER_FAILED,
    QUARTER_PROCESSING,
    SyncStateStore,
)
from secref.validators import (
    normalize_cik,
    parse_date,
    quarters_between,
    validate_cusip,
    validate_quarter,
)

INDEX_SOURCES = (SOURCE_BULK_13F, SOURCE_DAILY_SCHEDULE13)

# Feed form types queried per source
FEED_FORM_TYPES = {
    SOURCE_RSS_13F: ["13F-HR", "13F-HR/A"],
    SOURCE_RSS_SCHEDULE13: ["SC 13D", "SC 13D/A", "SC 13G", "SC 13G/A"],
    SOURCE_RSS_FORM4: list(FORM_345_TYPES),
}

# Index form type prefixes per source
INDEX_FORM_TYPES = {
    SOURCE_BULK_13F: tuple(FORM_13F_TYPES),
    SOURCE_DAILY_SCHEDULE13: tuple(SCHEDULE_13_TYPES),
}

BACKFILL_13F = "13F"


@dataclass(frozen=True)
class PendingFiling:
    """An index or feed entry waiting to be processed."""

    accession_number: str
    filing_date: date
    form_type: str
    cik: str
    company_name: str = ""


@dataclass
class SyncOptions:
    sources: Optional[List[str]] = None
    force: bool = False
    dry_run: bool = False
    # Checked between batches, never mid-batch
    should_cancel: Optional[Callable[[], bool]] = None


@dataclass
class SyncResult:
    """Outcome of one source in one run."""

    source: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    committed_rows: int = 0
    batches: int = 0
    message: str = ""
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class SyncSummary:
    results: List[SyncResult] = field(default_factory=list)
    pruned: Dict[str, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return all(result.success for result in self.results)

    @property
    def processed(self) -> int:
        return sum(result.processed for result in self.results)

    @property
    def failed(self) -> int:
        return sum(result.failed for result in self.results)


def _is_filing_error(error: Exception) -> bool:
    """Errors that only affect one filing; anything else fails the source."""
    if isinstance(error, (ValueError, SchemaErrors)):
        return True
    if isinstance(error, SECFetchError) and not isinstance(error, SECRateLimitError):
        return error.status is not None and 400 <= error.status < 500
    return False


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29
        return day.replace(year=day.year - years, day=28)


class IncrementalSyncOrchestrator:
    """Runs watermark-driven syncs for the index and feed sources."""

    def __init__(
        self,
        sec_client: SECHTTPClient,
        sink: StorageSink,
        state_store: SyncStateStore,
        master: Optional[SecuritiesMaster] = None,
        mapping_client: Optional[OpenFIGIClient] = None,
        config: Optional[SecRefConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            sec_client: EDGAR client for index files, feeds and documents
            sink: Storage sink receiving upserts
            state_store: Watermark persistence
            master: Securities master fed with issuer names and mappings
            mapping_client: OpenFIGI client used to enrich Schedule 13 CUSIPs
            config: Batch size, lookback and retention settings
            clock: Returns the current aware UTC datetime
        """
        self.sec_client = sec_client
        self.sink = sink
        self.state_store = state_store
        self.master = master
        self.mapping_client = mapping_client
        self.config = config or SecRefConfig()
        self.clock = clock

        self._builders = {
            SOURCE_BULK_13F: self._build_13f_index_rows,
            SOURCE_DAILY_SCHEDULE13: self._build_schedule13_rows,
            SOURCE_RSS_13F: self._build_13f_feed_rows,
            SOURCE_RSS_SCHEDULE13: self._build_schedule13_rows,
            SOURCE_RSS_FORM4: self._build_form4_rows,
        }

    def today(self) -> date:
        return self.clock().date()

    # Fetch window

    def _fetch_index_filings(self, source: str, start: date) -> List[PendingFiling]:
        """Quarterly index entries for the source's forms filed on or after ``start``."""
        today = self.today()
        quarters = quarters_between(start, today)
        if len(quarters) > 1:
            logger.info(f"{source}: backfilling {len(quarters)} quarters from {start.isoformat()}")

        prefixes = INDEX_FORM_TYPES[source]
        filings = []
        for year, quarter in quarters:
            for entry in self.sec_client.fetch_form_index(year, quarter):
                if not entry.form_type.startswith(prefixes):
                    continue
                filing_date = parse_date(entry.date_filed)
                if filing_date is None or filing_date < start:
                    continue
                filings.append(
                    PendingFiling(
                        accession_number=entry.accession_number,
                        filing_date=filing_date,
                        form_type=entry.form_type,
                        cik=entry.cik,
                        company_name=entry.company_name,
                    )
                )
        return filings

    def _fetch_feed_filings(self, source: str) -> List[PendingFiling]:
        filings = []
        for form_type in FEED_FORM_TYPES[source]:
            entries = self.sec_client.fetch_rss_feed(form_type, count=self.config.rss_count)
            logger.info(f"{source}: {len(entries)} feed entries for {form_type}")
            for entry in entries:
                filing_date = parse_date(entry.filing_date) if entry.filing_date else None
                if filing_date is None:
                    logger.debug(f"Skipping feed entry {entry.accession_number} without filing date")
                    continue
                filings.append(
                    PendingFiling(
                        accession_number=entry.accession_number,
                        filing_date=filing_date,
                        form_type=entry.form_type,
                        cik=entry.cik,
                        company_name=entry.company_name,
                    )
                )
        return filings

    def _pending_filings(self, source: str, force: bool) -> Tuple[List[PendingFiling], int]:
        """
        New filings for a source plus earlier failures due for a retry,
        deduplicated and sorted by (date, accession).

        Index sources are windowed by date from the watermark; feed sources
        dedup by accession only, since EDGAR can publish a filing days late.

        Returns:
            Tuple of (filings to process, number skipped as already seen)
        """
        mark = self.state_store.get(source)
        watermark = mark.last_processed_date if mark else None

        if source in INDEX_SOURCES:
            start = watermark or self.today() - timedelta(days=self.config.bootstrap_lookback_days)
            candidates = self._fetch_index_filings(source, start)
            ignore_marks = False
        else:
            candidates = self._fetch_feed_filings(source)
            ignore_marks = force

        seen = set()
        if mark and not ignore_marks:
            seen.update(mark.boundary_accessions)
            seen.update(mark.recent_accessions)

        unique: Dict[str, PendingFiling] = {}
        skipped = 0
        for filing in candidates:
            if filing.accession_number in unique:
                continue
            if filing.accession_number in seen:
                skipped += 1
                continue
            unique[filing.accession_number] = filing

        retries = 0
        for entry in self.state_store.retryable_failures(source):
            if entry["accession_number"] in unique:
                continue
            unique[entry["accession_number"]] = PendingFiling(
                accession_number=entry["accession_number"],
                filing_date=date.fromisoformat(entry["filing_date"]),
                form_type=entry["form_type"],
                cik=entry["cik"],
                company_name=entry.get("company_name") or "",
            )
            retries += 1
        if retries:
            logger.info(f"{source}: retrying {retries} previously failed filings")

        filings = sorted(unique.values(), key=lambda f: (f.filing_date, f.accession_number))
        return filings, skipped

    # Row builders: each returns {table: rows} or None when the filing is not applicable

    def _build_13f_index_rows(self, filing: PendingFiling) -> Optional[Dict[str, List[Dict]]]:
        return {
            "submissions_13f": [
                {
                    "accession_number": filing.accession_number,
                    "cik": normalize_cik(filing.cik),
                    "submission_type": filing.form_type,
                    "period_of_report": None,
                    "filing_date": filing.filing_date.isoformat(),
                    "filer_name": filing.company_name or None,
                }
            ]
        }

    def _build_13f_feed_rows(self, filing: PendingFiling) -> Optional[Dict[str, List[Dict]]]:
        period_of_report, holdings = self.sec_client.fetch_13f_data(filing.cik, filing.accession_number)
        rows = self._build_13f_index_rows(filing)
        rows["submissions_13f"][0]["period_of_report"] = period_of_report or None
        rows["holdings_13f"] = holdings
        return rows

    def _build_schedule13_rows(self, filing: PendingFiling) -> Optional[Dict[str, List[Dict]]]:
        text = self.sec_client.fetch_submission_text(filing.cik, filing.accession_number)
        if text is None:
            raise SECFetchError(f"Submission text not found for {filing.accession_number}", status=404)

        header = parse_schedule13_header(text, filing.accession_number)
        if header is None:
            return None

        record = header_to_filing_record(header)
        if record["issuer_cusip"]:
            validation = validate_cusip(record["issuer_cusip"])
            record["issuer_cusip"] = validation.normalized if validation.valid else None
        return {"filings_13dg": [record]}

    def _build_form4_rows(self, filing: PendingFiling) -> Optional[Dict[str, List[Dict]]]:
        xml = self.sec_client.fetch_form345_xml(filing.cik, filing.accession_number)
        if xml is None:
            raise SECFetchError(f"Ownership XML not found for {filing.accession_number}", status=404)

        parsed = parse_form345_xml(xml, filing.accession_number, filing.filing_date.isoformat())
        if parsed is None:
            return None
        return {
            "form345_submissions": [parsed["submission"]],
            "form345_reporting_owners": parsed["owners"],
            "form345_nonderiv_trans": parsed["transactions"],
        }

    # Enrichment

    def _enrich(self, rows: Dict[str, List[Dict]]) -> None:
        """Feed issuer names and CUSIP mappings from the batch into the master."""
        if self.master is None:
            return

        issuers: Dict[str, str] = {}
        for row in rows.get("filings_13dg", []):
            if row.get("issuer_cusip"):
                issuers.setdefault(row["issuer_cusip"], row.get("issuer_name") or "")
        for row in rows.get("holdings_13f", []):
            if row.get("cusip"):
                issuers.setdefault(row["cusip"], row.get("name_of_issuer") or "")

        for cusip, issuer_name in issuers.items():
            self.master.add_issuer_name(cusip, issuer_name)

        # Only ownership filings are resolved; 13F holdings are far too many
        cusips = [row["issuer_cusip"] for row in rows.get("filings_13dg", []) if row.get("issuer_cusip")]
        if self.mapping_client is not None and cusips:
            merged = 0
            for result in self.mapping_client.resolve(list(dict.fromkeys(cusips))):
                if self.master.merge_mapping(result) is not None:
                    merged += 1
            logger.info(f"Merged {merged}/{len(set(cusips))} resolved CUSIPs into the securities master")

    # Commit

    def _commit(self, rows: Dict[str, List[Dict]]) -> int:
        committed = 0
        for table, table_rows in rows.items():
            if table_rows:
                committed += self.sink.upsert_rows(table, table_rows, TABLE_KEYS[table])
        return committed

    def _process_batch(
        self, source: str, batch: List[PendingFiling], result: SyncResult
    ) -> Tuple[List[PendingFiling], List[Dict]]:
        """
        Build, validate, enrich and commit one batch.

        Returns:
            Tuple of (filings handled, committed or not applicable; failures
            to put on the retry list)
        """
        builder = self._builders[source]
        rows: Dict[str, List[Dict]] = defaultdict(list)
        handled = []
        failures = []

        for filing in tqdm(batch, desc=f"{source} filings", leave=False):
            try:
                filing_rows = builder(filing)
                if filing_rows is None:
                    result.skipped += 1
                    handled.append(filing)
                    continue
                for table, table_rows in filing_rows.items():
                    validate_rows(TABLE_SCHEMAS[table], table_rows)
            except Exception as e:
                if not _is_filing_error(e):
                    raise
                result.failed += 1
                logger.warning(f"{source}: failed to process {filing.accession_number}: {e}")
                failures.append(
                    {
                        "accession_number": filing.accession_number,
                        "filing_date": filing.filing_date.isoformat(),
                        "form_type": filing.form_type,
                        "cik": filing.cik,
                        "company_name": filing.company_name,
                        "error": str(e),
                    }
                )
                continue

            for table, table_rows in filing_rows.items():
                rows[table].extend(table_rows)
            result.processed += 1
            handled.append(filing)

        self._enrich(rows)
        result.committed_rows += self._commit(rows)
        return handled, failures

    # Run

    def _already_ran_today(self, source: str) -> bool:
        mark = self.state_store.get(source)
        if mark is None or mark.last_run_at is None or mark.status == STATUS_FAILED:
            return False
        return mark.last_run_at.date() == self.today()

    def sync_source(self, source: str, options: Optional[SyncOptions] = None) -> SyncResult:
        """
        Run one source from its watermark to today.

        Args:
            source: One of the sync source names
            options: Force / dry run / cancellation settings

        Returns:
            SyncResult with processed, failed and skipped counts

        Raises:
            SyncError: For an unknown source
            Exception: Any fetch or commit failure, after marking the source failed
        """
        options = options or SyncOptions()
        if source not in self._builders:
            raise SyncError(f"Unknown sync source: {source}", source=source)

        result = SyncResult(source=source)

        if source in INDEX_SOURCES and not options.force and self._already_ran_today(source):
            result.message = "Already ran today"
            logger.info(f"{source}: already ran today, skipping (use force to override)")
            return result

        if options.dry_run:
            filings, skipped = self._pending_filings(source, options.force)
            result.processed = len(filings)
            result.skipped = skipped
            result.message = f"Dry run: would process {len(filings)} filings, skip {skipped}"
            logger.info(f"{source}: {result.message}")
            return result

        self.state_store.mark_started(source)
        try:
            filings, result.skipped = self._pending_filings(source, options.force)
            logger.info(f"{source}: {len(filings)} new filings ({result.skipped} already seen)")

            if not filings:
                result.message = "No new filings"
            else:
                self._run_batches(source, filings, options, result)
                result.message = (
                    f"Processed {result.processed} filings, {result.failed} failed, "
                    f"{result.committed_rows} rows committed"
                )

            self.state_store.mark_idle(source)
        except Exception as e:
            self.state_store.mark_failed(source, e)
            raise

        if self.master is not None:
            self.master.save()
        logger.info(f"{source}: {result.message}")
        return result

    def _run_batches(
        self, source: str, filings: List[PendingFiling], options: SyncOptions, result: SyncResult
    ) -> None:
        batch_size = max(1, self.config.sync_batch_size)
        batches = [filings[i:i + batch_size] for i in range(0, len(filings), batch_size)]

        for number, batch in enumerate(batches, start=1):
            if options.should_cancel and options.should_cancel():
                result.cancelled = True
                logger.warning(f"{source}: cancelled before batch {number}/{len(batches)}")
                break

            handled, failures = self._process_batch(source, batch, result)
            result.batches += 1

            # Watermark moves only after the batch is committed, and never back
            # for retried filings dated before it
            self.state_store.record_failures(source, failures)
            self.state_store.clear_failures(source, [f.accession_number for f in handled])
            mark = self.state_store.get(source)
            current = mark.last_processed_date if mark else None
            max_date = batch[-1].filing_date
            if current is not None and max_date < current:
                max_date = current
            boundary = [f.accession_number for f in handled if f.filing_date == max_date]
            cursor = handled[-1].accession_number if handled and source not in INDEX_SOURCES else None
            self.state_store.advance(source, max_date, boundary, cursor=cursor)
            if source not in INDEX_SOURCES:
                self.state_store.remember_accessions(source, [f.accession_number for f in handled])

            if self.master is not None:
                self.master.save()
            logger.info(
                f"{source}: batch {number}/{len(batches)} committed, watermark {max_date.isoformat()}"
            )

    def run_sync(self, options: Optional[SyncOptions] = None) -> SyncSummary:
        """
        Run the requested sources, then prune filings past the retention window.

        A failing source is recorded in its result; the other sources still run.
        """
        options = options or SyncOptions()
        sources = options.sources or list(ALL_SOURCES)
        summary = SyncSummary()

        for source in sources:
            logger.info(f"Starting sync for {source}")
            try:
                summary.results.append(self.sync_source(source, options))
            except Exception as e:
                logger.error(f"Sync for {source} failed: {e}")
                summary.results.append(SyncResult(source=source, message="Failed", error=str(e)))

        if not options.dry_run:
            summary.pruned = self.prune()

        logger.info(
            f"Sync complete: {summary.processed} processed, {summary.failed} failed, "
            f"{sum(1 for r in summary.results if not r.success)} sources failed"
        )
        return summary

    def prune(self) -> Dict[str, int]:
        """Delete filings older than the retention window; failures are only logged."""
        delete_older_than = getattr(self.sink, "delete_older_than", None)
        if delete_older_than is None:
            return {}

        cutoff = _years_before(self.today(), self.config.retention_years)
        pruned = {}
        for table in PRUNABLE_TABLES:
            try:
                pruned[table] = delete_older_than(table, "filing_date", cutoff)
            except Exception as e:
                logger.warning(f"Failed to prune {table} before {cutoff.isoformat()}: {e}")
        return pruned

    # Bulk bootstrap

    def bootstrap_13f(self, quarters: List[str]) -> Dict[str, int]:
        """
        Load 13F submissions from the quarterly indexes of the given quarters.

        Progress is recorded per quarter, so an interrupted bootstrap resumes
        with the quarters that are still pending or failed.

        Args:
            quarters: Quarter labels such as ["2024Q1", "2024Q2"]

        Returns:
            Rows committed per quarter processed in this call

        Raises:
            ValueError: If a quarter label is malformed
        """
        labels = []
        for quarter in quarters:
            validation = validate_quarter(quarter)
            if not validation.valid:
                raise ValueError(validation.error)
            labels.append(validation.normalized)

        self.state_store.init_backfill(BACKFILL_13F, labels)
        committed: Dict[str, int] = {}

        while True:
            label = self.state_store.next_pending_quarter(BACKFILL_13F)
            if label is None or label in committed:
                break
            committed[label] = self._bootstrap_quarter(label)

        if self.state_store.is_backfill_complete(BACKFILL_13F):
            logger.info(f"13F backfill complete for {len(labels)} quarters")
        return committed

    def _bootstrap_quarter(self, label: str) -> int:
        year, quarter = int(label[:4]), int(label[-1])
        self.state_store.update_quarter(BACKFILL_13F, label, status=QUARTER_PROCESSING)
        try:
            filings = []
            for entry in self.sec_client.fetch_form_index(year, quarter):
                if entry.form_type.startswith(INDEX_FORM_TYPES[SOURCE_BULK_13F]):
                    filings.append(
                        PendingFiling(
                            accession_number=entry.accession_number,
                            filing_date=parse_date(entry.date_filed),
                            form_type=entry.form_type,
                            cik=entry.cik,
                            company_name=entry.company_name,
                        )
                    )

            rows = [self._build_13f_index_rows(f)["submissions_13f"][0] for f in filings]
            validate_rows(TABLE_SCHEMAS["submissions_13f"], rows)

            committed = 0
            batch_size = max(1, self.config.sync_batch_size)
            for start in tqdm(range(0, len(rows), batch_size), desc=f"13F {label}", leave=False):
                committed += self.sink.upsert_rows(
                    "submissions_13f", rows[start:start + batch_size], TABLE_KEYS["submissions_13f"]
                )
        except Exception as e:
            self.state_store.update_quarter(BACKFILL_13F, label, status=QUARTER_FAILED, error=str(e))
            raise

        self.state_store.update_quarter(
            BACKFILL_13F, label, status=QUARTER_COMPLETE, filings=len(filings), rows=committed
        )
        self._advance_after_bootstrap(filings)
        logger.info(f"Bootstrapped {committed} 13F submissions for {label}")
        return committed

    def _advance_after_bootstrap(self, filings: List[PendingFiling]) -> None:
        """Start the incremental bulk-13F source where the bootstrap ended."""
        if not filings:
            return
        max_date = max(f.filing_date for f in filings)
        mark = self.state_store.get(SOURCE_BULK_13F)
        if mark is not None and mark.last_processed_date is not None and mark.last_processed_date > max_date:
            return
        boundary = [f.accession_number for f in filings if f.filing_date == max_date]
        self.state_store.advance(SOURCE_BULK_13F, max_date, boundary)
