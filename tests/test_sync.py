"""
Tests for the incremental sync orchestrator with a mocked EDGAR client and an
in-memory storage sink.
"""

from datetime import date
from unittest.mock import Mock

import pytest

from secref.config_utils import SecRefConfig
from secref.constants import PRUNABLE_TABLES
from secref.exceptions import SECFetchError, SyncError
from secref.models import (
    STATUS_FAILED,
    STATUS_IDLE,
    FeedEntry,
    FormIndexEntry,
    MappingSuccess,
)
from secref.parsers import parse_info_table
from secref.sec_client import SECHTTPClient
from secref.securities_master import SecuritiesMaster
from secref.sync import IncrementalSyncOrchestrator, SyncOptions
from secref.sync_state import FAILED_FILING_RETRY_LIMIT, QUARTER_COMPLETE, QUARTER_FAILED, SyncStateStore

BULK = "bulk-13F"
FORM4 = "rss-form4"
SCHEDULE13 = "rss-schedule13"
RSS_13F = "rss-13f"

VANGUARD = "0000102909-25-000013"
SMALL_CAP = "0001801234-25-000002"
QUIET_HARBOR = "0001654321-25-000001"
FORM4_ACCESSION = "0000320193-25-000031"
SCHEDULE_13D_ACCESSION = "0001193125-25-051234"
APPLE = "037833100"


def feed_entry(accession, form_type="4", cik="0001214156", filing_date="2025-03-14", company_name="COOK TIMOTHY D"):
    return FeedEntry(
        form_type=form_type,
        title=f"{form_type} - {company_name} ({cik}) (Reporting)",
        cik=cik,
        company_name=company_name,
        accession_number=accession,
        filing_date=filing_date,
    )


def feed(entries_by_form):
    """fetch_rss_feed side effect returning entries for the named form types only."""

    def fetch(form_type, count=None):
        return list(entries_by_form.get(form_type, []))

    return fetch


@pytest.fixture
def index_entries(load_fixture):
    return SECHTTPClient.parse_form_index(load_fixture("form.idx"))


@pytest.fixture
def sec_client(index_entries):
    client = Mock(spec=SECHTTPClient)
    client.fetch_form_index.return_value = index_entries
    client.fetch_rss_feed.return_value = []
    return client


@pytest.fixture
def state_store(fake_clock):
    return SyncStateStore(clock=fake_clock.now)


@pytest.fixture
def master(fake_clock):
    return SecuritiesMaster(clock=fake_clock.now)


@pytest.fixture
def orchestrator(sec_client, memory_sink, state_store, master, fake_clock):
    return IncrementalSyncOrchestrator(
        sec_client=sec_client,
        sink=memory_sink,
        state_store=state_store,
        master=master,
        config=SecRefConfig(sync_batch_size=2),
        clock=fake_clock.now,
    )


class TestIndexSource:
    """bulk-13F from the quarterly form.idx"""

    def test_first_run_uses_lookback_window(self, orchestrator, sec_client, memory_sink, state_store):
        result = orchestrator.sync_source(BULK)

        # Berkshire (2025-02-14) is outside the 7 day lookback
        assert result.processed == 3
        assert result.batches == 2
        assert result.success
        sec_client.fetch_form_index.assert_called_once_with(2025, 1)
        assert {row["accession_number"] for row in memory_sink.rows("submissions_13f")} == {
            VANGUARD,
            SMALL_CAP,
            QUIET_HARBOR,
        }

        mark = state_store.get(BULK)
        assert mark.last_processed_date == date(2025, 3, 14)
        assert mark.boundary_accessions == [QUIET_HARBOR]
        assert mark.status == STATUS_IDLE

    def test_rows_are_normalized(self, orchestrator, memory_sink):
        orchestrator.sync_source(BULK)
        row = next(r for r in memory_sink.rows("submissions_13f") if r["accession_number"] == VANGUARD)

        assert row == {
            "accession_number": VANGUARD,
            "cik": "102909",
            "submission_type": "13F-HR",
            "period_of_report": None,
            "filing_date": "2025-03-12",
            "filer_name": "VANGUARD GROUP INC",
        }

    def test_runs_once_per_day_unless_forced(self, orchestrator, sec_client):
        orchestrator.sync_source(BULK)

        again = orchestrator.sync_source(BULK)
        assert again.message == "Already ran today"
        assert sec_client.fetch_form_index.call_count == 1

        forced = orchestrator.sync_source(BULK, SyncOptions(force=True))
        assert forced.processed == 0
        assert forced.skipped == 1, "the boundary accession is not reprocessed"
        assert forced.message == "No new filings"

    def test_next_day_picks_up_new_filings_only(self, orchestrator, sec_client, index_entries, memory_sink, fake_clock):
        orchestrator.sync_source(BULK)

        fake_clock.advance(days=1)
        sec_client.fetch_form_index.return_value = index_entries + [
            FormIndexEntry("13F-HR", "NEW FILER LLC", "1999999", "2025-03-15", "edgar/data/1999999/0001999999-25-000001.txt")
        ]
        result = orchestrator.sync_source(BULK)

        assert result.processed == 1
        assert memory_sink.count("submissions_13f") == 4

    def test_dry_run_changes_nothing(self, orchestrator, memory_sink, state_store):
        result = orchestrator.sync_source(BULK, SyncOptions(dry_run=True))

        assert result.processed == 3
        assert result.message.startswith("Dry run")
        assert memory_sink.count("submissions_13f") == 0
        assert state_store.get(BULK) is None

    def test_no_new_filings_keeps_watermark(
        self, orchestrator, sec_client, index_entries, state_store, memory_sink, fake_clock
    ):
        vanguard = next(e for e in index_entries if e.accession_number == VANGUARD)
        state_store.advance(BULK, date(2025, 3, 12), [VANGUARD])
        sec_client.fetch_form_index.return_value = [vanguard]

        result = orchestrator.sync_source(BULK, SyncOptions(force=True))

        assert result.message == "No new filings"
        assert result.skipped == 1
        mark = state_store.get(BULK)
        assert mark.last_processed_date == date(2025, 3, 12), "nothing committed, nothing moves"
        assert mark.boundary_accessions == [VANGUARD]
        assert mark.status == STATUS_IDLE

        # A 13F dated the 13th only shows up in the index on the 15th
        fake_clock.advance(days=1)
        late = FormIndexEntry(
            "13F-HR", "LATE FILER LLC", "1777777", "2025-03-13", "edgar/data/1777777/0001777777-25-000004.txt"
        )
        sec_client.fetch_form_index.return_value = [vanguard, late]
        result = orchestrator.sync_source(BULK)

        assert result.processed == 1
        assert memory_sink.count("submissions_13f") == 1
        assert state_store.get(BULK).last_processed_date == date(2025, 3, 13)

    def test_invalid_row_fails_only_that_filing(self, orchestrator, sec_client, index_entries, memory_sink):
        sec_client.fetch_form_index.return_value = index_entries + [
            FormIndexEntry("13F-HR", "BROKEN PATH LLC", "1888888", "2025-03-12", "edgar/data/1888888/not-an-accession.txt")
        ]

        result = orchestrator.sync_source(BULK)

        assert result.failed == 1
        assert result.processed == 3
        assert memory_sink.count("submissions_13f") == 3


class TestResumability:
    """Watermark moves only after a committed batch"""

    def test_failed_commit_keeps_watermark_and_rerun_finishes(self, orchestrator, memory_sink, state_store):
        commit = memory_sink.upsert_rows
        calls = []

        def flaky(table, rows, key_columns):
            calls.append(table)
            if len(calls) == 2:
                raise RuntimeError("connection lost")
            return commit(table, rows, key_columns)

        memory_sink.upsert_rows = flaky
        with pytest.raises(RuntimeError):
            orchestrator.sync_source(BULK)

        mark = state_store.get(BULK)
        assert mark.status == STATUS_FAILED
        assert mark.last_error == "connection lost"
        assert mark.last_processed_date == date(2025, 3, 13), "only the first batch was committed"
        assert memory_sink.count("submissions_13f") == 2

        memory_sink.upsert_rows = commit
        result = orchestrator.sync_source(BULK)

        assert result.processed == 1, "a failed run is not blocked by the once-a-day guard"
        assert result.skipped == 1
        assert memory_sink.count("submissions_13f") == 3
        assert state_store.get(BULK).status == STATUS_IDLE

    def test_fetch_error_fails_source_without_advancing(self, orchestrator, sec_client, state_store):
        sec_client.fetch_form_index.side_effect = SECFetchError("HTTP 503", status=503)

        with pytest.raises(SECFetchError):
            orchestrator.sync_source(BULK)

        mark = state_store.get(BULK)
        assert mark.status == STATUS_FAILED
        assert mark.last_processed_date is None

    def test_cancel_between_batches(self, orchestrator, memory_sink, state_store):
        options = SyncOptions(should_cancel=lambda: memory_sink.count("submissions_13f") >= 2)

        result = orchestrator.sync_source(BULK, options)

        assert result.cancelled
        assert result.batches == 1
        assert memory_sink.count("submissions_13f") == 2
        assert state_store.get(BULK).last_processed_date == date(2025, 3, 13)

    def test_unknown_source(self, orchestrator):
        with pytest.raises(SyncError):
            orchestrator.sync_source("rss-10k")


class TestFailedFilingRetries:
    """A filing that fails inside a batch is retried by the next run"""

    SCHEDULE13_INDEX = "daily-schedule13"
    EARLY_13G = "0000899243-25-009911"
    LATE_13G_A = "0001104659-25-024680"

    @pytest.fixture
    def missing_text(self):
        return {SCHEDULE_13D_ACCESSION}

    @pytest.fixture
    def schedule13_client(self, sec_client, index_entries, load_fixture, missing_text):
        sec_client.fetch_form_index.return_value = index_entries + [
            FormIndexEntry("SC 13G", "GLOBAL INDEX FUND", "1555555", "2025-03-12", f"edgar/data/1555555/{self.EARLY_13G}.txt")
        ]
        text = load_fixture("schedule13d.txt")

        def fetch_submission_text(cik, accession):
            return None if accession in missing_text else text

        sec_client.fetch_submission_text.side_effect = fetch_submission_text
        return sec_client

    def test_middle_filing_retried_next_run(
        self, orchestrator, schedule13_client, missing_text, memory_sink, state_store, fake_clock
    ):
        orchestrator.config = SecRefConfig(sync_batch_size=3)

        first = orchestrator.sync_source(self.SCHEDULE13_INDEX)

        assert first.batches == 1
        assert first.processed == 2
        assert first.failed == 1
        mark = state_store.get(self.SCHEDULE13_INDEX)
        assert mark.last_processed_date == date(2025, 3, 14)
        assert [f["accession_number"] for f in mark.failed_filings] == [SCHEDULE_13D_ACCESSION]
        assert mark.failed_filings[0]["filing_date"] == "2025-03-13"

        missing_text.clear()
        fake_clock.advance(days=1)
        second = orchestrator.sync_source(self.SCHEDULE13_INDEX)

        assert second.processed == 1, "the filing behind the watermark comes back from the retry list"
        assert second.skipped == 1
        assert memory_sink.count("filings_13dg") == 3
        mark = state_store.get(self.SCHEDULE13_INDEX)
        assert mark.failed_filings == []
        assert mark.last_processed_date == date(2025, 3, 14)
        assert mark.boundary_accessions == [self.LATE_13G_A]

    def test_retries_stop_at_attempt_limit(self, orchestrator, schedule13_client, state_store, fake_clock):
        for _ in range(FAILED_FILING_RETRY_LIMIT):
            orchestrator.sync_source(self.SCHEDULE13_INDEX)
            fake_clock.advance(days=1)

        mark = state_store.get(self.SCHEDULE13_INDEX)
        assert mark.failed_filings[0]["attempts"] == FAILED_FILING_RETRY_LIMIT

        result = orchestrator.sync_source(self.SCHEDULE13_INDEX)
        assert result.message == "No new filings"
        assert schedule13_client.fetch_submission_text.call_count == 3 + FAILED_FILING_RETRY_LIMIT - 1


class TestForm4Feed:
    """rss-form4: dedup by accession and nested ownership rows"""

    @pytest.fixture
    def feed_client(self, sec_client, load_fixture):
        sec_client.fetch_rss_feed.side_effect = feed(
            {
                "4": [
                    feed_entry(FORM4_ACCESSION),
                    feed_entry(FORM4_ACCESSION, cik="0000320193", company_name="Apple Inc."),
                ]
            }
        )
        sec_client.fetch_form345_xml.return_value = load_fixture("form4.xml")
        return sec_client

    def test_duplicate_entries_processed_once(self, orchestrator, feed_client, memory_sink, state_store):
        result = orchestrator.sync_source(FORM4)

        assert result.processed == 1
        assert feed_client.fetch_form345_xml.call_count == 1
        assert memory_sink.count("form345_submissions") == 1
        assert memory_sink.count("form345_reporting_owners") == 1
        assert memory_sink.count("form345_nonderiv_trans") == 2

        mark = state_store.get(FORM4)
        assert mark.cursor == FORM4_ACCESSION
        assert FORM4_ACCESSION in mark.recent_accessions

    def test_feed_sources_run_again_same_day(self, orchestrator, feed_client):
        orchestrator.sync_source(FORM4)
        again = orchestrator.sync_source(FORM4)

        assert again.processed == 0
        assert again.skipped == 2
        assert feed_client.fetch_form345_xml.call_count == 1

    def test_force_reprocesses_idempotently(self, orchestrator, feed_client, memory_sink):
        orchestrator.sync_source(FORM4)
        forced = orchestrator.sync_source(FORM4, SyncOptions(force=True))

        assert forced.processed == 1
        assert memory_sink.count("form345_submissions") == 1
        assert memory_sink.count("form345_nonderiv_trans") == 2

    def test_missing_document_counts_as_failed(self, orchestrator, feed_client, state_store):
        feed_client.fetch_form345_xml.return_value = None

        result = orchestrator.sync_source(FORM4)

        assert result.failed == 1
        assert result.success
        mark = state_store.get(FORM4)
        assert mark.last_processed_date == date(2025, 3, 14)
        failure, = mark.failed_filings
        assert failure["accession_number"] == FORM4_ACCESSION
        assert failure["attempts"] == 1
        assert FORM4_ACCESSION not in mark.recent_accessions

    def test_late_feed_entry_behind_watermark_processed(self, orchestrator, feed_client, memory_sink, state_store):
        orchestrator.sync_source(FORM4)
        late = "0000320193-25-000029"
        feed_client.fetch_rss_feed.side_effect = feed(
            {"4": [feed_entry(FORM4_ACCESSION), feed_entry(late, filing_date="2025-03-12")]}
        )

        result = orchestrator.sync_source(FORM4)

        assert result.processed == 1
        assert result.skipped == 1
        assert memory_sink.count("form345_submissions") == 2
        assert state_store.get(FORM4).last_processed_date == date(2025, 3, 14), "watermark never moves back"

    def test_server_error_fails_source(self, orchestrator, feed_client, state_store):
        feed_client.fetch_form345_xml.side_effect = SECFetchError("HTTP 503", status=503)

        with pytest.raises(SECFetchError):
            orchestrator.sync_source(FORM4)
        assert state_store.get(FORM4).last_processed_date is None


class TestSchedule13Feed:
    """rss-schedule13 with securities master enrichment"""

    @pytest.fixture
    def mapping_client(self, fake_clock):
        client = Mock()
        client.resolve.return_value = [
            MappingSuccess(
                cusip=APPLE,
                figi="BBG000B9XRY4",
                ticker="AAPL",
                name="Apple Inc",
                exchange_code="US",
                security_type="Common Stock",
                market_sector="Equity",
                cached_at=fake_clock.now(),
            )
        ]
        return client

    def test_filing_row_and_master_enrichment(
        self, orchestrator, sec_client, memory_sink, master, mapping_client, load_fixture
    ):
        orchestrator.mapping_client = mapping_client
        sec_client.fetch_rss_feed.side_effect = feed(
            {
                "SC 13D": [
                    feed_entry(
                        SCHEDULE_13D_ACCESSION,
                        form_type="SC 13D",
                        cik="0001876543",
                        filing_date="2025-03-13",
                        company_name="ORCHARD CAPITAL PARTNERS LP",
                    )
                ]
            }
        )
        sec_client.fetch_submission_text.return_value = load_fixture("schedule13d.txt")

        result = orchestrator.sync_source(SCHEDULE13)

        assert result.processed == 1
        row, = memory_sink.rows("filings_13dg")
        assert row["issuer_cusip"] == APPLE
        assert row["issuer_cik"] == "320193"
        assert row["percent_of_class"] == 6.5

        mapping_client.resolve.assert_called_once_with([APPLE])
        record = master.get_by_cusip(APPLE)
        assert record.ticker == "AAPL"
        assert record.issuer_name == "APPLE INC"
        assert record.company_name == "Apple Inc"

    def test_non_schedule13_document_skipped(self, orchestrator, sec_client, memory_sink):
        sec_client.fetch_rss_feed.side_effect = feed({"SC 13G": [feed_entry(SCHEDULE_13D_ACCESSION, form_type="SC 13G")]})
        sec_client.fetch_submission_text.return_value = "<SEC-HEADER>\nCONFORMED SUBMISSION TYPE:\t8-K\n</SEC-HEADER>"

        result = orchestrator.sync_source(SCHEDULE13)

        assert result.skipped == 1
        assert result.processed == 0
        assert memory_sink.count("filings_13dg") == 0


class Test13FFeed:
    """rss-13f: submissions plus holdings"""

    def test_holdings_stored_and_issuers_recorded(
        self, orchestrator, sec_client, memory_sink, master, load_fixture
    ):
        accession = "0000950123-25-002701"
        mapping_client = Mock()
        orchestrator.mapping_client = mapping_client
        sec_client.fetch_rss_feed.side_effect = feed(
            {"13F-HR": [feed_entry(accession, form_type="13F-HR", cik="0001067983", company_name="BERKSHIRE HATHAWAY INC")]}
        )
        sec_client.fetch_13f_data.return_value = (
            "12-31-2024",
            parse_info_table(load_fixture("infotable.xml"), accession),
        )

        result = orchestrator.sync_source(RSS_13F)

        assert result.processed == 1
        submission, = memory_sink.rows("submissions_13f")
        assert submission["period_of_report"] == "12-31-2024"
        assert submission["cik"] == "1067983"
        assert memory_sink.count("holdings_13f") == 2
        assert master.get_by_cusip("594918104").issuer_name == "MICROSOFT CORP"
        mapping_client.resolve.assert_not_called()


class TestRunSync:
    """Multi-source runs and retention"""

    def test_failing_source_does_not_stop_others(self, orchestrator, sec_client):
        sec_client.fetch_rss_feed.side_effect = SECFetchError("HTTP 503", status=503)

        summary = orchestrator.run_sync(SyncOptions(sources=[FORM4, BULK]))

        form4, bulk = summary.results
        assert not form4.success
        assert form4.error == "HTTP 503"
        assert bulk.success
        assert bulk.processed == 3
        assert not summary.success
        assert summary.processed == 3

    def test_prunes_past_retention(self, orchestrator, memory_sink):
        memory_sink.upsert_rows(
            "submissions_13f",
            [{"accession_number": "0000950123-21-000001", "filing_date": "2021-11-15"}],
            ["accession_number"],
        )

        summary = orchestrator.run_sync(SyncOptions(sources=[BULK]))

        assert set(summary.pruned) == set(PRUNABLE_TABLES)
        assert summary.pruned["submissions_13f"] == 1
        assert memory_sink.count("submissions_13f") == 3

    def test_dry_run_does_not_prune(self, orchestrator, memory_sink):
        summary = orchestrator.run_sync(SyncOptions(sources=[BULK], dry_run=True))
        assert summary.pruned == {}
        assert memory_sink.deleted == {}


class TestBootstrap13F:
    """Quarter-by-quarter bulk load with resumable progress"""

    @pytest.fixture
    def quarterly(self, sec_client, index_entries):
        older = FormIndexEntry(
            "13F-HR", "BERKSHIRE HATHAWAY INC", "1067983", "2024-11-14", "edgar/data/1067983/0000950123-24-012345.txt"
        )
        indexes = {(2024, 4): [older], (2025, 1): index_entries}
        sec_client.fetch_form_index.side_effect = lambda year, quarter: indexes[(year, quarter)]
        return sec_client

    def test_bootstrap_loads_each_quarter(self, orchestrator, quarterly, memory_sink, state_store):
        committed = orchestrator.bootstrap_13f(["2025q1", "2024Q4"])

        assert committed == {"2024Q4": 1, "2025Q1": 4}
        assert memory_sink.count("submissions_13f") == 5
        assert state_store.is_backfill_complete("13F")

        mark = state_store.get(BULK)
        assert mark.last_processed_date == date(2025, 3, 14)
        assert mark.boundary_accessions == [QUIET_HARBOR]

    def test_failed_quarter_resumes(self, orchestrator, quarterly, state_store):
        quarterly.fetch_form_index.side_effect = [
            [],
            SECFetchError("HTTP 503", status=503),
        ]
        with pytest.raises(SECFetchError):
            orchestrator.bootstrap_13f(["2024Q4", "2025Q1"])

        progress = {q["quarter"]: q["status"] for q in state_store.get_backfill("13F")["quarters"]}
        assert progress == {"2024Q4": QUARTER_COMPLETE, "2025Q1": QUARTER_FAILED}

        quarterly.fetch_form_index.side_effect = None
        quarterly.fetch_form_index.return_value = []
        assert orchestrator.bootstrap_13f(["2024Q4", "2025Q1"]) == {"2025Q1": 0}
        quarterly.fetch_form_index.assert_called_with(2025, 1)

    def test_bootstrap_does_not_rewind_watermark(self, orchestrator, quarterly, state_store):
        state_store.advance(BULK, date(2025, 3, 20), ["later"])
        orchestrator.bootstrap_13f(["2025Q1"])
        assert state_store.get(BULK).last_processed_date == date(2025, 3, 20)

    def test_invalid_quarter(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.bootstrap_13f(["2025Q5"])
