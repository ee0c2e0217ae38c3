"""
Tests for persisted watermarks and backfill progress.
"""

import json
from datetime import date

import pytest

from secref.exceptions import SyncError
from secref.models import STATUS_FAILED, STATUS_IDLE, STATUS_RUNNING
from secref.sync_state import (
    FAILED_FILING_RETRY_LIMIT,
    QUARTER_COMPLETE,
    QUARTER_FAILED,
    QUARTER_PENDING,
    QUARTER_PROCESSING,
    RECENT_ACCESSIONS_LIMIT,
    SyncStateStore,
)

SOURCE = "rss-form4"


@pytest.fixture
def store(fake_clock):
    return SyncStateStore(clock=fake_clock.now)


class TestWatermarks:
    """Monotonic advance with same-day boundaries"""

    def test_unknown_source(self, store):
        assert store.get(SOURCE) is None

    def test_advance_never_moves_back(self, store):
        store.advance(SOURCE, date(2025, 3, 14), ["a"])

        with pytest.raises(SyncError) as exc_info:
            store.advance(SOURCE, date(2025, 3, 13), ["b"])
        assert exc_info.value.source == SOURCE
        assert store.get(SOURCE).last_processed_date == date(2025, 3, 14)

    def test_same_day_unions_boundary(self, store):
        store.advance(SOURCE, date(2025, 3, 14), ["a", "b"])
        mark = store.advance(SOURCE, date(2025, 3, 14), ["b", "c"])
        assert mark.boundary_accessions == ["a", "b", "c"]

    def test_later_day_replaces_boundary(self, store):
        store.advance(SOURCE, date(2025, 3, 13), ["a"])
        mark = store.advance(SOURCE, date(2025, 3, 14), ["b"], cursor="b")

        assert mark.boundary_accessions == ["b"]
        assert mark.cursor == "b"
        assert mark.recent_accessions == ["a", "b"]

    def test_cursor_kept_when_not_given(self, store):
        store.advance(SOURCE, date(2025, 3, 13), ["a"], cursor="a")
        assert store.advance(SOURCE, date(2025, 3, 14), ["b"]).cursor == "a"

    def test_recent_window_is_bounded(self, store):
        store.remember_accessions(SOURCE, [f"acc-{n}" for n in range(RECENT_ACCESSIONS_LIMIT + 20)])
        store.remember_accessions(SOURCE, ["acc-25"])

        recent = store.get(SOURCE).recent_accessions
        assert len(recent) == RECENT_ACCESSIONS_LIMIT
        assert recent[-1] == "acc-25", "a re-seen accession moves to the newest end"
        assert "acc-0" not in recent

    def test_status_lifecycle(self, store, fake_clock):
        started = store.mark_started(SOURCE)
        assert started.status == STATUS_RUNNING
        assert started.last_run_at == fake_clock.now()

        failed = store.mark_failed(SOURCE, RuntimeError("boom"))
        assert failed.status == STATUS_FAILED
        assert failed.last_error == "boom"

        assert store.mark_failed(SOURCE, TimeoutError()).last_error == "TimeoutError"

        store.mark_started(SOURCE)
        idle = store.mark_idle(SOURCE)
        assert idle.status == STATUS_IDLE
        assert idle.last_error is None

    def test_returned_marks_are_copies(self, store):
        mark = store.advance(SOURCE, date(2025, 3, 14), ["a"])
        mark.boundary_accessions.append("tampered")
        assert store.get(SOURCE).boundary_accessions == ["a"]


class TestFailedFilings:
    """Retry list for filings that failed on their own"""

    @staticmethod
    def failure(accession, error="HTTP 404"):
        return {
            "accession_number": accession,
            "filing_date": "2025-03-13",
            "form_type": "4",
            "cik": "0001214156",
            "company_name": "COOK TIMOTHY D",
            "error": error,
        }

    def test_repeat_failures_bump_attempts(self, store):
        store.record_failures(SOURCE, [self.failure("a")])
        store.record_failures(SOURCE, [self.failure("a", error="HTTP 410"), self.failure("b")])

        entries = {e["accession_number"]: e for e in store.get(SOURCE).failed_filings}
        assert entries["a"]["attempts"] == 2
        assert entries["a"]["error"] == "HTTP 410"
        assert entries["b"]["attempts"] == 1

    def test_exhausted_entries_stay_recorded(self, store):
        for _ in range(FAILED_FILING_RETRY_LIMIT):
            store.record_failures(SOURCE, [self.failure("a")])
        store.record_failures(SOURCE, [self.failure("b")])

        assert [e["accession_number"] for e in store.retryable_failures(SOURCE)] == ["b"]
        assert len(store.get(SOURCE).failed_filings) == 2, "given-up filings remain visible"

    def test_clear_failures(self, store):
        store.record_failures(SOURCE, [self.failure("a"), self.failure("b")])
        store.clear_failures(SOURCE, ["a", "unknown"])

        assert [e["accession_number"] for e in store.get(SOURCE).failed_filings] == ["b"]

    def test_nothing_recorded_for_unknown_source(self, store):
        assert store.retryable_failures(SOURCE) == []
        store.record_failures(SOURCE, [])
        assert store.get(SOURCE) is None

    def test_retry_list_persisted(self, tmp_path, fake_clock):
        path = tmp_path / "sync_state.json"
        SyncStateStore(str(path), clock=fake_clock.now).record_failures(SOURCE, [self.failure("a")])

        entry, = SyncStateStore(str(path), clock=fake_clock.now).retryable_failures(SOURCE)
        assert entry["accession_number"] == "a"
        assert entry["filing_date"] == "2025-03-13"
        assert entry["attempts"] == 1


class TestPersistence:
    """Atomic JSON file"""

    def test_round_trip(self, tmp_path, fake_clock):
        path = tmp_path / "state" / "sync_state.json"
        store = SyncStateStore(str(path), clock=fake_clock.now)
        store.mark_started(SOURCE)
        store.advance(SOURCE, date(2025, 3, 14), ["a"], cursor="a")
        store.mark_idle(SOURCE)
        store.init_backfill("13F", ["2024Q2", "2024Q1"])

        raw = json.loads(path.read_text())
        assert raw["sources"][SOURCE]["last_processed_date"] == "2025-03-14"
        assert not (tmp_path / "state" / "sync_state.json.tmp").exists()

        reloaded = SyncStateStore(str(path), clock=fake_clock.now)
        mark = reloaded.get(SOURCE)
        assert mark.last_processed_date == date(2025, 3, 14)
        assert mark.last_run_at == fake_clock.now()
        assert mark.boundary_accessions == ["a"]
        assert reloaded.next_pending_quarter("13F") == "2024Q1"

    def test_camel_case_state_is_read(self, tmp_path):
        path = tmp_path / "sync_state.json"
        path.write_text(
            json.dumps(
                {
                    "sources": {
                        "bulk-13F": {
                            "lastRunAt": "2025-03-13T21:00:00Z",
                            "lastProcessedDate": "2025-03-13",
                        }
                    }
                }
            )
        )
        mark = SyncStateStore(str(path)).get("bulk-13F")
        assert mark.source == "bulk-13F"
        assert mark.last_processed_date == date(2025, 3, 13)


class TestBackfill:
    """Per-quarter progress"""

    def test_quarters_sorted_and_pending(self, store):
        progress = store.init_backfill("13F", ["2024Q3", "2024Q1", "2024Q2"])

        assert [q["quarter"] for q in progress["quarters"]] == ["2024Q1", "2024Q2", "2024Q3"]
        assert all(q["status"] == QUARTER_PENDING for q in progress["quarters"])
        assert store.next_pending_quarter("13F") == "2024Q1"
        assert not store.is_backfill_complete("13F")

    def test_reinit_keeps_status(self, store):
        store.init_backfill("13F", ["2024Q1"])
        store.update_quarter("13F", "2024Q1", status=QUARTER_COMPLETE, rows=10)
        progress = store.init_backfill("13F", ["2024Q1", "2024Q2"])

        assert progress["quarters"][0]["status"] == QUARTER_COMPLETE
        assert store.next_pending_quarter("13F") == "2024Q2"

    def test_update_quarter_bookkeeping(self, store):
        store.init_backfill("13F", ["2024Q1", "2024Q2"])

        entry = store.update_quarter("13F", "2024Q1", status=QUARTER_PROCESSING)
        assert "started_at" in entry
        assert store.get_backfill("13F")["current_quarter"] == "2024Q1"

        entry = store.update_quarter("13F", "2024Q1", status=QUARTER_FAILED, error="HTTP 503")
        assert entry["error"] == "HTTP 503"
        assert store.get_backfill("13F")["current_quarter"] is None
        assert store.next_pending_quarter("13F") == "2024Q1", "failed quarters are retried"

        store.update_quarter("13F", "2024Q1", status=QUARTER_COMPLETE)
        store.update_quarter("13F", "2024Q2", status=QUARTER_COMPLETE)
        assert store.is_backfill_complete("13F")
        assert store.next_pending_quarter("13F") is None

    def test_unknown_backfill_or_quarter(self, store):
        with pytest.raises(SyncError):
            store.update_quarter("13F", "2024Q1", status=QUARTER_COMPLETE)

        store.init_backfill("13F", ["2024Q1"])
        with pytest.raises(SyncError):
            store.update_quarter("13F", "2023Q4", status=QUARTER_COMPLETE)

    def test_no_progress(self, store):
        assert store.next_pending_quarter("13F") is None
        assert store.is_backfill_complete("13F") is False
