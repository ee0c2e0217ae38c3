"""
Shared fixtures: fake time, an in-memory storage sink and sample EDGAR documents.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Sequence

import pytest

from secref.rate_limit import reset_shared_limits

FIXTURES_DIR = Path(__file__).parent / "fixtures"


class FakeClock:
    """
    Controllable time source.

    ``now()`` feeds datetime clocks, ``monotonic()`` feeds the rate limiter and
    ``sleep()`` advances both without waiting.
    """

    def __init__(self, start: datetime = datetime(2025, 3, 14, 15, 0, tzinfo=timezone.utc)):
        self.current = start
        self.elapsed = 0.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.elapsed

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        delta = timedelta(seconds=seconds, **kwargs)
        self.current += delta
        self.elapsed += delta.total_seconds()


class MemorySink:
    """StorageSink keeping rows in dicts keyed by primary key."""

    def __init__(self):
        self.tables: Dict[str, Dict[tuple, Dict]] = {}
        self.upsert_calls: List[str] = []
        self.fail_on: set = set()
        self.deleted: Dict[str, int] = {}

    def upsert_rows(self, table: str, rows: List[Dict], key_columns: Sequence[str]) -> int:
        if table in self.fail_on:
            raise RuntimeError(f"simulated commit failure for {table}")
        self.upsert_calls.append(table)
        stored = self.tables.setdefault(table, {})
        for row in rows:
            stored[tuple(row[column] for column in key_columns)] = dict(row)
        return len(rows)

    def delete_older_than(self, table: str, column: str, cutoff) -> int:
        stored = self.tables.get(table, {})
        old = [key for key, row in stored.items() if str(row[column]) < cutoff.isoformat()]
        for key in old:
            del stored[key]
        self.deleted[table] = len(old)
        return len(old)

    def rows(self, table: str) -> List[Dict]:
        return list(self.tables.get(table, {}).values())

    def count(self, table: str) -> int:
        return len(self.tables.get(table, {}))


@pytest.fixture(autouse=True)
def isolated_rate_limits():
    """Every test starts without process-wide limiters."""
    reset_shared_limits()
    yield
    reset_shared_limits()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def memory_sink():
    return MemorySink()


@pytest.fixture
def load_fixture():
    """Reader for sample documents in tests/fixtures."""

    def load(name: str) -> str:
        return (FIXTURES_DIR / name).read_text()

    return load
