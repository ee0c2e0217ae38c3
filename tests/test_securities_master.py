"""
Tests for the securities master: precedence, indices, search and persistence.
"""

import json
import random
import string

import pytest

from secref.mapping_cache import MappingCache
from secref.models import (
    SOURCE_EXTERNAL_MAPPING,
    SOURCE_FILING,
    SOURCE_MANUAL,
    SOURCE_MERGED,
    MappingSuccess,
    make_failure,
)
from secref.securities_master import SecuritiesMaster, map_security_type
from secref.validators import calculate_cusip_check_digit

APPLE = "037833100"
MICROSOFT = "594918104"
GOOG_C = "02079K305"
GOOG_A = "38259P508"


def mapping(cusip, ticker, name, figi, now, security_type="Common Stock"):
    return MappingSuccess(
        cusip=cusip,
        figi=figi,
        ticker=ticker,
        name=name,
        exchange_code="US",
        security_type=security_type,
        market_sector="Equity",
        cached_at=now,
    )


@pytest.fixture
def master(fake_clock):
    return SecuritiesMaster(clock=fake_clock.now)


@pytest.fixture
def apple(fake_clock):
    return mapping(APPLE, "AAPL", "Apple Inc", "BBG000B9XRY4", fake_clock.now())


class TestPrecedence:
    """manual > external-mapping > filing, field by field"""

    def test_mapping_creates_external_record(self, master, apple):
        record = master.merge_mapping(apple)

        assert record.ticker == "AAPL"
        assert record.company_name == "Apple Inc"
        assert record.security_type == "EQUITY"
        assert record.isin == "US0378331005"
        assert record.source == SOURCE_EXTERNAL_MAPPING
        assert record.check_digit_valid is True

    def test_manual_field_survives_mapping(self, master, apple):
        master.upsert({"cusip": APPLE, "ticker": "aapl.x"}, source=SOURCE_MANUAL)
        record = master.merge_mapping(apple)

        assert record.ticker == "AAPL.X", "external mapping must not overwrite a manual ticker"
        assert record.company_name == "Apple Inc"
        assert record.field_sources["ticker"] == SOURCE_MANUAL
        assert record.field_sources["company_name"] == SOURCE_EXTERNAL_MAPPING
        assert record.source == SOURCE_MERGED

    def test_filing_cannot_overwrite_mapping(self, master, apple):
        master.merge_mapping(apple)
        record = master.upsert({"cusip": APPLE, "ticker": "APPL", "company_name": "APPLE COMPUTER"}, source=SOURCE_FILING)

        assert record.ticker == "AAPL"
        assert record.company_name == "Apple Inc"

    def test_same_source_overwrites_and_reindexes(self, master, fake_clock):
        master.merge_mapping(mapping(GOOG_A, "GOOG", "Google Inc", "BBG000BHSKN9", fake_clock.now()))
        master.merge_mapping(mapping(GOOG_A, "GOOGL", "Alphabet Inc", "BBG000BHSKN9", fake_clock.now()))

        assert master.get_by_ticker("GOOG") == []
        assert [r.cusip for r in master.get_by_ticker("googl")] == [GOOG_A]
        assert master.search_by_name("google inc") == []

    def test_issuer_name_never_replaces_company_name(self, master, apple):
        master.merge_mapping(apple)
        record = master.add_issuer_name(APPLE, "APPLE INC /CA/")

        assert record.company_name == "Apple Inc"
        assert record.issuer_name == "APPLE INC /CA/"
        assert record.source == SOURCE_MERGED

    def test_issuer_name_kept_once_set(self, master):
        master.add_issuer_name(APPLE, "APPLE INC")
        record = master.add_issuer_name(APPLE, "APPLE COMPUTER INC")

        assert record.issuer_name == "APPLE INC"
        assert record.source == SOURCE_FILING

    def test_issuer_name_skips_bad_input(self, master):
        assert master.add_issuer_name("not a cusip!", "ACME") is None
        assert master.add_issuer_name(APPLE, "   ") is None
        assert len(master) == 0

    def test_failures_are_ignored(self, master, fake_clock):
        assert master.merge_mapping(make_failure(APPLE, "No mapping found", fake_clock.now())) is None
        assert len(master) == 0

    def test_upsert_validation(self, master):
        with pytest.raises(ValueError):
            master.upsert({"cusip": "bad!"})
        with pytest.raises(ValueError):
            master.upsert({"ticker": "AAPL"})
        with pytest.raises(ValueError, match="Unknown security source"):
            master.upsert({"cusip": APPLE}, source="rumor")

    def test_returned_records_are_copies(self, master, apple):
        record = master.merge_mapping(apple)
        record.ticker = "HACK"
        assert master.get_by_cusip(APPLE).ticker == "AAPL"


class TestIndices:
    """Secondary indices stay consistent with the records"""

    def test_failed_write_leaves_indices_untouched(self, master, apple):
        master.merge_mapping(apple)

        with pytest.raises(AttributeError):
            # a non-string FIGI breaks indexing after the old entries were removed
            master.upsert({"cusip": APPLE, "figi": 12345}, source=SOURCE_MANUAL)

        assert master.get_by_cusip(APPLE).figi == "BBG000B9XRY4"
        assert [r.cusip for r in master.get_by_ticker("AAPL")] == [APPLE]
        assert master.get_by_figi("bbg000b9xry4").cusip == APPLE

    def test_ticker_shared_by_share_classes(self, master, fake_clock):
        master.merge_mapping(mapping(GOOG_C, "GOOG", "Alphabet Inc-CL C", "BBG009S3NB30", fake_clock.now()))
        master.merge_mapping(mapping(GOOG_A, "GOOG", "Alphabet Inc-CL A", "BBG000BHSKN9", fake_clock.now()))

        assert [r.cusip for r in master.get_by_ticker("GOOG")] == [GOOG_C, GOOG_A]

    def test_isin_lookup_falls_back_to_embedded_cusip(self, master, apple):
        master.merge_mapping(apple)
        assert master.get_by_isin("us0378331005").cusip == APPLE
        assert master.get_by_isin("GB0002634946") is None

    @pytest.mark.parametrize("seed", [7, 42, 2025])
    def test_random_writes_keep_indices_consistent(self, master, fake_clock, seed):
        rng = random.Random(seed)
        cusips = []
        while len(cusips) < 14:
            base = "".join(rng.choice(string.digits + string.ascii_uppercase) for _ in range(8))
            cusip = base + str(calculate_cusip_check_digit(base))
            if cusip not in cusips:
                cusips.append(cusip)
        tickers = ["AAPL", "MSFT", "GOOG", "BRK", "XOM", "T"]
        figis = [f"BBG00000{n:04d}" for n in range(8)]

        for _ in range(400):
            cusip = rng.choice(cusips)
            if rng.random() < 0.6:
                master.merge_mapping(
                    mapping(cusip, rng.choice(tickers), f"Issuer {cusip}", rng.choice(figis), fake_clock.now())
                )
            else:
                master.upsert(
                    {"cusip": cusip, "ticker": rng.choice(tickers), "figi": rng.choice(figis)},
                    source=SOURCE_MANUAL,
                )

        touched = len(master)
        assert touched <= len(cusips)
        assert len(master.by_figi) <= touched
        assert len(master.by_isin) <= touched
        assert sum(len(owners) for owners in master.by_ticker.values()) <= touched

        for ticker, owners in master.by_ticker.items():
            for cusip in owners:
                assert master.get_by_cusip(cusip).ticker.lower() == ticker, f"{ticker} points at {cusip}"
        for figi, cusip in master.by_figi.items():
            assert master.get_by_cusip(cusip).figi.upper() == figi, f"{figi} points at {cusip}"
        for isin, cusip in master.by_isin.items():
            assert master.get_by_cusip(cusip).isin == isin, f"{isin} points at {cusip}"


class TestSearch:
    """Name scoring"""

    @pytest.fixture
    def populated(self, master, fake_clock):
        now = fake_clock.now()
        master.merge_mapping(mapping(APPLE, "AAPL", "Apple Inc", "BBG000B9XRY4", now))
        master.merge_mapping(mapping(MICROSOFT, "MSFT", "Microsoft Corp", "BBG000BPH459", now))
        master.add_issuer_name(GOOG_A, "Pineapple Holdings")
        return master

    def test_exact_beats_prefix_beats_substring(self, populated):
        assert [r.cusip for r in populated.search_by_name("apple inc")] == [APPLE]

        results = populated.search_by_name("apple")
        assert [r.cusip for r in results] == [APPLE, GOOG_A]

    def test_query_containing_name_matches(self, populated):
        assert [r.cusip for r in populated.search_by_name("Microsoft Corp Class A")] == [MICROSOFT]

    def test_short_query_returns_nothing(self, populated):
        assert populated.search_by_name("a") == []

    def test_limit(self, populated):
        assert len(populated.search_by_name("apple", limit=1)) == 1


class TestLookup:
    """Any identifier, CUSIP first"""

    def test_lookup_by_each_identifier(self, master, apple):
        master.merge_mapping(apple)

        assert master.lookup("037833100").cusip == APPLE
        assert master.lookup("037833").cusip == APPLE
        assert master.lookup("US0378331005").cusip == APPLE
        assert master.lookup("BBG000B9XRY4").cusip == APPLE
        assert master.lookup("aapl").cusip == APPLE
        assert master.lookup("MSFT") is None
        assert master.lookup("  ") is None


class TestPersistence:
    """JSON round trip and lifecycle"""

    def test_round_trip(self, tmp_path, fake_clock, apple):
        path = str(tmp_path / "master" / "securities_master.json")
        with SecuritiesMaster(path, clock=fake_clock.now) as master:
            master.merge_mapping(apple)
            master.upsert({"cusip": APPLE, "ticker": "AAPL.X"}, source=SOURCE_MANUAL)

        data = json.loads(open(path).read())
        assert APPLE in data["securities"]
        assert data["indices"]["by_ticker"] == {"aapl.x": [APPLE]}
        assert data["stats"]["total_securities"] == 1

        reloaded = SecuritiesMaster(path, clock=fake_clock.now)
        record = reloaded.lookup("AAPL.X")
        assert record.company_name == "Apple Inc"
        assert record.field_sources["ticker"] == SOURCE_MANUAL
        assert record.last_updated == fake_clock.now()
        assert reloaded.get_by_figi("BBG000B9XRY4").cusip == APPLE

    def test_save_without_path_is_noop(self, master, apple):
        master.merge_mapping(apple)
        master.save()
        assert len(master) == 1

    def test_sync_from_cache(self, tmp_path, fake_clock, apple):
        cache = MappingCache(clock=fake_clock.now)
        cache.put_many(
            [
                apple,
                make_failure(MICROSOFT, "No mapping found", fake_clock.now()),
                MappingSuccess(cusip=GOOG_A, cached_at=fake_clock.now()),
            ]
        )
        path = tmp_path / "securities_master.json"
        master = SecuritiesMaster(str(path), clock=fake_clock.now)

        assert master.sync_from_cache(cache) == 1
        assert path.exists()
        assert master.stats()["with_ticker"] == 1


class TestMapSecurityType:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Common Stock", "EQUITY"),
            ("Corporate Bond", "DEBT"),
            ("Equity Option", "EQUITY"),
            ("Warrant", "OPTION"),
            ("ETP", "ETF"),
            ("Depositary Receipt", "ADR"),
            ("REIT", "OTHER"),
            (None, None),
        ],
    )
    def test_mapping(self, raw, expected):
        assert map_security_type(raw) == expected
