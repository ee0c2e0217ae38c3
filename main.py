#!/usr/bin/env python3
"""
Command line entry point for identifier resolution and filing sync.

Examples:
    python main.py sync --source rss-form4 --dry-run
    python main.py bootstrap-13f --quarters 2024Q1,2024Q2
    python main.py resolve 037833100 594918104
    python main.py lookup AAPL
"""

import argparse
import sys
from typing import List, Optional

from loguru import logger

from secref.config_utils import SecRefConfig
from secref.constants import ALL_SOURCES
from secref.db_models import DatabaseManager, log_table_counts
from secref.log_config import configure_logging
from secref.mapping_cache import DatabaseMappingStore, JsonMappingStore, MappingCache
from secref.models import MappingSuccess
from secref.openfigi_client import OpenFIGIClient
from secref.sec_client import SECHTTPClient
from secref.securities_master import SecuritiesMaster
from secref.storage import SQLStorageSink
from secref.sync import IncrementalSyncOrchestrator, SyncOptions
from secref.sync_state import SyncStateStore


def build_database(config: SecRefConfig) -> Optional[DatabaseManager]:
    if not config.database_url:
        return None
    db_manager = DatabaseManager(config.database_url)
    if db_manager.dialect == "sqlite":
        db_manager.create_tables()
    return db_manager


def build_cache(config: SecRefConfig, db_manager: Optional[DatabaseManager]) -> MappingCache:
    """Database-backed cache when a database is configured, else the JSON file."""
    if db_manager is not None:
        store = DatabaseMappingStore(db_manager)
    else:
        store = JsonMappingStore(config.mapping_cache_path)
    cache = MappingCache(store=store)
    cache.open()
    return cache


def build_orchestrator(config: SecRefConfig) -> IncrementalSyncOrchestrator:
    db_manager = build_database(config)
    if db_manager is None:
        raise SystemExit("DATABASE_URL (or SUPABASE_DATABASE_URL) is required for sync")

    cache = build_cache(config, db_manager)
    master = SecuritiesMaster(config.securities_master_path)
    master.open()

    return IncrementalSyncOrchestrator(
        sec_client=SECHTTPClient(config=config),
        sink=SQLStorageSink(db_manager),
        state_store=SyncStateStore(config.sync_state_path),
        master=master,
        mapping_client=OpenFIGIClient(cache=cache, config=config),
        config=config,
    )


def cmd_sync(args, config: SecRefConfig) -> int:
    orchestrator = build_orchestrator(config)
    options = SyncOptions(sources=args.source, force=args.force, dry_run=args.dry_run)
    if args.dry_run:
        logger.info("=== DRY RUN MODE - No database changes will be made ===")

    summary = orchestrator.run_sync(options)
    for result in summary.results:
        status = "OK" if result.success else f"FAILED ({result.error})"
        logger.info(
            f"{result.source}: {status} - processed={result.processed} failed={result.failed} "
            f"skipped={result.skipped} rows={result.committed_rows} {result.message}"
        )
    for table, deleted in summary.pruned.items():
        if deleted:
            logger.info(f"Pruned {deleted} rows from {table}")
    if not args.dry_run:
        logger.info("Table counts:")
        log_table_counts(orchestrator.sink.db_manager)
    return 0 if summary.success else 1


def cmd_bootstrap_13f(args, config: SecRefConfig) -> int:
    orchestrator = build_orchestrator(config)
    quarters = [q.strip() for q in args.quarters.split(",") if q.strip()]
    committed = orchestrator.bootstrap_13f(quarters)
    for quarter, rows in committed.items():
        logger.info(f"{quarter}: {rows} submissions")
    return 0


def cmd_resolve(args, config: SecRefConfig) -> int:
    cache = build_cache(config, build_database(config))
    client = OpenFIGIClient(cache=cache, config=config)

    with SecuritiesMaster(config.securities_master_path) as master:
        for result in client.resolve(args.cusips):
            if isinstance(result, MappingSuccess):
                master.merge_mapping(result)
                logger.info(f"{result.cusip} → {result.ticker} ({result.name}, {result.exchange_code})")
            else:
                logger.warning(f"{result.cusip}: {result.error} [{result.error_class}]")
        master.save()
    return 0


def cmd_lookup(args, config: SecRefConfig) -> int:
    with SecuritiesMaster(config.securities_master_path) as master:
        record = master.lookup(args.identifier)
        if record is None:
            matches = master.search_by_name(args.identifier)
            if not matches:
                logger.warning(f"No security found for {args.identifier}")
                return 1
            for match in matches:
                logger.info(f"{match.cusip} {match.ticker or '-'} {match.company_name or match.issuer_name}")
            return 0

        for key, value in record.to_dict().items():
            if key != "field_sources":
                logger.info(f"{key}: {value}")
    return 0


def cmd_cache_stats(args, config: SecRefConfig) -> int:
    cache = build_cache(config, build_database(config))
    for key, value in cache.stats().items():
        logger.info(f"{key}: {value}")
    return 0


def cmd_clear_expired(args, config: SecRefConfig) -> int:
    cache = build_cache(config, build_database(config))
    removed = cache.clear_expired_errors()
    logger.info(f"Removed {removed} expired error entries from the CUSIP cache")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SEC identifier resolution and incremental filing sync")
    parser.add_argument(
        "-e", "--env",
        type=str,
        choices=["dev", "prod"],
        default=None,
        help="Environment to use (dev or prod, default: ENVIRONMENT variable)"
    )
    parser.add_argument("--log-level", type=str, default=None, help="Log level (default: LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Run incremental sync")
    sync_parser.add_argument(
        "--source",
        action="append",
        choices=ALL_SOURCES,
        help="Source to sync; repeat for several (default: all)"
    )
    sync_parser.add_argument("--force", action="store_true", help="Ignore the already-ran-today guard")
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and count new filings without writing anything"
    )
    sync_parser.set_defaults(func=cmd_sync)

    bootstrap_parser = subparsers.add_parser("bootstrap-13f", help="Backfill 13F submissions by quarter")
    bootstrap_parser.add_argument("--quarters", required=True, help="Comma separated, e.g. 2024Q1,2024Q2")
    bootstrap_parser.set_defaults(func=cmd_bootstrap_13f)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve CUSIPs via OpenFIGI")
    resolve_parser.add_argument("cusips", nargs="+", help="CUSIPs (6, 8 or 9 characters)")
    resolve_parser.set_defaults(func=cmd_resolve)

    lookup_parser = subparsers.add_parser("lookup", help="Look up a security by CUSIP, ISIN, FIGI, ticker or name")
    lookup_parser.add_argument("identifier")
    lookup_parser.set_defaults(func=cmd_lookup)

    stats_parser = subparsers.add_parser("cache-stats", help="Show CUSIP cache statistics")
    stats_parser.set_defaults(func=cmd_cache_stats)

    clear_parser = subparsers.add_parser("clear-expired", help="Drop expired error entries from the CUSIP cache")
    clear_parser.set_defaults(func=cmd_clear_expired)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level)
    config = SecRefConfig.from_env(args.env)
    return args.func(args, config)


if __name__ == "__main__":
    sys.exit(main())
