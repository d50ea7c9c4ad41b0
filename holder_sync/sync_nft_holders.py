#!/usr/bin/env python3
"""
Sync NFT holders for a set of NEAR collections into the holders database.

This script scans every configured NFT contract through NEAR RPC (or the
NearBlocks indexer), counts how many tokens each account holds per
contract, and upserts the result into the legion_holders table. Without
--apply it only previews what would be written.
"""

import argparse
import os
import signal
import sys
import threading
from dataclasses import replace
from typing import List, Optional

from holder_sync.lib.config import (
    DEFAULT_NEARBLOCKS_URL,
    DEFAULT_RPC_URL,
    DEFAULT_TIMEOUT,
    SUPPORTED_SOURCES,
    ConfigurationError,
    SyncConfig,
    load_config,
)
from holder_sync.lib.coordinator import SyncCoordinator
from holder_sync.lib.formatters import format_summary, format_summary_json, log, write_csv
from holder_sync.lib.governor import SyncCancelled
from holder_sync.lib.near_client import create_fetcher
from holder_sync.lib.persistence import (
    D1_MAX_ROWS_PER_BATCH,
    BatchWriter,
    D1HolderSink,
    SqliteHolderSink,
    flatten_table,
)


DEFAULT_LOCAL_DB = os.path.join(".wrangler", "holders.sqlite")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def build_config(parsed_args: argparse.Namespace) -> SyncConfig:
    """
    Build the sync configuration from an optional file and CLI overrides.

    Raises:
        ConfigurationError: If the resulting configuration is invalid
    """
    config = load_config(parsed_args.config) if parsed_args.config else SyncConfig()

    overrides = {}
    if parsed_args.batch_size is not None:
        overrides["batch_size"] = parsed_args.batch_size
    if parsed_args.write_batch_size is not None:
        overrides["write_batch_size"] = parsed_args.write_batch_size
    if parsed_args.workers is not None:
        overrides["max_workers"] = parsed_args.workers
    if overrides:
        config = replace(config, **overrides)

    if parsed_args.collections:
        config = config.only(parsed_args.collections)

    if parsed_args.remote and config.write_batch_size > D1_MAX_ROWS_PER_BATCH:
        raise ConfigurationError(
            f"write batch size {config.write_batch_size} exceeds the remote limit "
            f"of {D1_MAX_ROWS_PER_BATCH} rows"
        )

    return config.validate()


def create_sink(parsed_args: argparse.Namespace):
    """
    Create the store for --apply runs.

    --remote targets the production D1 database, otherwise the local SQLite file.

    Raises:
        ConfigurationError: If remote credentials are missing
    """
    if not parsed_args.remote:
        return SqliteHolderSink(parsed_args.local_db)

    missing = [
        flag
        for flag, value in (
            ("--cf-account-id", parsed_args.cf_account_id),
            ("--cf-api-token", parsed_args.cf_api_token),
            ("--d1-database-id", parsed_args.d1_database_id),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(f"Remote target requires {', '.join(missing)}")

    return D1HolderSink(
        account_id=parsed_args.cf_account_id,
        database_id=parsed_args.d1_database_id,
        api_token=parsed_args.cf_api_token,
        timeout=parsed_args.timeout,
    )


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sync NEAR NFT holders into the holders database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Preview holders for the default collections
  %(prog)s

  # Write to the local database
  %(prog)s --apply

  # Write to the production database
  %(prog)s --apply --remote
        """,
    )

    parser.add_argument("--apply", action="store_true", help="Write changes (default: preview only)")
    parser.add_argument(
        "--remote",
        action="store_true",
        help="Target the production D1 database instead of the local one",
    )
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument(
        "--source",
        choices=SUPPORTED_SOURCES,
        default="rpc",
        help="Data source (default: rpc)",
    )
    parser.add_argument("--rpc-url", default=DEFAULT_RPC_URL, help="NEAR RPC endpoint")
    parser.add_argument("--nearblocks-url", default=DEFAULT_NEARBLOCKS_URL, help="NearBlocks API base URL")
    parser.add_argument(
        "--nearblocks-api-key",
        default=os.environ.get("NEARBLOCKS_API_KEY"),
        help="NearBlocks API key (env: NEARBLOCKS_API_KEY)",
    )
    parser.add_argument("--collections", nargs="+", help="Only sync these contract ids")
    parser.add_argument("--batch-size", type=int, help="Tokens requested per range call")
    parser.add_argument("--write-batch-size", type=int, help="Rows per database batch")
    parser.add_argument("--workers", type=int, help="Collections scanned in parallel (default: 1)")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Per-request timeout in seconds")
    parser.add_argument(
        "--local-db",
        default=os.environ.get("HOLDER_SYNC_LOCAL_DB", DEFAULT_LOCAL_DB),
        help="Local SQLite database path (env: HOLDER_SYNC_LOCAL_DB)",
    )
    parser.add_argument(
        "--cf-account-id",
        default=os.environ.get("CLOUDFLARE_ACCOUNT_ID"),
        help="Cloudflare account id (env: CLOUDFLARE_ACCOUNT_ID)",
    )
    parser.add_argument(
        "--cf-api-token",
        default=os.environ.get("CLOUDFLARE_API_TOKEN"),
        help="Cloudflare API token (env: CLOUDFLARE_API_TOKEN)",
    )
    parser.add_argument(
        "--d1-database-id",
        default=os.environ.get("D1_DATABASE_ID"),
        help="D1 database id (env: D1_DATABASE_ID)",
    )
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    parser.add_argument("--output", help="Also write upsert rows to a CSV file (timestamp auto-appended)")
    return parser


def main(args: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        args: Command line arguments (uses sys.argv if None)

    Returns:
        Exit code (0 for success, 1 for failure, 130 when cancelled)
    """
    parsed_args = create_parser().parse_args(args)

    # Everything that can be rejected is checked before any network call
    try:
        config = build_config(parsed_args)
        sink = create_sink(parsed_args) if parsed_args.apply else None
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    # Ctrl+C stops at the next wait or between database batches
    cancel_event = threading.Event()
    handle_signals = threading.current_thread() is threading.main_thread()
    if handle_signals:
        previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: cancel_event.set())

    log("sync", f"Source: {parsed_args.source}")
    log("sync", f"Target: {'remote' if parsed_args.remote else 'local'} ({'apply' if parsed_args.apply else 'preview'})")

    def fetcher_factory():
        return create_fetcher(
            parsed_args.source,
            rpc_url=parsed_args.rpc_url,
            nearblocks_url=parsed_args.nearblocks_url,
            nearblocks_api_key=parsed_args.nearblocks_api_key,
            timeout=parsed_args.timeout,
        )

    try:
        coordinator = SyncCoordinator(config, fetcher_factory, cancel_event)
        report, table = coordinator.run()

        writer = BatchWriter(sink, config.write_batch_size, cancel_event)
        persist = writer.persist(table, dry_run=not parsed_args.apply)
    except SyncCancelled:
        log("sync", "Cancelled. Nothing further was written.")
        return EXIT_CANCELLED
    finally:
        if handle_signals:
            signal.signal(signal.SIGINT, previous_handler)
        if sink is not None:
            sink.close()

    if parsed_args.output:
        csv_file = write_csv(flatten_table(table), parsed_args.output)
        log("sync", f"Rows written to: {csv_file}")

    if parsed_args.json:
        print(format_summary_json(report, persist))
    else:
        print(format_summary(report, persist))

    if not parsed_args.apply:
        return EXIT_OK
    if cancel_event.is_set():
        return EXIT_CANCELLED
    if persist.error:
        return EXIT_FAILURE
    if report.failed_collections and len(report.failed_collections) == len(config.collections):
        return EXIT_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
