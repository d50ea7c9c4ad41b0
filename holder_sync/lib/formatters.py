"""
Output formatters for holder sync runs.

This module handles console progress lines, the human-readable summary,
the JSON summary for automation, and CSV export of upsert rows with
timestamp-based filenames.
"""

import csv
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional, TextIO

from .models import HOLDER_COLUMNS, HolderRow, PersistResult, SyncReport


def log(scope: str, message: str) -> None:
    """Log a message with a scope prefix to stderr."""
    print(f"[{scope}] {message}", file=sys.stderr)


def generate_timestamp() -> str:
    """
    Generate a timestamp string for filenames.

    Returns:
        Timestamp in YYYYMMDD_HHMMSS format
    """
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def generate_filename(base_path: str, timestamp: Optional[str] = None) -> str:
    """
    Generate a timestamped filename for a CSV export.

    Examples:
        generate_filename("holders.csv", "20241214_153022")
        -> "holders_20241214_153022.csv"
    """
    if timestamp is None:
        timestamp = generate_timestamp()

    path = Path(base_path)
    suffix = path.suffix or ".csv"
    return str(path.parent / f"{path.stem}_{timestamp}{suffix}")


def write_csv_to_stream(rows: List[HolderRow], stream: TextIO) -> None:
    """Write holder rows to a CSV stream."""
    writer = csv.writer(stream)
    writer.writerow(HOLDER_COLUMNS)

    for row in rows:
        writer.writerow(row.to_csv_row())


def write_csv(rows: List[HolderRow], output_path: str) -> str:
    """
    Write holder rows to a timestamped CSV file.

    Returns:
        Path of the written file
    """
    path = generate_filename(output_path)
    with open(path, "w", newline="", encoding="utf-8") as f:
        write_csv_to_stream(rows, f)
    return path


def format_summary(report: SyncReport, persist: Optional[PersistResult] = None) -> str:
    """
    Render the human-readable run summary.

    Args:
        report: Result of the sync run
        persist: Persistence outcome, if the persistence phase ran

    Returns:
        Multi-line summary text
    """
    rule = "=" * 60
    lines = [rule, "SYNC SUMMARY", rule]
    lines.append(f"  Unique holders: {report.total_unique_owners}")
    lines.append(f"  Ownership records: {report.total_records}")

    if report.holders_per_collection:
        lines.append("  Holders per collection:")
        for collection, holders in report.holders_per_collection.items():
            tokens = report.tokens_per_collection.get(collection, 0)
            lines.append(f"    {collection}: {holders} holders, {tokens} tokens")

    if report.failed_collections:
        lines.append("  Failed collections:")
        for collection, error in report.failed_collections:
            lines.append(f"    {collection}: {error}")

    if persist is not None:
        if persist.dry_run:
            lines.append(
                f"  [PREVIEW MODE] {persist.total_rows} rows in {persist.total_batches} batches "
                f"would be written. Run with --apply to execute the changes."
            )
        else:
            lines.append(
                f"  Batches committed ({persist.target}): "
                f"{persist.batches_committed}/{persist.total_batches}"
            )
            if persist.error:
                lines.append(f"  Batches failed: {persist.batches_failed}")
                lines.append(f"  Persistence error: {persist.error}")

    lines.append(rule)
    return "\n".join(lines)


def format_summary_json(report: SyncReport, persist: Optional[PersistResult] = None) -> str:
    """Render the machine-readable summary as JSON."""
    data = report.to_dict()
    data["persistence"] = persist.to_dict() if persist is not None else None
    return json.dumps(data, indent=2, sort_keys=True)
