"""
Data models for NFT holder syncing.

This module defines the records that flow through a sync run: raw token
ownership records, fetch outcomes, per-collection scan state and results,
and the report and persistence summaries produced at the end of a run.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple, Union


# Column order for the legion_holders table and CSV output
HOLDER_COLUMNS = [
    "account_id",
    "contract_id",
    "quantity",
    "last_synced_at",
    "synced_at",
]

STATUS_COMPLETED = "completed"
STATUS_ABORTED = "aborted"

# Owner -> quantity, scoped to one collection
OwnershipCount = Dict[str, int]

# Owner -> (collection -> quantity)
CrossCollectionTable = Dict[str, Dict[str, int]]


@dataclass(frozen=True)
class TokenRecord:
    """One on-chain item and its current owner."""

    token_id: str
    owner_id: str


@dataclass(frozen=True)
class FetchOk:
    """A range was fetched; records may be empty."""

    records: List[TokenRecord]


@dataclass(frozen=True)
class FetchEmpty:
    """The source affirmatively reports there is no more data."""


@dataclass(frozen=True)
class TransientFailure:
    """A retryable failure (rate limit, gas limit, timeout, bad payload)."""

    reason: str
    rate_limited: bool = False


@dataclass(frozen=True)
class FatalFailure:
    """A failure that retrying will not fix within this run."""

    reason: str


FetchResult = Union[FetchOk, FetchEmpty, TransientFailure, FatalFailure]


@dataclass
class ScanCursor:
    """Mutable progress state for a single collection scan."""

    current_index: int = 0
    seen_token_ids: Set[str] = field(default_factory=set)
    consecutive_empty_batches: int = 0


@dataclass
class CollectionResult:
    """
    Result of scanning a single collection.

    counts is only set when the scan completed; an aborted scan carries
    the error instead so undercounts are never reported as ground truth.
    """

    collection: str
    status: str
    counts: Optional[OwnershipCount] = None
    error: Optional[str] = None
    stop_reason: Optional[str] = None
    calls: int = 0
    tokens_seen: int = 0
    upper_bound: Optional[int] = None

    @property
    def completed(self) -> bool:
        return self.status == STATUS_COMPLETED


@dataclass(frozen=True)
class SyncReport:
    """Summary of one full sync run."""

    total_unique_owners: int
    total_records: int
    holders_per_collection: Dict[str, int]
    tokens_per_collection: Dict[str, int]
    failed_collections: Tuple[Tuple[str, str], ...] = ()

    @property
    def failed_collection_ids(self) -> List[str]:
        return [collection for collection, _ in self.failed_collections]

    def to_dict(self) -> Dict[str, Any]:
        """Convert the report to a JSON-serialisable dict."""
        return {
            "total_unique_owners": self.total_unique_owners,
            "total_records": self.total_records,
            "holders_per_collection": dict(self.holders_per_collection),
            "tokens_per_collection": dict(self.tokens_per_collection),
            "failed_collections": [
                {"collection": collection, "error": error}
                for collection, error in self.failed_collections
            ],
        }


@dataclass(frozen=True)
class HolderRow:
    """One idempotent upsert tuple keyed by (account_id, contract_id)."""

    account_id: str
    contract_id: str
    quantity: int
    last_synced_at: int
    synced_at: int

    def to_csv_row(self) -> List[str]:
        """Convert the row to a CSV row (list of strings)."""
        return [
            self.account_id,
            self.contract_id,
            str(self.quantity),
            str(self.last_synced_at),
            str(self.synced_at),
        ]


@dataclass
class PersistResult:
    """Outcome of the persistence phase."""

    total_rows: int
    total_batches: int
    batches_committed: int = 0
    batches_failed: int = 0
    error: Optional[str] = None
    dry_run: bool = False
    target: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "total_batches": self.total_batches,
            "batches_committed": self.batches_committed,
            "batches_failed": self.batches_failed,
            "error": self.error,
            "dry_run": self.dry_run,
            "target": self.target,
        }
