"""
Collection sync orchestration.

This module drives a rate governor across the full index space of a single
NFT collection and decides when the scan is complete. A scan either
completes with the full ownership count or is aborted, in which case the
partial count is dropped.
"""

from typing import Optional

from .accumulator import HolderAccumulator
from .config import CollectionConfig, SyncConfig
from .formatters import log
from .governor import RateGovernor
from .models import (
    STATUS_ABORTED,
    STATUS_COMPLETED,
    CollectionResult,
    FatalFailure,
    FetchEmpty,
)
from .near_client import SourceError

# Extra indexes scanned past the reported supply; token storage order is not
# contiguous, so a supply-sized window can miss the tail.
SUPPLY_PADDING = 100

# Upper bound when neither configuration nor the source gives one.
# The empty-batch threshold normally ends the scan long before this.
DEFAULT_HARD_INDEX_CAP = 1_000_000

STOP_TERMINAL = "source_exhausted"
STOP_EMPTY_BATCHES = "empty_batches"
STOP_UPPER_BOUND = "upper_bound"


class CollectionSyncer:
    """
    Scans one collection at a time through a RateGovernor.

    Scanning is strictly sequential: a range is only requested once the
    previous range is known not to be terminal.
    """

    def __init__(self, governor: RateGovernor, config: Optional[SyncConfig] = None):
        self.governor = governor
        self.config = config or SyncConfig()

    def resolve_upper_bound(self, collection: CollectionConfig) -> int:
        """
        Pick the highest index to scan for a collection.

        Uses the configured max_index when present, otherwise the contract's
        reported total supply plus SUPPLY_PADDING when the source supports a
        supply query, otherwise DEFAULT_HARD_INDEX_CAP. The supply query goes
        through the governor, so rate limits on it are waited out.
        """
        if collection.max_index is not None:
            return collection.max_index

        if not callable(getattr(self.governor.fetcher, "total_supply", None)):
            return DEFAULT_HARD_INDEX_CAP

        collection_id = collection.collection_id
        try:
            supply = self.governor.total_supply(collection_id)
        except SourceError as e:
            log(collection_id, f"WARN: could not read total supply ({e}), relying on empty batches")
            supply = None
        else:
            if supply is None:
                log(collection_id, "WARN: total supply is not a count, relying on empty batches")
        self.governor.pace()

        if supply is None:
            return DEFAULT_HARD_INDEX_CAP
        log(collection_id, f"Total supply {supply}, scanning to {supply + SUPPLY_PADDING}")
        return supply + SUPPLY_PADDING

    def sync(self, collection: CollectionConfig) -> CollectionResult:
        """
        Scan a collection from index 0 until a termination condition holds.

        Args:
            collection: The collection and its index bound

        Returns:
            CollectionResult with counts on completion, or an error on abort

        Raises:
            SyncCancelled: If the run is cancelled mid-scan
        """
        collection_id = collection.collection_id
        batch_size = self.config.batch_size
        threshold = self.config.empty_batch_threshold
        upper_bound = self.resolve_upper_bound(collection)

        accumulator = HolderAccumulator(collection_id)
        cursor = accumulator.cursor
        calls = 0
        stop_reason = STOP_UPPER_BOUND

        log(collection_id, f"Starting scan (max index {upper_bound}, batch {batch_size})")

        while cursor.current_index <= upper_bound:
            if calls > 0:
                self.governor.pace()

            start = cursor.current_index
            result = self.governor.fetch(collection_id, start, batch_size)
            calls += 1

            if isinstance(result, FatalFailure):
                log(collection_id, f"ERROR at index {start}: {result.reason}. Discarding partial counts.")
                return CollectionResult(
                    collection=collection_id,
                    status=STATUS_ABORTED,
                    error=result.reason,
                    calls=calls,
                    tokens_seen=accumulator.tokens_seen,
                    upper_bound=upper_bound,
                )

            if isinstance(result, FetchEmpty):
                stop_reason = STOP_TERMINAL
                break

            new_tokens = accumulator.fold(result.records)
            accumulator.advance(batch_size)

            percent = min(start / upper_bound * 100, 100.0) if upper_bound else 100.0
            if new_tokens > 0:
                log(
                    collection_id,
                    f"[{start}/{upper_bound}] {percent:.1f}% - {len(result.records)} tokens, "
                    f"{new_tokens} new, {len(accumulator.counts)} holders total",
                )
            else:
                log(
                    collection_id,
                    f"[{start}/{upper_bound}] {percent:.1f}% - No new tokens "
                    f"({cursor.consecutive_empty_batches}/{threshold} empty)",
                )

            if cursor.consecutive_empty_batches >= threshold:
                stop_reason = STOP_EMPTY_BATCHES
                break

        counts = accumulator.counts
        log(
            collection_id,
            f"Done: {len(counts)} holders, {accumulator.tokens_seen} tokens ({stop_reason})",
        )
        return CollectionResult(
            collection=collection_id,
            status=STATUS_COMPLETED,
            counts=counts,
            stop_reason=stop_reason,
            calls=calls,
            tokens_seen=accumulator.tokens_seen,
            upper_bound=upper_bound,
        )
