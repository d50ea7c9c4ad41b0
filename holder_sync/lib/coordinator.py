"""
Multi-collection coordination.

Runs a CollectionSyncer over every configured collection, merges the
completed counts into one cross-collection table and builds the SyncReport.
One failing collection never stops the others.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

from .collection_sync import CollectionSyncer
from .config import CollectionConfig, SyncConfig
from .formatters import log
from .governor import RateGovernor, SyncCancelled
from .models import CollectionResult, CrossCollectionTable, OwnershipCount, SyncReport


def merge_counts(table: CrossCollectionTable, collection: str, counts: OwnershipCount) -> None:
    """
    Merge one collection's counts into the cross-collection table in place.

    Keys are (owner, collection) pairs, so merge order does not matter.
    Zero quantities are not materialised.
    """
    for owner, quantity in counts.items():
        if quantity <= 0:
            continue
        table.setdefault(owner, {})[collection] = quantity


def count_records(table: CrossCollectionTable) -> int:
    """Number of (owner, collection) ownership records in the table."""
    return sum(len(collections) for collections in table.values())


def build_report(results: List[CollectionResult], table: CrossCollectionTable) -> SyncReport:
    """Build the final report from per-collection results and the merged table."""
    holders: Dict[str, int] = {}
    tokens: Dict[str, int] = {}
    failed: List[Tuple[str, str]] = []

    for result in results:
        if result.completed:
            holders[result.collection] = len(result.counts or {})
            tokens[result.collection] = sum((result.counts or {}).values())
        else:
            failed.append((result.collection, result.error or "unknown error"))

    return SyncReport(
        total_unique_owners=len(table),
        total_records=count_records(table),
        holders_per_collection=holders,
        tokens_per_collection=tokens,
        failed_collections=tuple(failed),
    )


class SyncCoordinator:
    """
    Runs collection scans and merges their results.

    Collections run sequentially by default, which keeps a single shared
    source within its rate limit. With max_workers > 1 each collection gets
    its own fetcher and governor from fetcher_factory, so every channel is
    paced on its own.
    """

    def __init__(
        self,
        config: SyncConfig,
        fetcher_factory: Callable[[], object],
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            config: Validated sync configuration
            fetcher_factory: Callable returning a fresh range fetcher
            cancel_event: Event that cancels the run when set
        """
        self.config = config
        self.fetcher_factory = fetcher_factory
        self.cancel_event = cancel_event or threading.Event()
        self.results: List[CollectionResult] = []

    def _new_governor(self) -> RateGovernor:
        return RateGovernor(self.fetcher_factory(), self.config.retry, self.cancel_event)

    def _sync_one(self, collection: CollectionConfig, governor: RateGovernor) -> CollectionResult:
        syncer = CollectionSyncer(governor, self.config)
        return syncer.sync(collection)

    @staticmethod
    def _close(governor: RateGovernor) -> None:
        close = getattr(governor.fetcher, "close", None)
        if callable(close):
            close()

    def _run_sequential(self) -> List[CollectionResult]:
        governor = self._new_governor()
        results: List[CollectionResult] = []
        try:
            for i, collection in enumerate(self.config.collections):
                if i > 0:
                    governor.wait(self.config.collection_delay)
                results.append(self._sync_one(collection, governor))
        finally:
            self._close(governor)
        return results

    def _run_parallel(self) -> List[CollectionResult]:
        def task(collection: CollectionConfig) -> CollectionResult:
            governor = self._new_governor()
            try:
                return self._sync_one(collection, governor)
            finally:
                self._close(governor)

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = [executor.submit(task, c) for c in self.config.collections]
            try:
                return [future.result() for future in futures]
            except SyncCancelled:
                self.cancel_event.set()
                raise

    def run(self) -> Tuple[SyncReport, CrossCollectionTable]:
        """
        Sync every configured collection.

        Returns:
            Tuple of (report, cross-collection table)

        Raises:
            SyncCancelled: If the run is cancelled
        """
        if self.config.max_workers > 1 and len(self.config.collections) > 1:
            self.results = self._run_parallel()
        else:
            self.results = self._run_sequential()

        table: CrossCollectionTable = {}
        for result in self.results:
            if result.completed:
                merge_counts(table, result.collection, result.counts or {})
            else:
                log(result.collection, f"FAILED: {result.error}. Continuing with other collections.")

        return build_report(self.results, table), table
