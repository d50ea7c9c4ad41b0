"""
Per-collection holder accumulation with token-level deduplication.
"""

from collections import defaultdict
from typing import DefaultDict, Iterable, Optional

from .models import OwnershipCount, ScanCursor, TokenRecord


class HolderAccumulator:
    """
    Folds token records into per-owner counts for one collection.

    Sources can return the same token in more than one range (storage order
    shifts, overlapping pages), so each token id is only ever counted once.
    """

    def __init__(self, collection: str, cursor: Optional[ScanCursor] = None):
        self.collection = collection
        self.cursor = cursor or ScanCursor()
        self._counts: DefaultDict[str, int] = defaultdict(int)

    def is_duplicate(self, token_id: str) -> bool:
        return token_id in self.cursor.seen_token_ids

    def fold(self, records: Iterable[TokenRecord]) -> int:
        """
        Add a batch of records, skipping tokens already seen.

        Updates the consecutive empty batch counter: a batch that adds no
        new tokens increments it, any new token resets it.

        Returns:
            Number of new tokens added
        """
        new_tokens = 0
        for record in records:
            if self.is_duplicate(record.token_id):
                continue
            self.cursor.seen_token_ids.add(record.token_id)
            self._counts[record.owner_id] += 1
            new_tokens += 1

        if new_tokens == 0:
            self.cursor.consecutive_empty_batches += 1
        else:
            self.cursor.consecutive_empty_batches = 0
        return new_tokens

    def advance(self, step: int) -> None:
        self.cursor.current_index += step

    @property
    def tokens_seen(self) -> int:
        return len(self.cursor.seen_token_ids)

    @property
    def counts(self) -> OwnershipCount:
        """Snapshot of owner -> quantity."""
        return dict(self._counts)
