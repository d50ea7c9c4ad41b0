"""
Pytest configuration and shared fixtures for holder-sync tests.
"""

import pytest

from holder_sync.lib.config import CollectionConfig, RetryPolicy, SyncConfig
from holder_sync.lib.models import FetchEmpty, FetchOk, TokenRecord


class ScriptedFetcher:
    """
    Range fetcher that replays scripted results per collection.

    Each script entry is returned for the next call on that collection;
    lists of (token_id, owner_id) tuples become FetchOk results. Once a
    script runs out, FetchEmpty is returned.
    """

    def __init__(self, scripts=None):
        self.scripts = {k: list(v) for k, v in (scripts or {}).items()}
        self.calls = []

    def fetch_range(self, collection, start_index, batch_size):
        self.calls.append((collection, start_index, batch_size))
        script = self.scripts.get(collection, [])
        if not script:
            return FetchEmpty()
        item = script.pop(0)
        if isinstance(item, list):
            return FetchOk([TokenRecord(token_id=t, owner_id=o) for t, o in item])
        return item

    def calls_for(self, collection):
        return [call for call in self.calls if call[0] == collection]


@pytest.fixture
def scripted_fetcher():
    """Factory for ScriptedFetcher instances."""
    return ScriptedFetcher


@pytest.fixture
def fast_retry():
    """Retry policy with no waiting, for predictable tests."""
    return RetryPolicy(
        request_delay=0,
        rate_limit_backoff=0,
        max_rate_limit_waits=3,
        max_attempts=3,
        initial_delay=0,
        max_delay=0,
        jitter=0,
    )


@pytest.fixture
def make_config(fast_retry):
    """Build a SyncConfig with synthetic collections and no delays."""

    def _make(*collection_ids, batch_size=2, empty_batch_threshold=3, max_index=None, **kwargs):
        collections = tuple(CollectionConfig(cid, max_index) for cid in collection_ids)
        return SyncConfig(
            collections=collections,
            batch_size=batch_size,
            empty_batch_threshold=empty_batch_threshold,
            collection_delay=0,
            retry=fast_retry,
            **kwargs,
        )

    return _make


@pytest.fixture
def sample_contract():
    """Sample NEAR NFT contract id."""
    return "ascendant.nearlegion.near"


@pytest.fixture
def rpc_url():
    """Mock NEAR RPC endpoint."""
    return "https://rpc.test.near.org"


@pytest.fixture
def nearblocks_url():
    """Mock NearBlocks API base URL."""
    return "https://api.nearblocks.test/v1"
