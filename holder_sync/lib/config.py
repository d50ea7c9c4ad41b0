"""
Sync configuration.

Collections and their index bounds are passed to the coordinator as an
explicit SyncConfig instead of living in module globals, so runs can be
pointed at synthetic bounds in tests or at a JSON file in production.
"""

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence


DEFAULT_RPC_URL = "https://rpc.mainnet.near.org"
DEFAULT_NEARBLOCKS_URL = "https://api.nearblocks.io/v1"

# Scan configuration
DEFAULT_BATCH_SIZE = 10
DEFAULT_EMPTY_BATCH_THRESHOLD = 10
DEFAULT_REQUEST_DELAY = 0.3  # seconds between range calls
DEFAULT_COLLECTION_DELAY = 1.0  # seconds between collections
DEFAULT_TIMEOUT = 30.0  # per HTTP call

# Retry configuration
DEFAULT_RATE_LIMIT_BACKOFF = 5.0  # seconds
DEFAULT_MAX_RATE_LIMIT_WAITS = 20
DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY = 32.0
DEFAULT_JITTER = 0.1  # ±10%

# Persistence configuration
DEFAULT_WRITE_BATCH_SIZE = 50

SUPPORTED_SOURCES = ["rpc", "nearblocks"]


class ConfigurationError(Exception):
    """Raised when the sync configuration is missing or invalid."""


@dataclass(frozen=True)
class CollectionConfig:
    """
    One NFT contract to sync.

    max_index is the highest token index worth requesting. It comes from
    out-of-band knowledge of the contract and must be kept in sync with it;
    None lets the syncer estimate it from the contract's total supply.
    """

    collection_id: str
    max_index: Optional[int] = None


# Legion contracts and their known index bounds
DEFAULT_COLLECTIONS = (
    CollectionConfig("nearlegion.nfts.tg", 500),
    CollectionConfig("ascendant.nearlegion.near", 500),
    CollectionConfig("initiate.nearlegion.near", 18000),
)


@dataclass(frozen=True)
class RetryPolicy:
    """Pacing and retry settings for the rate governor."""

    request_delay: float = DEFAULT_REQUEST_DELAY
    rate_limit_backoff: float = DEFAULT_RATE_LIMIT_BACKOFF
    max_rate_limit_waits: int = DEFAULT_MAX_RATE_LIMIT_WAITS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_INITIAL_DELAY
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    max_delay: float = DEFAULT_MAX_DELAY
    jitter: float = DEFAULT_JITTER


@dataclass(frozen=True)
class SyncConfig:
    """Everything the coordinator needs to run a sync."""

    collections: Sequence[CollectionConfig] = DEFAULT_COLLECTIONS
    batch_size: int = DEFAULT_BATCH_SIZE
    empty_batch_threshold: int = DEFAULT_EMPTY_BATCH_THRESHOLD
    collection_delay: float = DEFAULT_COLLECTION_DELAY
    write_batch_size: int = DEFAULT_WRITE_BATCH_SIZE
    max_workers: int = 1
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def validate(self) -> "SyncConfig":
        """
        Check the configuration before any network activity.

        Returns:
            self, so calls can be chained

        Raises:
            ConfigurationError: If any setting is invalid
        """
        if not self.collections:
            raise ConfigurationError("No collections configured")

        seen = set()
        for collection in self.collections:
            if not collection.collection_id or not collection.collection_id.strip():
                raise ConfigurationError("Collection id must be a non-empty string")
            if collection.collection_id in seen:
                raise ConfigurationError(f"Duplicate collection: {collection.collection_id}")
            seen.add(collection.collection_id)
            if collection.max_index is not None and collection.max_index < 0:
                raise ConfigurationError(
                    f"Invalid max_index for {collection.collection_id}: {collection.max_index}"
                )

        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")
        if self.empty_batch_threshold <= 0:
            raise ConfigurationError(
                f"empty_batch_threshold must be positive, got {self.empty_batch_threshold}"
            )
        if self.write_batch_size <= 0:
            raise ConfigurationError(
                f"write_batch_size must be positive, got {self.write_batch_size}"
            )
        if self.max_workers <= 0:
            raise ConfigurationError(f"max_workers must be positive, got {self.max_workers}")
        if self.retry.max_attempts <= 0:
            raise ConfigurationError(
                f"max_attempts must be positive, got {self.retry.max_attempts}"
            )
        if self.retry.max_rate_limit_waits < 0:
            raise ConfigurationError("max_rate_limit_waits cannot be negative")
        for name in ("request_delay", "rate_limit_backoff", "initial_delay", "max_delay"):
            if getattr(self.retry, name) < 0:
                raise ConfigurationError(f"{name} cannot be negative")
        return self

    def only(self, collection_ids: Sequence[str]) -> "SyncConfig":
        """
        Restrict the run to a subset of the configured collections.

        Unknown ids are added with no bound, so they rely on supply estimation.
        """
        by_id = {c.collection_id: c for c in self.collections}
        selected = [by_id.get(cid, CollectionConfig(cid)) for cid in collection_ids]
        return replace(self, collections=tuple(selected))


def _parse_collections(raw: Any) -> List[CollectionConfig]:
    if not isinstance(raw, list):
        raise ConfigurationError("'collections' must be a list")

    collections: List[CollectionConfig] = []
    for item in raw:
        if isinstance(item, str):
            collections.append(CollectionConfig(item))
            continue
        if not isinstance(item, dict) or "id" not in item:
            raise ConfigurationError(f"Invalid collection entry: {item!r}")
        max_index = item.get("max_index")
        if max_index is not None and not isinstance(max_index, int):
            raise ConfigurationError(f"max_index for {item['id']} must be an integer")
        collections.append(CollectionConfig(str(item["id"]), max_index))
    return collections


def config_from_dict(data: Dict[str, Any]) -> SyncConfig:
    """
    Build a SyncConfig from a plain dict (usually parsed JSON).

    Missing keys fall back to the defaults.

    Raises:
        ConfigurationError: If the structure or values are invalid
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a JSON object")

    kwargs: Dict[str, Any] = {}
    if "collections" in data:
        kwargs["collections"] = tuple(_parse_collections(data["collections"]))

    retry_data = data.get("retry", {})
    if not isinstance(retry_data, dict):
        raise ConfigurationError("'retry' must be an object")
    unknown = set(retry_data) - set(RetryPolicy.__dataclass_fields__)
    if unknown:
        raise ConfigurationError(f"Unknown retry settings: {', '.join(sorted(unknown))}")

    try:
        for key in ("batch_size", "empty_batch_threshold", "write_batch_size", "max_workers"):
            if key in data:
                kwargs[key] = int(data[key])
        if "collection_delay" in data:
            kwargs["collection_delay"] = float(data["collection_delay"])
        kwargs["retry"] = RetryPolicy(
            **{
                key: (int(value) if key.startswith("max_") and key != "max_delay" else float(value))
                for key, value in retry_data.items()
            }
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e

    return SyncConfig(**kwargs).validate()


def load_config(path: str) -> SyncConfig:
    """
    Load a SyncConfig from a JSON file.

    Example file:
        {"collections": [{"id": "ascendant.nearlegion.near", "max_index": 500}],
         "batch_size": 20, "retry": {"request_delay": 0.5}}
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file {path}: {e}") from e

    return config_from_dict(data)
