"""
NEAR data source clients for range-based NFT token fetches.

This module provides the two interchangeable sources a sync can read from:
direct NEAR JSON-RPC view calls (nft_tokens with base64-encoded arguments)
and the NearBlocks indexer API (page based). Both expose the same
fetch_range() contract and never raise for source problems; every failure
is classified into a TransientFailure or FatalFailure result.
"""

import base64
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import requests

from .config import DEFAULT_NEARBLOCKS_URL, DEFAULT_RPC_URL, DEFAULT_TIMEOUT
from .models import FatalFailure, FetchEmpty, FetchOk, FetchResult, TokenRecord, TransientFailure


USER_AGENT = "holder-sync/1.0"

# Substrings of RPC error payloads that mean the view call ran out of gas.
# Smaller ranges or a retry against another node usually get through.
GAS_LIMIT_MARKERS = ("GasLimitExceeded", "Exceeded the prepaid gas", "exceeded the maximum amount of gas")

RATE_LIMIT_MARKERS = ("Too Many Requests", "TOO_MANY_REQUESTS", "exceeded your API request limit")

# RPC error causes worth retrying; anything else is terminal for the collection
TRANSIENT_RPC_CAUSES = {"TIMEOUT_ERROR", "INTERNAL_ERROR", "UNKNOWN_BLOCK", "NOT_SYNCED_YET"}


class SourceError(Exception):
    """Exception raised for data source errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientSourceError(SourceError):
    """A source error that is expected to clear up on retry."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        rate_limited: bool = False,
    ):
        super().__init__(message, status_code)
        self.rate_limited = rate_limited


class TerminalSourceError(SourceError):
    """A source error that retrying will not fix (auth, unknown contract, bad request)."""

    pass


class DecodeError(TransientSourceError):
    """Raised when a source payload cannot be decoded into token records."""

    pass


def _is_rate_limit_message(text: str) -> bool:
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def _is_gas_limit_message(text: str) -> bool:
    return any(marker in text for marker in GAS_LIMIT_MARKERS)


def decode_view_result(raw: Union[List[int], str, None]) -> Any:
    """
    Decode the result of a NEAR view call into a JSON value.

    The RPC returns the function's return value either as a list of byte
    values or as a base64 string.

    Args:
        raw: The "result" field of a call_function response

    Returns:
        The parsed JSON value

    Raises:
        DecodeError: If the payload is not valid bytes or JSON
    """
    try:
        if isinstance(raw, list):
            payload = bytes(raw)
        elif isinstance(raw, str):
            payload = base64.b64decode(raw, validate=True)
        else:
            raise DecodeError(f"Unexpected view result type: {type(raw).__name__}")
        return json.loads(payload.decode("utf-8"))
    except DecodeError:
        raise
    except (ValueError, TypeError) as e:
        # ValueError covers bad byte values, base64, UTF-8 and JSON errors
        raise DecodeError(f"Could not decode view result: {e}") from e


def decode_token_records(
    items: Any,
    owner_keys: Tuple[str, ...] = ("owner_id",),
    token_keys: Tuple[str, ...] = ("token_id",),
) -> List[TokenRecord]:
    """
    Validate raw token items and convert them to TokenRecords.

    Items missing a non-empty token id or owner are dropped. Numeric token
    ids are converted to strings.

    Args:
        items: Parsed JSON expected to be a list of token objects
        owner_keys: Keys to look up the owner under, in priority order
        token_keys: Keys to look up the token id under, in priority order

    Returns:
        List of TokenRecord in source order

    Raises:
        DecodeError: If items is not a list of objects
    """
    if not isinstance(items, list):
        raise DecodeError(f"Expected a list of tokens, got {type(items).__name__}")

    records: List[TokenRecord] = []
    for item in items:
        if not isinstance(item, dict):
            raise DecodeError(f"Expected a token object, got {type(item).__name__}")

        token_id = _first_value(item, token_keys)
        owner_id = _first_value(item, owner_keys)
        if isinstance(token_id, int) and not isinstance(token_id, bool):
            token_id = str(token_id)
        if not isinstance(token_id, str) or not token_id:
            continue
        if not isinstance(owner_id, str) or not owner_id:
            continue

        records.append(TokenRecord(token_id=token_id, owner_id=owner_id))
    return records


def _first_value(item: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value
    return None


class BaseRangeFetcher(ABC):
    """
    Abstract base class for range fetchers.

    Provides the common HTTP handling and error classification.

    Subclasses implement _fetch(), which may raise SourceError subclasses;
    fetch_range() turns those into FetchResult values.
    """

    source_name = "base"

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)

    def _secrets(self) -> List[str]:
        return []

    def _sanitize_error_message(self, message: str) -> str:
        """Remove credentials from error messages to prevent leakage."""
        for secret in self._secrets():
            if secret:
                message = message.replace(secret, "[REDACTED]")
        return message

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """
        Perform one HTTP call and classify transport-level failures.

        Raises:
            TransientSourceError: On 429, 5xx, timeouts and connection errors
            TerminalSourceError: On 401/403 and other 4xx responses
        """
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise TransientSourceError(
                f"Request timed out after {self.timeout}s: {self._sanitize_error_message(str(e))}"
            ) from e
        except requests.RequestException as e:
            raise TransientSourceError(
                f"Request failed: {self._sanitize_error_message(str(e))}"
            ) from e

        if response.status_code == 429:
            raise TransientSourceError("Too Many Requests", status_code=429, rate_limited=True)

        if response.status_code in (401, 403):
            raise TerminalSourceError(
                f"Not authorized ({response.status_code})", status_code=response.status_code
            )

        if response.status_code >= 500:
            raise TransientSourceError(
                f"Server error: {response.status_code}", status_code=response.status_code
            )

        if response.status_code >= 400:
            raise TerminalSourceError(
                f"Request rejected: {response.status_code}", status_code=response.status_code
            )

        return response

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(f"Response is not valid JSON: {e}") from e

    @abstractmethod
    def _fetch(self, collection: str, start_index: int, batch_size: int) -> FetchResult:
        """Fetch one range, raising SourceError subclasses on failure."""
        pass

    def fetch_range(self, collection: str, start_index: int, batch_size: int) -> FetchResult:
        """
        Fetch one contiguous index range of a collection.

        Args:
            collection: Contract account id
            start_index: First index of the range
            batch_size: Number of items requested

        Returns:
            FetchOk, FetchEmpty, TransientFailure or FatalFailure
        """
        try:
            return self._fetch(collection, start_index, batch_size)
        except TransientSourceError as e:
            return TransientFailure(str(e), rate_limited=e.rate_limited)
        except TerminalSourceError as e:
            return FatalFailure(str(e))

    def close(self) -> None:
        self.session.close()


class NearRpcFetcher(BaseRangeFetcher):
    """
    Fetch token ranges through NEAR JSON-RPC view calls.

    Calls nft_tokens on the contract with {"from_index", "limit"}. The
    contract enumerates tokens in storage order, which does not follow
    numeric token ids, so an empty window is reported as an empty FetchOk
    rather than as the end of the collection.
    """

    source_name = "rpc"

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(timeout=timeout, session=session)
        self.rpc_url = rpc_url
        self._request_id = 0

    def _call_view(self, contract: str, method_name: str, args: Dict[str, Any]) -> Any:
        """
        Call a view method and return its decoded JSON result.

        Raises:
            TransientSourceError: For retryable RPC or transport errors
            TerminalSourceError: For errors retrying will not fix
        """
        self._request_id += 1
        args_base64 = base64.b64encode(json.dumps(args).encode("utf-8")).decode("ascii")
        payload = {
            "jsonrpc": "2.0",
            "id": f"{contract}-{method_name}-{self._request_id}",
            "method": "query",
            "params": {
                "request_type": "call_function",
                "finality": "final",
                "account_id": contract,
                "method_name": method_name,
                "args_base64": args_base64,
            },
        }

        response = self._send("POST", self.rpc_url, json=payload)
        data = self._json(response)
        if not isinstance(data, dict):
            raise DecodeError("RPC response is not an object")

        if "error" in data:
            self._raise_rpc_error(data["error"])

        result = data.get("result")
        if not isinstance(result, dict):
            raise DecodeError("RPC response has no result")

        # Older nodes report contract execution failures inside the result
        if result.get("error"):
            self._raise_rpc_error(result["error"])

        return decode_view_result(result.get("result"))

    def _raise_rpc_error(self, error: Any) -> None:
        text = json.dumps(error) if not isinstance(error, str) else error

        if _is_rate_limit_message(text):
            raise TransientSourceError(f"RPC rate limited: {text}", rate_limited=True)
        if _is_gas_limit_message(text):
            raise TransientSourceError("Gas limit exceeded")

        cause = None
        code = None
        if isinstance(error, dict):
            code = error.get("code")
            cause_info = error.get("cause")
            if isinstance(cause_info, dict):
                cause = cause_info.get("name")
        if cause in TRANSIENT_RPC_CAUSES:
            raise TransientSourceError(f"RPC error {cause}: {text}", status_code=code)

        raise TerminalSourceError(f"RPC error: {text}", status_code=code)

    def _fetch(self, collection: str, start_index: int, batch_size: int) -> FetchResult:
        items = self._call_view(
            collection,
            "nft_tokens",
            {"from_index": str(start_index), "limit": batch_size},
        )
        return FetchOk(decode_token_records(items))

    def total_supply(self, collection: str) -> Optional[int]:
        """
        Get the number of tokens a contract reports via nft_total_supply.

        Returns:
            The supply, or None if the contract returns something that is not a count

        Raises:
            TransientSourceError: For retryable RPC or transport errors
            TerminalSourceError: For errors retrying will not fix
        """
        value = self._call_view(collection, "nft_total_supply", {})
        try:
            supply = int(str(value).strip("\"'"))
        except ValueError:
            return None
        return supply if supply >= 0 else None


class NearBlocksFetcher(BaseRangeFetcher):
    """
    Fetch token pages from the NearBlocks indexer API.

    Ranges map to pages: page = start_index // batch_size + 1. An empty
    page means the indexer has no more tokens for the contract.
    """

    source_name = "nearblocks"

    def __init__(
        self,
        base_url: str = DEFAULT_NEARBLOCKS_URL,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(timeout=timeout, session=session)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def _secrets(self) -> List[str]:
        return [self.api_key] if self.api_key else []

    def _get_tokens_url(self, collection: str) -> str:
        return f"{self.base_url}/nfts/{collection}/tokens"

    def _fetch(self, collection: str, start_index: int, batch_size: int) -> FetchResult:
        if start_index % batch_size != 0:
            raise TerminalSourceError(
                f"Start index {start_index} is not aligned to page size {batch_size}"
            )

        params = {
            "page": start_index // batch_size + 1,
            "per_page": batch_size,
            "order": "asc",
        }
        response = self._send("GET", self._get_tokens_url(collection), params=params)
        data = self._json(response)
        if not isinstance(data, dict):
            raise DecodeError("NearBlocks response is not an object")

        message = data.get("message")
        if isinstance(message, str) and _is_rate_limit_message(message):
            raise TransientSourceError(message, rate_limited=True)

        if data.get("error"):
            raise TerminalSourceError(f"NearBlocks API error: {data['error']}")

        if "tokens" not in data:
            raise DecodeError("NearBlocks response has no tokens field")

        tokens = data["tokens"]
        if isinstance(tokens, list) and not tokens:
            return FetchEmpty()

        return FetchOk(
            decode_token_records(
                tokens,
                owner_keys=("owner", "owner_id"),
                token_keys=("token_id", "token"),
            )
        )


def create_fetcher(
    source: str,
    rpc_url: str = DEFAULT_RPC_URL,
    nearblocks_url: str = DEFAULT_NEARBLOCKS_URL,
    nearblocks_api_key: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> BaseRangeFetcher:
    """
    Factory function to create the range fetcher for a source kind.

    Args:
        source: "rpc" or "nearblocks"

    Raises:
        ValueError: If source is not supported
    """
    if source == "rpc":
        return NearRpcFetcher(rpc_url=rpc_url, timeout=timeout)
    elif source == "nearblocks":
        return NearBlocksFetcher(base_url=nearblocks_url, api_key=nearblocks_api_key, timeout=timeout)
    else:
        raise ValueError(f"Unsupported source: {source}")
