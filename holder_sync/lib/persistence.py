"""
Batch persistence of holder counts.

This module flattens the cross-collection table into idempotent upsert rows
and applies them to a store in fixed-size batches. Two stores are supported:
a local SQLite database and a remote Cloudflare D1 database reached through
its HTTP query API.
"""

import sqlite3
import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence

import requests

from .config import DEFAULT_TIMEOUT, DEFAULT_WRITE_BATCH_SIZE
from .formatters import log
from .models import CrossCollectionTable, HolderRow, PersistResult


TABLE_NAME = "legion_holders"

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"

# D1 accepts at most this many bound parameters in one query
D1_MAX_BOUND_PARAMS = 100
D1_PARAMS_PER_ROW = 2
D1_MAX_ROWS_PER_BATCH = D1_MAX_BOUND_PARAMS // D1_PARAMS_PER_ROW

CREATE_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    id INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
    account_id TEXT NOT NULL,
    contract_id TEXT NOT NULL,
    quantity INTEGER DEFAULT 1 NOT NULL,
    last_synced_at INTEGER NOT NULL,
    synced_at INTEGER NOT NULL
)
"""

CREATE_INDEX_SQL = (
    f"CREATE UNIQUE INDEX IF NOT EXISTS unique_account_contract "
    f"ON {TABLE_NAME} (account_id, contract_id)"
)

UPSERT_SQL = (
    f"INSERT OR REPLACE INTO {TABLE_NAME} "
    f"(account_id, contract_id, quantity, last_synced_at, synced_at) "
    f"VALUES (?, ?, ?, ?, ?)"
)


class PersistenceError(Exception):
    """Exception raised when the store cannot apply a batch."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def flatten_table(table: CrossCollectionTable, now: Optional[int] = None) -> List[HolderRow]:
    """
    Convert the cross-collection table to upsert rows.

    Rows are sorted by (contract_id, account_id) so batches are stable
    between runs.

    Args:
        table: owner -> (collection -> quantity)
        now: Unix timestamp for last_synced_at / synced_at (defaults to now)

    Returns:
        List of HolderRow
    """
    if now is None:
        now = int(time.time())

    rows = [
        HolderRow(
            account_id=owner,
            contract_id=collection,
            quantity=quantity,
            last_synced_at=now,
            synced_at=now,
        )
        for owner, collections in table.items()
        for collection, quantity in collections.items()
        if quantity > 0
    ]
    rows.sort(key=lambda row: (row.contract_id, row.account_id))
    return rows


def chunk_rows(rows: Sequence[HolderRow], batch_size: int) -> List[List[HolderRow]]:
    """Split rows into consecutive batches of at most batch_size."""
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [list(rows[i : i + batch_size]) for i in range(0, len(rows), batch_size)]


class SqliteHolderSink:
    """
    Local SQLite store.

    Each batch is applied in its own transaction, so a failing batch leaves
    nothing behind.
    """

    name = "local"

    def __init__(self, path: str):
        self.path = path
        self._conn: Optional[sqlite3.Connection] = None

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PersistenceError(f"Cannot create directory for {self.path}: {e}") from e
            try:
                self._conn = sqlite3.connect(self.path)
                with self._conn:
                    self._conn.execute(CREATE_TABLE_SQL)
                    self._conn.execute(CREATE_INDEX_SQL)
            except sqlite3.Error as e:
                self._conn = None
                raise PersistenceError(f"Cannot open local database {self.path}: {e}") from e
        return self._conn

    def apply_batch(self, rows: Sequence[HolderRow]) -> None:
        """
        Upsert a batch of rows atomically.

        Raises:
            PersistenceError: If the batch is rejected
        """
        conn = self._connect()
        try:
            with conn:
                conn.executemany(
                    UPSERT_SQL,
                    [
                        (r.account_id, r.contract_id, r.quantity, r.last_synced_at, r.synced_at)
                        for r in rows
                    ],
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Local batch rejected: {e}") from e

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class D1HolderSink:
    """
    Remote Cloudflare D1 store reached through the HTTP query API.

    A batch is sent as a single multi-row INSERT OR REPLACE statement, which
    D1 applies atomically. Account and contract ids are bound parameters;
    integers are inlined, so one batch holds at most D1_MAX_ROWS_PER_BATCH rows.
    """

    name = "remote"

    def __init__(
        self,
        account_id: str,
        database_id: str,
        api_token: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.account_id = account_id
        self.database_id = database_id
        self.api_token = api_token
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers["Authorization"] = f"Bearer {api_token}"

    def _sanitize_error_message(self, message: str) -> str:
        """Remove the API token from error messages to prevent credential leakage."""
        return message.replace(self.api_token, "[REDACTED]")

    def _get_query_url(self) -> str:
        return (
            f"{CLOUDFLARE_API_BASE}/accounts/{self.account_id}"
            f"/d1/database/{self.database_id}/query"
        )

    def build_statement(self, rows: Sequence[HolderRow]):
        """
        Build the SQL and parameters for one batch.

        Returns:
            Tuple of (sql, params)
        """
        if len(rows) > D1_MAX_ROWS_PER_BATCH:
            raise PersistenceError(
                f"Batch of {len(rows)} rows exceeds D1 limit of {D1_MAX_ROWS_PER_BATCH}"
            )

        values = []
        params: List[str] = []
        for row in rows:
            values.append(
                f"(?, ?, {int(row.quantity)}, {int(row.last_synced_at)}, {int(row.synced_at)})"
            )
            params.extend([row.account_id, row.contract_id])

        sql = (
            f"INSERT OR REPLACE INTO {TABLE_NAME} "
            f"(account_id, contract_id, quantity, last_synced_at, synced_at) VALUES "
            + ", ".join(values)
        )
        return sql, params

    def apply_batch(self, rows: Sequence[HolderRow]) -> None:
        """
        Upsert a batch of rows atomically.

        Raises:
            PersistenceError: If D1 is unreachable or rejects the batch
        """
        sql, params = self.build_statement(rows)
        try:
            response = self.session.post(
                self._get_query_url(),
                json={"sql": sql, "params": params},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PersistenceError(
                f"D1 unreachable: {self._sanitize_error_message(str(e))}"
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400 or not data.get("success", False):
            errors = data.get("errors") or []
            detail = "; ".join(
                str(err.get("message", err)) if isinstance(err, dict) else str(err)
                for err in errors
                if err
            ) or f"HTTP {response.status_code}"
            raise PersistenceError(
                f"D1 batch rejected: {self._sanitize_error_message(detail)}",
                status_code=response.status_code,
            )

    def close(self) -> None:
        self.session.close()


class BatchWriter:
    """
    Applies upsert rows to a sink in fixed-size batches.

    Batches go out in order. The first failing batch stops the writer;
    already committed batches stay committed and are reported.
    """

    def __init__(
        self,
        sink=None,
        batch_size: int = DEFAULT_WRITE_BATCH_SIZE,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.sink = sink
        self.batch_size = batch_size
        self.cancel_event = cancel_event or threading.Event()

    def persist(
        self,
        table: CrossCollectionTable,
        dry_run: bool = False,
        now: Optional[int] = None,
    ) -> PersistResult:
        """
        Write the table to the sink.

        Args:
            table: owner -> (collection -> quantity)
            dry_run: Compute rows and batches without touching the sink
            now: Timestamp override for the rows

        Returns:
            PersistResult describing how many batches committed
        """
        rows = flatten_table(table, now)
        batches = chunk_rows(rows, self.batch_size)
        target = getattr(self.sink, "name", None)
        result = PersistResult(
            total_rows=len(rows),
            total_batches=len(batches),
            dry_run=dry_run,
            target=target,
        )

        if dry_run:
            return result

        if self.sink is None:
            raise PersistenceError("No sink configured")

        for i, batch in enumerate(batches, start=1):
            if self.cancel_event.is_set():
                result.error = f"Cancelled before batch {i}/{len(batches)}"
                break
            try:
                self.sink.apply_batch(batch)
            except PersistenceError as e:
                result.error = f"Batch {i}/{len(batches)} failed: {e}"
                log("persist", f"ERROR: {result.error}")
                break
            result.batches_committed += 1
            log("persist", f"Batch {i}/{len(batches)} committed ({len(batch)} rows)")

        result.batches_failed = result.total_batches - result.batches_committed
        return result
