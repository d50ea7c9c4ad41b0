"""
Unit tests for batch persistence.

Tests follow the Given/When/Then pattern for clarity.
"""

import json
import sqlite3
import threading

import pytest
import responses

from holder_sync.lib.models import HolderRow
from holder_sync.lib.persistence import (
    CLOUDFLARE_API_BASE,
    D1_MAX_ROWS_PER_BATCH,
    TABLE_NAME,
    BatchWriter,
    D1HolderSink,
    PersistenceError,
    SqliteHolderSink,
    chunk_rows,
    flatten_table,
)

NOW = 1_700_000_000

D1_URL = f"{CLOUDFLARE_API_BASE}/accounts/acct/d1/database/db/query"


def make_table(owners, collection="C"):
    return {f"owner{i}.near": {collection: 1} for i in range(owners)}


def make_rows(count):
    return [HolderRow(f"owner{i}.near", "C", 1, NOW, NOW) for i in range(count)]


class RecordingSink:
    """Sink that records batches and fails on a chosen batch number."""

    name = "fake"

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.batches = []

    def apply_batch(self, rows):
        if self.fail_on is not None and len(self.batches) + 1 == self.fail_on:
            raise PersistenceError("constraint violation")
        self.batches.append(list(rows))


class TestFlattenTable:
    """Tests for flatten_table and chunk_rows."""

    def test_flattens_and_sorts_rows(self):
        """
        Given a table with owners across two collections
        When flattening it
        Then one row per (owner, collection) should be produced, sorted
        """
        # Given
        table = {"bob": {"B": 2, "A": 1}, "alice": {"B": 3}}

        # When
        rows = flatten_table(table, now=NOW)

        # Then
        assert [(r.contract_id, r.account_id, r.quantity) for r in rows] == [
            ("A", "bob", 1),
            ("B", "alice", 3),
            ("B", "bob", 2),
        ]
        assert all(r.last_synced_at == NOW and r.synced_at == NOW for r in rows)

    def test_chunks_rows(self):
        batches = chunk_rows(make_rows(120), 50)

        assert [len(b) for b in batches] == [50, 50, 20]

    def test_chunk_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            chunk_rows(make_rows(3), 0)


class TestBatchWriter:
    """Tests for BatchWriter.persist."""

    def test_commits_all_batches(self):
        # Given
        sink = RecordingSink()
        writer = BatchWriter(sink, batch_size=50)

        # When
        result = writer.persist(make_table(120), now=NOW)

        # Then
        assert result.ok
        assert result.total_rows == 120
        assert result.batches_committed == 3
        assert result.batches_failed == 0
        assert result.target == "fake"
        assert [len(b) for b in sink.batches] == [50, 50, 20]

    def test_stops_at_first_failing_batch(self):
        """
        Given 5 batches where batch 3 is rejected
        When persisting
        Then batches 1-2 should be committed and 3 reported as failed
        """
        # Given
        sink = RecordingSink(fail_on=3)
        writer = BatchWriter(sink, batch_size=10)

        # When
        result = writer.persist(make_table(50), now=NOW)

        # Then
        assert not result.ok
        assert result.batches_committed == 2
        assert result.batches_failed == 3
        assert "Batch 3/5 failed" in result.error
        assert "constraint violation" in result.error
        assert len(sink.batches) == 2

    def test_dry_run_never_touches_sink(self):
        """
        Given a dry run
        When persisting
        Then batches should be counted but the sink never called
        """
        # Given
        sink = RecordingSink()
        writer = BatchWriter(sink, batch_size=50)

        # When
        result = writer.persist(make_table(75), dry_run=True, now=NOW)

        # Then
        assert result.dry_run
        assert result.total_batches == 2
        assert result.batches_committed == 0
        assert sink.batches == []

    def test_dry_run_works_without_sink(self):
        result = BatchWriter(None).persist(make_table(3), dry_run=True)

        assert result.ok
        assert result.target is None

    def test_apply_without_sink_raises(self):
        with pytest.raises(PersistenceError, match="No sink"):
            BatchWriter(None).persist(make_table(3))

    def test_cancel_stops_between_batches(self):
        """
        Given a run cancelled after the first batch commits
        When persisting
        Then no further batch should be sent
        """
        # Given
        event = threading.Event()

        class CancellingSink(RecordingSink):
            def apply_batch(self, rows):
                super().apply_batch(rows)
                event.set()

        sink = CancellingSink()
        writer = BatchWriter(sink, batch_size=10, cancel_event=event)

        # When
        result = writer.persist(make_table(30), now=NOW)

        # Then
        assert result.batches_committed == 1
        assert result.batches_failed == 2
        assert "Cancelled before batch 2/3" in result.error

    def test_empty_table_commits_nothing(self):
        sink = RecordingSink()

        result = BatchWriter(sink).persist({}, now=NOW)

        assert result.ok
        assert result.total_batches == 0
        assert sink.batches == []


class TestSqliteHolderSink:
    """Tests for the local SQLite store."""

    def test_upsert_is_idempotent(self, tmp_path):
        """
        Given the same rows applied twice with a changed quantity
        When reading the table back
        Then there should be one row per (account, contract) with the latest quantity
        """
        # Given
        db_path = str(tmp_path / "holders.sqlite")
        sink = SqliteHolderSink(db_path)
        writer = BatchWriter(sink, batch_size=2)

        # When
        writer.persist({"alice": {"A": 1, "B": 2}, "bob": {"A": 1}}, now=NOW)
        writer.persist({"alice": {"A": 4, "B": 2}, "bob": {"A": 1}}, now=NOW + 60)
        sink.close()

        # Then
        conn = sqlite3.connect(db_path)
        try:
            rows = conn.execute(
                f"SELECT account_id, contract_id, quantity, synced_at FROM {TABLE_NAME} "
                "ORDER BY contract_id, account_id"
            ).fetchall()
        finally:
            conn.close()
        assert rows == [
            ("alice", "A", 4, NOW + 60),
            ("bob", "A", 1, NOW + 60),
            ("alice", "B", 2, NOW + 60),
        ]

    def test_creates_missing_parent_directory(self, tmp_path):
        """
        Given a database path inside a directory that does not exist yet
        When applying a batch
        Then the directory and database should be created
        """
        # Given
        db_path = tmp_path / ".wrangler" / "holders.sqlite"
        sink = SqliteHolderSink(str(db_path))

        # When
        sink.apply_batch(make_rows(1))
        sink.close()

        # Then
        assert db_path.exists()

    def test_blocked_parent_directory_raises(self, tmp_path):
        # Given
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        sink = SqliteHolderSink(str(blocker / "holders.sqlite"))

        # When / Then
        with pytest.raises(PersistenceError, match="Cannot create directory"):
            sink.apply_batch(make_rows(1))


class TestD1HolderSink:
    """Tests for the remote D1 store."""

    def test_build_statement_binds_strings_and_inlines_ints(self):
        sink = D1HolderSink("acct", "db", "secret-token")

        sql, params = sink.build_statement(
            [HolderRow("alice", "A", 3, NOW, NOW), HolderRow("bob", "A", 1, NOW, NOW)]
        )

        assert sql.startswith(f"INSERT OR REPLACE INTO {TABLE_NAME}")
        assert f"(?, ?, 3, {NOW}, {NOW}), (?, ?, 1, {NOW}, {NOW})" in sql
        assert params == ["alice", "A", "bob", "A"]

    def test_rejects_oversized_batch(self):
        sink = D1HolderSink("acct", "db", "secret-token")

        with pytest.raises(PersistenceError, match="exceeds D1 limit"):
            sink.build_statement(make_rows(D1_MAX_ROWS_PER_BATCH + 1))

    @responses.activate
    def test_apply_batch_posts_query(self):
        """
        Given a D1 database accepting queries
        When applying a batch
        Then one authenticated query should be posted
        """
        # Given
        responses.add(responses.POST, D1_URL, json={"success": True, "result": [], "errors": []})
        sink = D1HolderSink("acct", "db", "secret-token")

        # When
        sink.apply_batch(make_rows(2))

        # Then
        assert len(responses.calls) == 1
        request = responses.calls[0].request
        assert request.headers["Authorization"] == "Bearer secret-token"
        body = json.loads(request.body)
        assert body["params"] == ["owner0.near", "C", "owner1.near", "C"]

    @responses.activate
    def test_rejected_batch_raises_without_leaking_token(self):
        """
        Given D1 rejecting a batch with an error that echoes the token
        When applying the batch
        Then PersistenceError should be raised with the token redacted
        """
        # Given
        responses.add(
            responses.POST,
            D1_URL,
            json={"success": False, "errors": [{"code": 7500, "message": "bad auth secret-token"}]},
            status=400,
        )
        sink = D1HolderSink("acct", "db", "secret-token")

        # When
        with pytest.raises(PersistenceError) as exc_info:
            sink.apply_batch(make_rows(1))

        # Then
        assert exc_info.value.status_code == 400
        assert "secret-token" not in str(exc_info.value)
        assert "[REDACTED]" in str(exc_info.value)

    @responses.activate
    def test_failure_mid_run_reports_committed_batches(self):
        """
        Given D1 accepting the first batch and rejecting the second
        When persisting three batches
        Then one batch should be committed and the writer should stop
        """
        # Given
        responses.add(responses.POST, D1_URL, json={"success": True, "errors": []})
        responses.add(responses.POST, D1_URL, json={"success": False, "errors": ["D1_ERROR"]})
        sink = D1HolderSink("acct", "db", "secret-token")
        writer = BatchWriter(sink, batch_size=D1_MAX_ROWS_PER_BATCH)

        # When
        result = writer.persist(make_table(120), now=NOW)

        # Then
        assert result.batches_committed == 1
        assert result.batches_failed == 2
        assert "D1_ERROR" in result.error
        assert len(responses.calls) == 2
