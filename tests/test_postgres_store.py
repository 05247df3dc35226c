import uuid

import numpy as np
import psycopg
import pytest
from psycopg.types.json import Jsonb

from docinsight.core.errors import DocumentNotFoundError, StoreError
from docinsight.core.models import ChunkRecord
from docinsight.core.store import PostgresStore

from conftest import make_insights


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.rowcount = connection.rowcount

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        if self.connection.error is not None:
            raise self.connection.error
        self.connection.executed.append((sql, params))

    def executemany(self, sql, params_seq):
        self.connection.executed.append((sql, list(params_seq)))

    def fetchone(self):
        return self.connection.rows[0] if self.connection.rows else None

    def fetchall(self):
        return list(self.connection.rows)


class FakeConnection:
    """Records statements; returns the scripted rows for every query."""

    def __init__(self, rows=(), rowcount=0, error=None):
        self.rows = list(rows)
        self.rowcount = rowcount
        self.error = error
        self.executed = []
        self.commits = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1


@pytest.fixture
def connect(monkeypatch):
    def _script(**kwargs):
        connection = FakeConnection(**kwargs)
        monkeypatch.setattr(PostgresStore, "_connect", lambda self: connection)
        return connection
    return _script


@pytest.fixture
def pg_store():
    return PostgresStore("postgresql://test@localhost/test")


def document_row(**overrides):
    row = {
        "id": uuid.UUID("12345678-1234-5678-1234-567812345678"),
        "owner_id": "user-1",
        "file_name": "paper.pdf",
        "file_url": "user-1/doc/paper.pdf",
        "file_size": 10,
        "total_pages": None,
        "status": "processing",
        "created_at": None,
        "updated_at": None,
    }
    row.update(overrides)
    return row


def test_update_document_coalesces_unset_fields(pg_store, connect):
    connection = connect(rows=[document_row(status="ready", total_pages=3)])

    document = pg_store.update_document("doc-1", status="ready", total_pages=3)

    sql, params = connection.executed[0]
    assert "COALESCE(%s, status)" in sql
    assert "RETURNING *" in sql
    assert params == ("ready", 3, None, "doc-1")
    assert document.id == "12345678-1234-5678-1234-567812345678"
    assert (document.status, document.total_pages) == ("ready", 3)


def test_update_missing_document_raises(pg_store, connect):
    connect(rows=[])
    with pytest.raises(DocumentNotFoundError):
        pg_store.update_document("missing", status="failed")


def test_delete_document_reports_rowcount(pg_store, connect):
    connect(rowcount=1)
    assert pg_store.delete_document("doc-1") is True
    connect(rowcount=0)
    assert pg_store.delete_document("doc-1") is False


def test_insert_chunks_sends_float32_vectors_and_commits(pg_store, connect):
    connection = connect()
    rows = [
        ChunkRecord(
            document_id="doc-1",
            chunk_index=i,
            content=f"chunk {i}",
            page_start=1,
            page_end=1,
            token_count=2,
            embedding=[1.0, 0.0],
        )
        for i in range(2)
    ]

    pg_store.insert_chunks(rows)

    sql, params = connection.executed[0]
    assert "INSERT INTO document_chunks" in sql
    assert [p[1] for p in params] == [0, 1]
    assert params[0][-1].dtype == np.float32
    assert connection.commits == 1


def test_match_chunks_filters_orders_and_limits(pg_store, connect):
    connection = connect(rows=[{
        "id": uuid.UUID("87654321-4321-8765-4321-876543218765"),
        "chunk_index": 4,
        "content": "relevant",
        "page_start": 2,
        "page_end": 2,
        "token_count": 2,
        "similarity": 0.82,
    }])

    matches = pg_store.match_chunks("doc-1", [0.5, 0.5], threshold=0.4, top_k=3)

    sql, params = connection.executed[0]
    assert "WHERE document_id = %(doc)s" in sql
    assert "1 - (embedding <=> %(q)s) >= %(threshold)s" in sql
    assert "ORDER BY embedding <=> %(q)s" in sql
    assert "LIMIT %(k)s" in sql
    assert (params["doc"], params["threshold"], params["k"]) == ("doc-1", 0.4, 3)
    assert params["q"].dtype == np.float32
    assert [(m.id, m.chunk_index, m.similarity) for m in matches] == [
        ("87654321-4321-8765-4321-876543218765", 4, 0.82)
    ]


def test_match_chunks_with_zero_k_skips_query(pg_store, connect):
    connection = connect()
    assert pg_store.match_chunks("doc-1", [1.0, 0.0], top_k=0) == []
    assert connection.executed == []


def test_upsert_insights_overwrites_on_conflict(pg_store, connect):
    connection = connect()

    pg_store.upsert_insights("doc-1", make_insights(2))

    sql, params = connection.executed[0]
    assert "ON CONFLICT (document_id) DO UPDATE" in sql
    assert params[0] == "doc-1"
    assert isinstance(params[1], Jsonb)
    assert [item["title"] for item in params[1].obj] == ["Finding 0", "Finding 1"]
    assert "researchDirections" in params[1].obj[0]


def test_cached_insights_round_trip_and_miss(pg_store, connect):
    payload = [insight.to_payload() for insight in make_insights(1)]
    connect(rows=[{"insights": payload}])
    assert [i.title for i in pg_store.get_cached_insights("doc-1")] == ["Finding 0"]

    connect(rows=[{"insights": []}])
    assert pg_store.get_cached_insights("doc-1") is None

    connect(rows=[])
    assert pg_store.get_cached_insights("doc-1") is None


def test_driver_errors_become_store_errors(pg_store, connect):
    connect(error=psycopg.OperationalError("server closed the connection"))
    with pytest.raises(StoreError, match="server closed"):
        pg_store.get_document("doc-1")
