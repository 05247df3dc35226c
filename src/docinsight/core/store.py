"""Document, chunk and insight-cache persistence with per-document vector search."""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import numpy as np
import psycopg
from pgvector.psycopg import register_vector
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from pydantic import ValidationError

from .errors import DocumentNotFoundError, StoreError
from .models import (
    ChunkMatch,
    ChunkRecord,
    Document,
    DocumentStatus,
    Insight,
    TextChunk,
)

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 50
DEFAULT_MATCH_THRESHOLD = 0.3
DEFAULT_MATCH_COUNT = 8


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_cached(document_id: str, payload) -> Optional[List[Insight]]:
    """Validate a cached insight payload; malformed or empty payloads are a miss."""
    if not isinstance(payload, list) or not payload:
        return None
    try:
        return [Insight.model_validate(item) for item in payload]
    except ValidationError as e:
        logger.warning(f"Ignoring malformed insight cache for {document_id}: {e}")
        return None


class Store(ABC):
    """Relational store with vector search, scoped per document."""

    @abstractmethod
    def create_document(
        self,
        owner_id: str,
        file_name: str,
        file_size: int,
        status: DocumentStatus = "uploading"
    ) -> Document:
        ...

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def list_documents(self, owner_id: str) -> List[Document]:
        """Documents of one owner, newest first."""

    @abstractmethod
    def update_document(
        self,
        document_id: str,
        status: Optional[DocumentStatus] = None,
        total_pages: Optional[int] = None,
        file_url: Optional[str] = None
    ) -> Document:
        ...

    @abstractmethod
    def delete_document(self, document_id: str) -> bool:
        """Delete a document; chunks and the cached insight set go with it."""

    @abstractmethod
    def insert_chunks(self, rows: Sequence[ChunkRecord]) -> None:
        """Append one batch of chunk rows."""

    @abstractmethod
    def delete_chunks(self, document_id: str) -> None:
        ...

    @abstractmethod
    def count_chunks(self, document_id: str) -> int:
        ...

    @abstractmethod
    def get_chunks(self, document_id: str, offset: int, limit: int) -> List[ChunkRecord]:
        """Chunks ordered by chunk_index, rows [offset, offset + limit)."""

    @abstractmethod
    def match_chunks(
        self,
        document_id: str,
        query_embedding: Sequence[float],
        threshold: float = DEFAULT_MATCH_THRESHOLD,
        top_k: int = DEFAULT_MATCH_COUNT
    ) -> List[ChunkMatch]:
        """Cosine-similarity search restricted to one document."""

    @abstractmethod
    def get_cached_insights(self, document_id: str) -> Optional[List[Insight]]:
        ...

    @abstractmethod
    def upsert_insights(self, document_id: str, insights: Sequence[Insight]) -> None:
        """Replace the cached insight set wholesale."""

    @abstractmethod
    def delete_insights(self, document_id: str) -> None:
        ...


def build_chunk_rows(
    document_id: str,
    chunks: Sequence[TextChunk],
    embeddings: Sequence[Sequence[float]]
) -> List[ChunkRecord]:
    """Pair chunks with their embeddings and assign dense indices from 0."""
    if len(chunks) != len(embeddings):
        raise ValueError("Number of embeddings must match number of chunks")
    return [
        ChunkRecord(
            document_id=document_id,
            chunk_index=i,
            content=chunk.content,
            page_start=chunk.page_start,
            page_end=chunk.page_end,
            token_count=chunk.token_count,
            embedding=[float(v) for v in embedding],
        )
        for i, (chunk, embedding) in enumerate(zip(chunks, embeddings))
    ]


def persist_chunks(
    store: Store,
    document_id: str,
    chunks: Sequence[TextChunk],
    embeddings: Sequence[Sequence[float]],
    batch_size: int = INSERT_BATCH_SIZE
) -> int:
    """
    Insert chunk rows in fixed-size batches.

    The first failing batch aborts the rest. Batches written before the
    failure are not rolled back.

    Args:
        store: Target store
        document_id: Owning document
        chunks: Chunker output
        embeddings: Index-aligned vectors
        batch_size: Rows per insert

    Returns:
        Number of batches written

    Raises:
        StoreError: if any batch fails
    """
    rows = build_chunk_rows(document_id, chunks, embeddings)
    total_batches = (len(rows) + batch_size - 1) // batch_size

    for i in range(0, len(rows), batch_size):
        batch_number = i // batch_size + 1
        logger.info(f"Inserting chunk batch {batch_number} of {total_batches} for {document_id}")
        try:
            store.insert_chunks(rows[i:i + batch_size])
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to store chunks: {e}") from e

    return total_batches


class InMemoryStore(Store):
    """Process-local store; cosine similarity computed with numpy."""

    def __init__(self):
        self._lock = threading.Lock()
        self._documents: Dict[str, Document] = {}
        self._chunks: Dict[str, List[ChunkRecord]] = {}
        self._chunk_ids: Dict[tuple, str] = {}
        self._insights: Dict[str, list] = {}

    def create_document(self, owner_id, file_name, file_size, status="uploading"):
        now = _now()
        document = Document(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            file_name=file_name,
            file_size=file_size,
            status=status,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._documents[document.id] = document
        return document.model_copy()

    def get_document(self, document_id):
        with self._lock:
            document = self._documents.get(document_id)
            return document.model_copy() if document else None

    def list_documents(self, owner_id):
        with self._lock:
            owned = [d.model_copy() for d in self._documents.values() if d.owner_id == owner_id]
        # ties on created_at resolve to the most recently inserted
        return sorted(reversed(owned), key=lambda d: d.created_at, reverse=True)

    def update_document(self, document_id, status=None, total_pages=None, file_url=None):
        with self._lock:
            document = self._documents.get(document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)
            changes = {"updated_at": _now()}
            if status is not None:
                changes["status"] = status
            if total_pages is not None:
                changes["total_pages"] = total_pages
            if file_url is not None:
                changes["file_url"] = file_url
            document = document.model_copy(update=changes)
            self._documents[document_id] = document
            return document.model_copy()

    def delete_document(self, document_id):
        with self._lock:
            if self._documents.pop(document_id, None) is None:
                return False
            for row in self._chunks.pop(document_id, []):
                self._chunk_ids.pop((document_id, row.chunk_index), None)
            self._insights.pop(document_id, None)
            return True

    def insert_chunks(self, rows):
        with self._lock:
            for row in rows:
                if row.document_id not in self._documents:
                    raise StoreError(f"Unknown document for chunk: {row.document_id}")
                self._chunks.setdefault(row.document_id, []).append(row)
                self._chunk_ids[(row.document_id, row.chunk_index)] = str(uuid.uuid4())

    def delete_chunks(self, document_id):
        with self._lock:
            for row in self._chunks.pop(document_id, []):
                self._chunk_ids.pop((document_id, row.chunk_index), None)

    def count_chunks(self, document_id):
        with self._lock:
            return len(self._chunks.get(document_id, []))

    def get_chunks(self, document_id, offset, limit):
        with self._lock:
            rows = sorted(self._chunks.get(document_id, []), key=lambda r: r.chunk_index)
        return rows[offset:offset + limit]

    def match_chunks(self, document_id, query_embedding, threshold=DEFAULT_MATCH_THRESHOLD, top_k=DEFAULT_MATCH_COUNT):
        with self._lock:
            rows = list(self._chunks.get(document_id, []))
            ids = {row.chunk_index: self._chunk_ids[(document_id, row.chunk_index)] for row in rows}
        if not rows or top_k <= 0:
            return []

        matrix = np.asarray([row.embedding for row in rows], dtype=float)
        query = np.asarray(query_embedding, dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query / norms, 0.0)

        order = np.argsort(-scores, kind="stable")
        matches = []
        for idx in order:
            score = float(scores[idx])
            if score < threshold:
                break
            row = rows[idx]
            matches.append(
                ChunkMatch(
                    id=ids[row.chunk_index],
                    chunk_index=row.chunk_index,
                    content=row.content,
                    page_start=row.page_start,
                    page_end=row.page_end,
                    token_count=row.token_count,
                    similarity=score,
                )
            )
            if len(matches) >= top_k:
                break
        return matches

    def get_cached_insights(self, document_id):
        with self._lock:
            payload = self._insights.get(document_id)
        return _parse_cached(document_id, payload)

    def upsert_insights(self, document_id, insights):
        payload = [insight.to_payload() for insight in insights]
        with self._lock:
            if document_id not in self._documents:
                raise StoreError(f"Unknown document for insights: {document_id}")
            self._insights[document_id] = payload

    def delete_insights(self, document_id):
        with self._lock:
            self._insights.pop(document_id, None)


class PostgresStore(Store):
    """PostgreSQL + pgvector backend; one connection per operation."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def _connect(self) -> psycopg.Connection:
        conn = psycopg.connect(self.db_url, row_factory=dict_row)
        register_vector(conn)
        return conn

    def _execute(self, sql: str, params=None, fetch: str = "none"):
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    if fetch == "one":
                        return cur.fetchone()
                    if fetch == "all":
                        return cur.fetchall()
                    return cur.rowcount
        except psycopg.Error as e:
            raise StoreError(str(e)) from e

    def create_document(self, owner_id, file_name, file_size, status="uploading"):
        row = self._execute(
            """
            INSERT INTO documents (id, owner_id, file_name, file_url, file_size, status)
            VALUES (%s, %s, %s, '', %s, %s)
            RETURNING *
            """,
            (str(uuid.uuid4()), owner_id, file_name, file_size, status),
            fetch="one",
        )
        return _document_from_row(row)

    def get_document(self, document_id):
        row = self._execute("SELECT * FROM documents WHERE id = %s", (document_id,), fetch="one")
        return _document_from_row(row) if row else None

    def list_documents(self, owner_id):
        rows = self._execute(
            "SELECT * FROM documents WHERE owner_id = %s ORDER BY created_at DESC",
            (owner_id,),
            fetch="all",
        )
        return [_document_from_row(row) for row in rows]

    def update_document(self, document_id, status=None, total_pages=None, file_url=None):
        row = self._execute(
            """
            UPDATE documents SET
                status = COALESCE(%s, status),
                total_pages = COALESCE(%s, total_pages),
                file_url = COALESCE(%s, file_url),
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (status, total_pages, file_url, document_id),
            fetch="one",
        )
        if row is None:
            raise DocumentNotFoundError(document_id)
        return _document_from_row(row)

    def delete_document(self, document_id):
        return self._execute("DELETE FROM documents WHERE id = %s", (document_id,)) > 0

    def insert_chunks(self, rows):
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.executemany(
                        """
                        INSERT INTO document_chunks
                            (document_id, chunk_index, content, page_start, page_end, token_count, embedding)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """,
                        [
                            (
                                row.document_id,
                                row.chunk_index,
                                row.content,
                                row.page_start,
                                row.page_end,
                                row.token_count,
                                np.asarray(row.embedding, dtype=np.float32),
                            )
                            for row in rows
                        ],
                    )
                conn.commit()
        except psycopg.Error as e:
            raise StoreError(f"Failed to store chunks: {e}") from e

    def delete_chunks(self, document_id):
        self._execute("DELETE FROM document_chunks WHERE document_id = %s", (document_id,))

    def count_chunks(self, document_id):
        row = self._execute(
            "SELECT COUNT(*) AS n FROM document_chunks WHERE document_id = %s",
            (document_id,),
            fetch="one",
        )
        return int(row["n"])

    def get_chunks(self, document_id, offset, limit):
        rows = self._execute(
            """
            SELECT document_id, chunk_index, content, page_start, page_end, token_count
            FROM document_chunks
            WHERE document_id = %s
            ORDER BY chunk_index ASC
            OFFSET %s LIMIT %s
            """,
            (document_id, offset, limit),
            fetch="all",
        )
        return [ChunkRecord(**{**row, "document_id": str(row["document_id"])}) for row in rows]

    def match_chunks(self, document_id, query_embedding, threshold=DEFAULT_MATCH_THRESHOLD, top_k=DEFAULT_MATCH_COUNT):
        if top_k <= 0:
            return []
        query = np.asarray(query_embedding, dtype=np.float32)
        rows = self._execute(
            """
            SELECT id, chunk_index, content, page_start, page_end, token_count,
                   1 - (embedding <=> %(q)s) AS similarity
            FROM document_chunks
            WHERE document_id = %(doc)s
              AND 1 - (embedding <=> %(q)s) >= %(threshold)s
            ORDER BY embedding <=> %(q)s
            LIMIT %(k)s
            """,
            {"q": query, "doc": document_id, "threshold": threshold, "k": top_k},
            fetch="all",
        )
        return [
            ChunkMatch(**{**row, "id": str(row["id"]), "similarity": float(row["similarity"])})
            for row in rows
        ]

    def get_cached_insights(self, document_id):
        row = self._execute(
            "SELECT insights FROM document_insights WHERE document_id = %s",
            (document_id,),
            fetch="one",
        )
        return _parse_cached(document_id, row["insights"]) if row else None

    def upsert_insights(self, document_id, insights):
        payload = [insight.to_payload() for insight in insights]
        self._execute(
            """
            INSERT INTO document_insights (document_id, insights)
            VALUES (%s, %s)
            ON CONFLICT (document_id) DO UPDATE SET
                insights = EXCLUDED.insights,
                updated_at = now()
            """,
            (document_id, Jsonb(payload)),
        )

    def delete_insights(self, document_id):
        self._execute("DELETE FROM document_insights WHERE document_id = %s", (document_id,))


def _document_from_row(row: dict) -> Document:
    return Document(**{**row, "id": str(row["id"])})
