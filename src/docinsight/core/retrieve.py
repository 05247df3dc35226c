"""Semantic chunk retrieval scoped to a single document."""

import logging
import time
from typing import List

from .embed import EmbeddingClient
from .errors import StoreError
from .logging_config import get_audit_logger, log_chunk_search
from .models import ChunkMatch
from .store import DEFAULT_MATCH_COUNT, DEFAULT_MATCH_THRESHOLD, Store

logger = logging.getLogger(__name__)


def search_chunks(
    store: Store,
    embedder: EmbeddingClient,
    document_id: str,
    query: str,
    top_k: int = DEFAULT_MATCH_COUNT,
    threshold: float = DEFAULT_MATCH_THRESHOLD
) -> List[ChunkMatch]:
    """
    Rank a document's chunks by cosine similarity to a query.

    Args:
        store: Chunk store
        embedder: Embedding client (query mode is used)
        document_id: Document to search; other documents are never returned
        query: Free-text query
        top_k: Maximum number of results
        threshold: Minimum similarity

    Returns:
        Matches sorted by descending similarity; empty on store failure

    Raises:
        EmbeddingServiceError: if the query cannot be embedded
    """
    if not query.strip() or top_k <= 0:
        return []

    start_time = time.time()
    query_vector = embedder.embed_query(query)

    try:
        results = store.match_chunks(document_id, query_vector, threshold=threshold, top_k=top_k)
    except StoreError as e:
        logger.error(f"Chunk search error: {e}")
        return []

    log_chunk_search(
        get_audit_logger("retrieve"),
        document_id=document_id,
        query=query,
        top_k=top_k,
        threshold=threshold,
        result_count=len(results),
        execution_time_ms=(time.time() - start_time) * 1000,
    )
    return results
