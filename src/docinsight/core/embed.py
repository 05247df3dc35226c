"""Gemini embedding client; sequential fixed-size batches, order preserved."""

import logging
from typing import List, Literal, Optional, Sequence

import httpx

from .config import EmbeddingConfig, get_embedding_config
from .errors import EmbeddingServiceError

logger = logging.getLogger(__name__)

EmbeddingMode = Literal["document", "query"]

TASK_TYPES = {
    "document": "RETRIEVAL_DOCUMENT",
    "query": "RETRIEVAL_QUERY",
}


class EmbeddingClient:
    """Turns texts into fixed-dimension vectors via ``batchEmbedContents``."""

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        http_client: Optional[httpx.Client] = None
    ):
        self.config = config or get_embedding_config()
        if not self.config.api_key:
            raise ValueError("GEMINI_API_KEY environment variable is not set.")
        self._client = http_client or httpx.Client(timeout=self.config.timeout)

    def _endpoint(self) -> str:
        base = self.config.api_base.rstrip("/")
        return f"{base}/models/{self.config.model}:batchEmbedContents"

    def _embed_batch(self, texts: Sequence[str], task_type: str) -> List[List[float]]:
        payload = {
            "requests": [
                {
                    "model": f"models/{self.config.model}",
                    "content": {"parts": [{"text": text}]},
                    "taskType": task_type,
                    "outputDimensionality": self.config.dimensions,
                }
                for text in texts
            ]
        }

        response = self._client.post(
            self._endpoint(),
            params={"key": self.config.api_key},
            json=payload,
        )
        if not response.is_success:
            raise EmbeddingServiceError(response.status_code, response.text)

        embeddings = response.json().get("embeddings") or []
        vectors = [item["values"] for item in embeddings]

        if len(vectors) != len(texts):
            raise EmbeddingServiceError(
                response.status_code,
                response.text,
                f"Embedding API returned {len(vectors)} vectors for {len(texts)} texts",
            )
        for vector in vectors:
            if len(vector) != self.config.dimensions:
                raise EmbeddingServiceError(
                    response.status_code,
                    response.text,
                    f"Expected embedding of {self.config.dimensions} dimensions, got {len(vector)}",
                )
        return vectors

    def embed(self, texts: Sequence[str], mode: EmbeddingMode = "document") -> List[List[float]]:
        """
        Embed texts in input order.

        Args:
            texts: Texts to embed
            mode: ``document`` for chunk content, ``query`` for search queries

        Returns:
            One vector per input text, index-aligned

        Raises:
            EmbeddingServiceError: on any non-success response (not retried here)
        """
        if not texts:
            return []

        task_type = TASK_TYPES[mode]
        batch_size = self.config.batch_size
        vectors: List[List[float]] = []

        for i in range(0, len(texts), batch_size):
            batch = list(texts[i:i + batch_size])
            logger.info(f"Processing embedding batch {i // batch_size + 1}: {len(batch)} texts ({task_type})")
            vectors.extend(self._embed_batch(batch, task_type))

        return vectors

    def embed_query(self, text: str) -> List[float]:
        return self.embed([text], mode="query")[0]

    def close(self) -> None:
        self._client.close()
