"""Error taxonomy for the document-to-insights pipeline."""

from typing import Optional


class DocInsightError(Exception):
    """Base class for all pipeline errors."""


class DocumentNotFoundError(DocInsightError):
    """Raised when a document id does not resolve to a stored document."""

    def __init__(self, document_id: str):
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class ExtractionError(DocInsightError):
    """The byte stream is not a parseable PDF or has no extractable text."""


class StorageError(DocInsightError):
    """Object storage upload/download/remove failed."""


class StoreError(DocInsightError):
    """Relational/vector store operation failed."""


class EmbeddingServiceError(DocInsightError):
    """Non-success response from the embedding service."""

    def __init__(self, status_code: int, body: str, message: Optional[str] = None):
        super().__init__(message or f"Embedding API error ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


class GenerationError(DocInsightError):
    """The generative model service failed to produce a response."""


class InsightParseError(DocInsightError):
    """Model output is not valid JSON."""


class InsightSchemaError(DocInsightError):
    """Model output is JSON but does not match the insight schema."""
