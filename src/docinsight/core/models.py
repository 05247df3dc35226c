"""Data model shared by the processing and insight flows."""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

DocumentStatus = Literal["uploading", "processing", "ready", "failed"]

ResearchCategory = Literal[
    "Adjacent Field",
    "Alternative Approach",
    "Contrasting Theory",
    "Cross-Discipline",
]


class Document(BaseModel):
    """An uploaded PDF and its processing lifecycle."""
    id: str
    owner_id: str
    file_name: str
    file_url: str = ""
    file_size: int = 0
    total_pages: Optional[int] = None
    status: DocumentStatus = "uploading"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class PageText:
    """Extracted text of a single 1-indexed page."""
    page: int
    text: str


@dataclass(frozen=True)
class TextChunk:
    """Chunker output before embedding."""
    content: str
    page_start: int
    page_end: int
    token_count: int


class ChunkRecord(BaseModel):
    """A persisted chunk row with its embedding."""
    document_id: str
    chunk_index: int
    content: str
    page_start: int
    page_end: int
    token_count: int
    embedding: List[float] = Field(default_factory=list, repr=False)


class ChunkMatch(BaseModel):
    """A chunk returned by similarity search."""
    id: str
    chunk_index: int
    content: str
    page_start: int
    page_end: int
    token_count: int
    similarity: float


class Source(BaseModel):
    """Citation pointing back to the document text."""
    type: Literal["local"] = "local"
    page: int
    section: str = ""
    quote: str


class ResearchDirection(BaseModel):
    category: ResearchCategory
    title: str
    description: str


class Insight(BaseModel):
    """A citation-backed finding extracted from the document."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    title: str
    description: str
    sources: List[Source] = Field(default_factory=list)
    research_directions: List[ResearchDirection] = Field(
        default_factory=list, alias="researchDirections"
    )

    def to_payload(self, include_id: bool = True) -> dict:
        """Serialize with the camelCase keys used in prompts and the cache."""
        exclude = None if include_id else {"id"}
        return self.model_dump(by_alias=True, exclude=exclude)


class InsightPlan(BaseModel):
    total_chunks: int
    total_groups: int
