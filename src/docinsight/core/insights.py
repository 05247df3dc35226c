"""Group-wise insight extraction over consecutive chunks."""

import json
import logging
from typing import Any, List, Sequence

from pydantic import ValidationError

from .errors import InsightParseError, InsightSchemaError
from .llm import EXTRACTION_CONFIG, GenerativeModel
from .models import ChunkRecord, Insight
from .store import Store

logger = logging.getLogger(__name__)

CHUNKS_PER_GROUP = 10

INSIGHT_JSON_SHAPE = """[
  {
    "title": "string",
    "description": "string",
    "sources": [
      { "type": "local", "page": number, "section": "string", "quote": "string" }
    ],
    "researchDirections": [
      { "category": "Adjacent Field | Alternative Approach | Contrasting Theory | Cross-Discipline", "title": "string", "description": "string" }
    ]
  }
]"""

EXTRACT_PROMPT = f"""You are an expert research assistant. You will receive text chunks from one section of a PDF document. Extract every key insight they contain.

For each insight:
1. State the insight: a finding, method, conclusion, claim, argument or implication taken from the text and backed by direct quotes.
2. Suggest research directions: drawing on the wider academic landscape, name 2-4 directions the reader could follow to go deeper.

Research direction categories:
- "Adjacent Field": a neighbouring discipline or subfield studying related phenomena
- "Alternative Approach": a different methodology or framework for the same question
- "Contrasting Theory": a competing or complementary theoretical perspective
- "Cross-Discipline": an unexpected connection to an unrelated field

Rules:
- Extract ALL meaningful insights in the chunks; there is no fixed limit
- Expect roughly 2-5 insights per group, more when the content is dense
- Titles are concise (10 words at most); descriptions are 2-3 sentences
- Give 1-3 source citations per insight with page number, section label and a short verbatim quote
- Every insight must be distinct; never repeat a point
- Give 2-4 research directions per insight and be specific: name real fields, theories or study types

Return valid JSON only, without markdown fences, in exactly this structure:
{INSIGHT_JSON_SHAPE}"""


def group_prefix(document_id: str) -> str:
    return document_id[:8]


def format_chunk_context(chunks: Sequence[ChunkRecord]) -> str:
    """Label each chunk with its index and page range."""
    return "\n\n---\n\n".join(
        f"[Chunk {c.chunk_index}, Pages {c.page_start}-{c.page_end}]\n{c.content}"
        for c in chunks
    )


def _unwrap(data: Any) -> Any:
    # JSON-object mode may wrap the array, e.g. {"insights": [...]}
    # or return one bare insight object
    if isinstance(data, dict):
        if "title" in data:
            return [data]
        lists = [value for value in data.values() if isinstance(value, list)]
        if len(lists) == 1:
            return lists[0]
    return data


def parse_insights(response_text: str) -> List[Insight]:
    """
    Validate a model response against the insight schema.

    Args:
        response_text: Raw model output

    Returns:
        Insights without IDs; empty for an empty response

    Raises:
        InsightParseError: if the text is not JSON
        InsightSchemaError: if the JSON does not describe a list of insights
    """
    text = response_text.strip()
    if not text:
        return []

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise InsightParseError(f"Model response is not valid JSON: {e}") from e

    data = _unwrap(data)
    if not isinstance(data, list):
        raise InsightSchemaError(f"Expected a JSON array of insights, got {type(data).__name__}")

    insights = []
    for position, item in enumerate(data):
        if not isinstance(item, dict):
            raise InsightSchemaError(f"Insight {position} is not an object")
        payload = {key: value for key, value in item.items() if key != "id"}
        try:
            insights.append(Insight.model_validate(payload))
        except ValidationError as e:
            raise InsightSchemaError(f"Insight {position} failed validation: {e}") from e
    return insights


class InsightExtractor:
    """Prompts the model over exactly one group of chunks. Stateless."""

    def __init__(self, store: Store, model: GenerativeModel, chunks_per_group: int = CHUNKS_PER_GROUP):
        self.store = store
        self.model = model
        self.chunks_per_group = chunks_per_group

    def load_group(self, document_id: str, group_index: int) -> List[ChunkRecord]:
        offset = group_index * self.chunks_per_group
        return self.store.get_chunks(document_id, offset, self.chunks_per_group)

    def extract_group(self, document_id: str, group_index: int, total_groups: int) -> List[Insight]:
        """
        Extract candidate insights for one group.

        IDs are ``insight-{prefix}-g{group}-{i}`` so they never collide across
        groups.

        Raises:
            InsightParseError, InsightSchemaError: malformed model output
            GenerationError: the model call itself failed
        """
        chunks = self.load_group(document_id, group_index)
        if not chunks:
            logger.error(f"No chunks found for group {group_index} of {document_id}")
            return []

        logger.info(
            f"Extracting group {group_index + 1}/{total_groups} "
            f"({len(chunks)} chunks, pages {chunks[0].page_start}-{chunks[-1].page_end})"
        )

        user_message = (
            f"Here are text chunks from section {group_index + 1} of {total_groups} of the document:\n\n"
            f"{format_chunk_context(chunks)}\n\n"
            "Extract all key insights from these chunks."
        )
        response_text = self.model.generate(EXTRACT_PROMPT, user_message, EXTRACTION_CONFIG)
        if not response_text:
            logger.warning(f"Empty response for group {group_index + 1}")
            return []

        raw = parse_insights(response_text)
        logger.info(f"Group {group_index + 1}: extracted {len(raw)} insights")

        prefix = group_prefix(document_id)
        return [
            insight.model_copy(update={"id": f"insight-{prefix}-g{group_index}-{i}"})
            for i, insight in enumerate(raw)
        ]
