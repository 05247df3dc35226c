"""Merge/deduplicate group insights into the final per-document set."""

import json
import logging
from dataclasses import dataclass
from typing import List, Sequence, Union

from .errors import GenerationError, InsightParseError, InsightSchemaError
from .insights import INSIGHT_JSON_SHAPE, group_prefix, parse_insights
from .llm import MERGE_CONFIG, GenerativeModel
from .models import Insight

logger = logging.getLogger(__name__)

# At or below this many candidates the model merge is skipped.
MERGE_THRESHOLD = 6

MERGE_PROMPT = f"""You are an expert research assistant. You are given raw insights extracted from different sections of the same PDF document. Some of them overlap, repeat each other or cover one topic from different angles.

Your job:
1. Merge insights about the same topic into one stronger insight, combining their descriptions, sources and research directions
2. Deduplicate: drop insights that say the same thing
3. Keep every distinct insight; never drop one just to shorten the list
4. Keep every unique source citation from the originals when merging
5. Keep the best 2-4 research directions when merging, removing exact duplicates

Rules:
- The final list must cover the WHOLE document
- Every significant finding, method, conclusion or argument must be represented
- Titles are concise (10 words at most); descriptions are 2-3 sentences
- Return valid JSON only, without markdown fences, in the same structure as the input

Return the consolidated insights as a JSON array:
{INSIGHT_JSON_SHAPE}"""


@dataclass
class Merged:
    """Clean result: merged by the model, or passed through below the threshold."""
    insights: List[Insight]
    skipped: bool = False


@dataclass
class Fallback:
    """Degraded result: the unmerged candidates, re-IDed."""
    insights: List[Insight]
    reason: str


MergeOutcome = Union[Merged, Fallback]


def assign_final_ids(document_id: str, insights: Sequence[Insight]) -> List[Insight]:
    """Sequential IDs ``insight-{prefix}-{index}``; incoming IDs are discarded."""
    prefix = group_prefix(document_id)
    return [
        insight.model_copy(update={"id": f"insight-{prefix}-{index}"})
        for index, insight in enumerate(insights)
    ]


class InsightMerger:
    """Combines group candidates; never fails, degrades to the unmerged set."""

    def __init__(self, model: GenerativeModel, threshold: int = MERGE_THRESHOLD):
        self.model = model
        self.threshold = threshold

    def merge(self, document_id: str, candidates: Sequence[Insight]) -> MergeOutcome:
        if len(candidates) <= self.threshold:
            logger.info(f"Only {len(candidates)} insights, skipping merge")
            return Merged(assign_final_ids(document_id, candidates), skipped=True)

        logger.info(f"Merging {len(candidates)} raw insights...")
        stripped = [insight.to_payload(include_id=False) for insight in candidates]
        user_message = (
            "Here are all the raw insights extracted from different sections of the document:\n\n"
            f"{json.dumps(stripped, indent=2, ensure_ascii=False)}\n\n"
            "Merge overlapping insights and deduplicate while preserving all distinct findings."
        )

        try:
            response_text = self.model.generate(MERGE_PROMPT, user_message, MERGE_CONFIG)
            merged = parse_insights(response_text) if response_text else []
        except (GenerationError, InsightParseError, InsightSchemaError) as e:
            logger.warning(f"Merge failed, caching unmerged insights: {e}")
            return Fallback(assign_final_ids(document_id, candidates), reason=str(e))

        if not merged:
            logger.warning("Empty merge response, caching unmerged")
            return Fallback(assign_final_ids(document_id, candidates), reason="empty merge response")

        logger.info(f"Merge complete: {len(candidates)} -> {len(merged)} insights")
        return Merged(assign_final_ids(document_id, merged))
