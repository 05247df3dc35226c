"""Sentence-aware overlapping chunker with page tracking."""

import math
import re
from dataclasses import dataclass
from typing import List, Sequence

from .models import PageText, TextChunk

CHUNK_SIZE = 800  # target tokens per chunk
CHUNK_OVERLAP = 100  # trailing tokens carried into the next chunk

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class Sentence:
    text: str
    page: int


def estimate_tokens(text: str) -> int:
    """Rough token count: ~4 characters per token."""
    return math.ceil(len(text) / 4)


def split_sentences(pages: Sequence[PageText]) -> List[Sentence]:
    """Flatten pages into one sentence stream, each sentence tagged with its page."""
    sentences = []
    for page in pages:
        for part in _SENTENCE_BOUNDARY.split(page.text):
            trimmed = part.strip()
            if trimmed:
                sentences.append(Sentence(text=trimmed, page=page.page))
    return sentences


def _finalize(texts: List[str], page_start: int, page_end: int) -> TextChunk:
    content = " ".join(texts)
    return TextChunk(
        content=content,
        page_start=page_start,
        page_end=page_end,
        token_count=estimate_tokens(content),
    )


def chunk_pages(
    pages: Sequence[PageText],
    chunk_size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP
) -> List[TextChunk]:
    """
    Split page text into overlapping chunks of roughly ``chunk_size`` tokens.

    Chunks never split a sentence. When a chunk is finalized its trailing
    sentences (up to ``overlap`` tokens) seed the next chunk. The next chunk's
    page_start is the page of the sentence that triggered finalization, so
    overlap sentences from an earlier page are attributed to the later page.

    Args:
        pages: Ordered page texts
        chunk_size: Target chunk size in estimated tokens
        overlap: Overlap budget in estimated tokens

    Returns:
        Ordered list of chunks; empty if the pages contain no sentences
    """
    sentences = split_sentences(pages)
    if not sentences:
        return []

    chunks: List[TextChunk] = []
    current: List[str] = []
    current_tokens = 0
    page_start = sentences[0].page
    page_end = sentences[0].page

    for sentence in sentences:
        sentence_tokens = estimate_tokens(sentence.text)

        if current_tokens + sentence_tokens > chunk_size and current:
            chunks.append(_finalize(current, page_start, page_end))

            overlap_tokens = 0
            overlap_start = len(current)
            for i in range(len(current) - 1, -1, -1):
                tokens = estimate_tokens(current[i])
                if overlap_tokens + tokens > overlap:
                    break
                overlap_tokens += tokens
                overlap_start = i

            current = current[overlap_start:]
            current_tokens = overlap_tokens
            page_start = sentence.page

        current.append(sentence.text)
        current_tokens += sentence_tokens
        page_end = sentence.page

    if current:
        chunks.append(_finalize(current, page_start, page_end))

    return chunks
