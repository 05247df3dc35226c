import hashlib
import json
import textwrap
import threading
from typing import Callable, List, Sequence, Union

import fitz
import numpy as np
import pytest

from docinsight.core.models import Insight
from docinsight.core.pipeline import DocInsight
from docinsight.core.storage import LocalObjectStorage
from docinsight.core.store import InMemoryStore

DIMENSIONS = 8


class FakeEmbedder:
    """Deterministic bag-of-words vectors so related texts score high."""

    def __init__(self, dimensions: int = DIMENSIONS, fail: Exception = None):
        self.dimensions = dimensions
        self.fail = fail
        self.calls = []

    def _vector(self, text: str) -> List[float]:
        vector = np.zeros(self.dimensions)
        for word in text.lower().split():
            digest = hashlib.md5(word.strip(".,!?").encode()).digest()
            vector[digest[0] % self.dimensions] += 1.0
        if not vector.any():
            vector[0] = 1.0
        return vector.tolist()

    def embed(self, texts: Sequence[str], mode: str = "document") -> List[List[float]]:
        self.calls.append((list(texts), mode))
        if self.fail is not None:
            raise self.fail
        return [self._vector(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return self.embed([text], mode="query")[0]


Response = Union[str, Exception, Callable[[str, str], str]]


class FakeModel:
    """Scripted generative model; responses are consumed in call order."""

    def __init__(self, responses: Sequence[Response] = (), default: Response = "[]"):
        self.responses = list(responses)
        self.default = default
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, system_instruction, user_message, config) -> str:
        with self._lock:
            self.calls.append((system_instruction, user_message, config))
            response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(system_instruction, user_message)
        return response


def insight_payload(title: str, page: int = 1, **extra) -> dict:
    payload = {
        "title": title,
        "description": f"{title} explained in two sentences. It matters.",
        "sources": [{"type": "local", "page": page, "section": "Intro", "quote": f"quote for {title}"}],
        "researchDirections": [
            {"category": "Adjacent Field", "title": "Related work", "description": "Look nearby."},
            {"category": "Cross-Discipline", "title": "Far work", "description": "Look far."},
        ],
    }
    payload.update(extra)
    return payload


def insights_json(*titles: str) -> str:
    return json.dumps([insight_payload(title) for title in titles])


def make_insights(count: int, prefix: str = "Finding") -> List[Insight]:
    return [Insight.model_validate(insight_payload(f"{prefix} {i}")) for i in range(count)]


def build_pdf(pages: Sequence[str]) -> bytes:
    """PDF with one page per entry; an empty string gives a blank page."""
    doc = fitz.open()
    try:
        for text in pages:
            page = doc.new_page()
            if text:
                page.insert_text((36, 48), "\n".join(textwrap.wrap(text, 90)), fontsize=9)
        return doc.tobytes()
    finally:
        doc.close()


def sentences(count: int, words: int = 12, start: int = 0) -> str:
    """``count`` distinct sentences of ``words`` words each."""
    return " ".join(
        " ".join(f"word{n}x{w}" for w in range(words)) + "."
        for n in range(start, start + count)
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "objects")


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def model():
    return FakeModel()


@pytest.fixture
def service(store, storage, embedder, model):
    return DocInsight(store=store, storage=storage, embedder=embedder, model=model)


@pytest.fixture
def uploaded(store, storage):
    """Create a processing document whose PDF is already in storage."""
    def _upload(pdf_bytes: bytes, owner_id: str = "user-1", file_name: str = "paper.pdf"):
        document = store.create_document(owner_id, file_name, len(pdf_bytes), status="uploading")
        path = f"{owner_id}/{document.id}/{file_name}"
        storage.upload(path, pdf_bytes)
        return store.update_document(document.id, status="processing", file_url=path)
    return _upload

