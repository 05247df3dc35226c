import json

import httpx
import pytest

from docinsight.core.config import EmbeddingConfig
from docinsight.core.embed import EmbeddingClient
from docinsight.core.errors import EmbeddingServiceError


def make_client(handler, dimensions=4, batch_size=20):
    config = EmbeddingConfig(api_key="test-key", dimensions=dimensions, batch_size=batch_size)
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return EmbeddingClient(config=config, http_client=http_client)


def echo_handler(requests_seen, dimensions=4):
    """Answer each request with vectors encoding the text's position."""
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests_seen.append((request, body))
        embeddings = []
        for item in body["requests"]:
            index = int(item["content"]["parts"][0]["text"].split("-")[1])
            embeddings.append({"values": [float(index)] + [0.0] * (dimensions - 1)})
        return httpx.Response(200, json={"embeddings": embeddings})
    return handler


def test_requires_api_key():
    with pytest.raises(ValueError):
        EmbeddingClient(config=EmbeddingConfig(api_key=None))


def test_batches_sequentially_and_preserves_order():
    seen = []
    client = make_client(echo_handler(seen))
    texts = [f"text-{i}" for i in range(45)]

    vectors = client.embed(texts)

    assert [len(body["requests"]) for _, body in seen] == [20, 20, 5]
    assert [vector[0] for vector in vectors] == [float(i) for i in range(45)]
    assert all(len(vector) == 4 for vector in vectors)


def test_request_shape_and_task_types():
    seen = []
    client = make_client(echo_handler(seen))

    client.embed(["text-0"], mode="document")
    client.embed_query("text-1")

    request, body = seen[0]
    assert request.url.path.endswith("/models/gemini-embedding-001:batchEmbedContents")
    assert request.url.params["key"] == "test-key"
    item = body["requests"][0]
    assert item["model"] == "models/gemini-embedding-001"
    assert item["taskType"] == "RETRIEVAL_DOCUMENT"
    assert item["outputDimensionality"] == 4
    assert seen[1][1]["requests"][0]["taskType"] == "RETRIEVAL_QUERY"


def test_empty_input_makes_no_request():
    seen = []
    client = make_client(echo_handler(seen))
    assert client.embed([]) == []
    assert seen == []


def test_error_status_carries_status_and_body():
    client = make_client(lambda request: httpx.Response(429, text="quota exhausted"))

    with pytest.raises(EmbeddingServiceError) as exc_info:
        client.embed(["text-0"])

    assert exc_info.value.status_code == 429
    assert exc_info.value.body == "quota exhausted"
    assert "429" in str(exc_info.value)


def test_failure_in_later_batch_aborts():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 2:
            return httpx.Response(500, text="boom")
        count = len(json.loads(request.content)["requests"])
        return httpx.Response(200, json={"embeddings": [{"values": [1.0, 0.0]}] * count})

    client = make_client(handler, dimensions=2, batch_size=2)
    with pytest.raises(EmbeddingServiceError):
        client.embed([f"text-{i}" for i in range(6)])
    assert len(calls) == 2


def test_dimension_mismatch_is_an_error():
    client = make_client(
        lambda request: httpx.Response(200, json={"embeddings": [{"values": [1.0, 2.0]}]}),
        dimensions=4,
    )
    with pytest.raises(EmbeddingServiceError, match="4 dimensions"):
        client.embed(["text-0"])


def test_vector_count_mismatch_is_an_error():
    client = make_client(lambda request: httpx.Response(200, json={"embeddings": []}))
    with pytest.raises(EmbeddingServiceError, match="0 vectors for 1 texts"):
        client.embed(["text-0"])
