from types import SimpleNamespace

import httpx
import openai
import pytest

from docinsight.core.config import LLMConfig
from docinsight.core.errors import GenerationError
from docinsight.core.llm import EXTRACTION_CONFIG, MERGE_CONFIG, GenerationConfig, GenerativeModel


class FakeCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def make_model(*outcomes, max_retries=3):
    completions = FakeCompletions(outcomes)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    config = LLMConfig(api_key="test-key", model="test-model", max_retries=max_retries)
    return GenerativeModel(config=config, client=client), completions


def test_generate_sends_instruction_and_settings():
    model, completions = make_model(completion('  [{"title": "x"}]  '))

    text = model.generate("system prompt", "user message", EXTRACTION_CONFIG)

    assert text == '[{"title": "x"}]'
    call = completions.calls[0]
    assert call["model"] == "test-model"
    assert call["messages"] == [
        {"role": "system", "content": "system prompt"},
        {"role": "user", "content": "user message"},
    ]
    assert call["temperature"] == 0.4
    assert call["max_tokens"] == 16000
    assert call["response_format"] == {"type": "json_object"}


def test_merge_settings():
    assert (MERGE_CONFIG.temperature, MERGE_CONFIG.max_output_tokens) == (0.3, 32000)


def test_plain_text_mode_omits_response_format():
    model, completions = make_model(completion("hello"))
    model.generate("s", "u", GenerationConfig(temperature=0.0, max_output_tokens=10, json_mode=False))
    assert "response_format" not in completions.calls[0]


def test_empty_choices_and_null_content_give_empty_text():
    model, _ = make_model(SimpleNamespace(choices=[]), completion(None))
    assert model.generate("s", "u", EXTRACTION_CONFIG) == ""
    assert model.generate("s", "u", EXTRACTION_CONFIG) == ""


def test_service_error_becomes_generation_error():
    model, completions = make_model(openai.OpenAIError("bad request"))
    with pytest.raises(GenerationError, match="bad request"):
        model.generate("s", "u", EXTRACTION_CONFIG)
    assert len(completions.calls) == 1


def test_transient_error_is_retried():
    request = httpx.Request("POST", "https://llm.test/chat/completions")
    model, completions = make_model(
        openai.APIConnectionError(request=request),
        completion("ok"),
        max_retries=2,
    )
    assert model.generate("s", "u", EXTRACTION_CONFIG) == "ok"
    assert len(completions.calls) == 2


def test_missing_key_without_client_raises():
    with pytest.raises(ValueError):
        GenerativeModel(config=LLMConfig(api_key=None))
