"""Generative model client (OpenAI SDK against an OpenAI-compatible endpoint)."""

import logging
from dataclasses import dataclass
from typing import Optional

import openai
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import LLMConfig, get_llm_config
from .errors import GenerationError

logger = logging.getLogger(__name__)

# Transport-level failures worth another attempt; everything else surfaces.
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float
    max_output_tokens: int
    json_mode: bool = True


EXTRACTION_CONFIG = GenerationConfig(temperature=0.4, max_output_tokens=16000)
MERGE_CONFIG = GenerationConfig(temperature=0.3, max_output_tokens=32000)


class GenerativeModel:
    """Thin wrapper exposing ``generate(system, user, config) -> text``."""

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        client: Optional[openai.OpenAI] = None
    ):
        self.config = config or get_llm_config()
        if client is None:
            if not self.config.api_key:
                raise ValueError("LLM API key not found in environment variables")
            client = openai.OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                max_retries=0,
            )
        self._client = client

    def generate(self, system_instruction: str, user_message: str, config: GenerationConfig) -> str:
        """
        Run one chat completion and return the stripped response text.

        Args:
            system_instruction: Fixed instruction for the task
            user_message: Task input
            config: Sampling and output settings

        Returns:
            Response text, possibly empty

        Raises:
            GenerationError: when the service call fails after retries
        """
        kwargs = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_instruction},
                {"role": "user", "content": user_message},
            ],
            "temperature": config.temperature,
            "max_tokens": config.max_output_tokens,
        }
        if config.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        @retry(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            stop=stop_after_attempt(max(1, self.config.max_retries)),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True,
        )
        def _call_llm():
            return self._client.chat.completions.create(**kwargs)

        try:
            response = _call_llm()
        except openai.OpenAIError as e:
            logger.error(f"Generative model call failed: {e}")
            raise GenerationError(str(e)) from e

        if not response.choices:
            return ""
        content = response.choices[0].message.content
        return (content or "").strip()
