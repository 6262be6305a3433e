"""Gemini client using google-genai SDK with native async."""

import asyncio
import logging
import os
import time

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from roundtable.providers.base import Completion, CompletionOptions, LLMClient, LLMClientError, Message, split_system

logger = logging.getLogger(__name__)


def _to_contents(chat: list[Message]) -> list[genai_types.Content]:
    return [
        genai_types.Content(
            role="model" if m["role"] == "assistant" else "user",
            parts=[genai_types.Part(text=m["content"])],
        )
        for m in chat
    ]


class GeminiClient(LLMClient):
    """Google Gemini client via google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise LLMClientError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def timeout_sec(self) -> float:
        return float(self._config.timeout_sec)

    async def complete(self, messages: list[Message], options: CompletionOptions | None = None) -> Completion:
        options = options or CompletionOptions()
        timeout = options.timeout_sec or self._config.timeout_sec
        system, chat = split_system(messages)
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._config.model,
                    contents=_to_contents(chat),
                    config=genai_types.GenerateContentConfig(
                        system_instruction=system,
                        temperature=options.temperature,
                        max_output_tokens=options.max_tokens or self._config.max_tokens,
                        response_mime_type="application/json" if options.json_mode else None,
                    ),
                ),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise LLMClientError(self._config.name, f"Request timed out after {timeout}s", timed_out=True) from exc
        except Exception as exc:
            raise LLMClientError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        if not response.text:
            raise LLMClientError(self._config.name, "Empty response text")

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        finish_reason: str | None = None
        if response.candidates and response.candidates[0].finish_reason:
            finish_reason = str(response.candidates[0].finish_reason)

        logger.debug("Gemini completion: %.2fs, %s tokens", latency, token_count)

        return Completion(
            content=response.text,
            token_usage=token_count,
            finish_reason=finish_reason,
            model=self._config.model,
            latency_sec=latency,
        )
