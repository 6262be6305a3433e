"""OpenAI-compatible client using openai SDK with native async.

Also serves xAI and DeepSeek through ``base_url`` in settings.yaml.
"""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from roundtable.providers.base import Completion, CompletionOptions, LLMClient, LLMClientError, Message

logger = logging.getLogger(__name__)


class OpenAIClient(LLMClient):
    """OpenAI (or compatible endpoint) client via openai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise LLMClientError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def timeout_sec(self) -> float:
        return float(self._config.timeout_sec)

    def _request(self, messages: list[Message], options: CompletionOptions) -> dict:
        request = {
            "model": self._config.model,
            "messages": messages,
            "max_tokens": options.max_tokens or self._config.max_tokens,
            "temperature": options.temperature,
        }
        if options.json_mode:
            request["response_format"] = {"type": "json_object"}
        return request

    async def complete(self, messages: list[Message], options: CompletionOptions | None = None) -> Completion:
        options = options or CompletionOptions()
        timeout = options.timeout_sec or self._config.timeout_sec
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**self._request(messages, options)),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise LLMClientError(self._config.name, f"Request timed out after {timeout}s", timed_out=True) from exc
        except Exception as exc:
            raise LLMClientError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise LLMClientError(self._config.name, "Empty response content")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens

        logger.debug("OpenAI-compatible completion (%s): %.2fs, %s tokens", self._config.name, latency, token_count)

        return Completion(
            content=choice.message.content,
            token_usage=token_count,
            finish_reason=choice.finish_reason,
            model=self._config.model,
            latency_sec=latency,
        )

    async def stream(self, messages: list[Message], options: CompletionOptions | None = None) -> AsyncIterator[str]:
        options = options or CompletionOptions()
        try:
            chunks = await self._client.chat.completions.create(**self._request(messages, options), stream=True)
            async for chunk in chunks:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except Exception as exc:
            raise LLMClientError(self._config.name, f"Stream failed: {exc}") from exc
