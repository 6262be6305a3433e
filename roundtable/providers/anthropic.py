"""Anthropic Claude client using anthropic SDK with native async."""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from roundtable.providers.base import Completion, CompletionOptions, LLMClient, LLMClientError, Message, split_system

logger = logging.getLogger(__name__)


class AnthropicClient(LLMClient):
    """Anthropic Claude client via anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise LLMClientError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def timeout_sec(self) -> float:
        return float(self._config.timeout_sec)

    def _request(self, messages: list[Message], options: CompletionOptions) -> dict:
        system, chat = split_system(messages)
        request = {
            "model": self._config.model,
            "max_tokens": options.max_tokens or self._config.max_tokens,
            "temperature": options.temperature,
            "messages": chat,
        }
        if system:
            request["system"] = system
        return request

    async def complete(self, messages: list[Message], options: CompletionOptions | None = None) -> Completion:
        options = options or CompletionOptions()
        timeout = options.timeout_sec or self._config.timeout_sec
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(**self._request(messages, options)),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise LLMClientError(self._config.name, f"Request timed out after {timeout}s", timed_out=True) from exc
        except Exception as exc:
            raise LLMClientError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise LLMClientError(self._config.name, "No text blocks in response")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens

        logger.debug("Anthropic completion: %.2fs, %s tokens", latency, token_count)

        return Completion(
            content="\n".join(text_blocks),
            token_usage=token_count,
            finish_reason=response.stop_reason,
            model=self._config.model,
            latency_sec=latency,
        )

    async def stream(self, messages: list[Message], options: CompletionOptions | None = None) -> AsyncIterator[str]:
        options = options or CompletionOptions()
        try:
            async with self._client.messages.stream(**self._request(messages, options)) as stream:
                async for text in stream.text_stream:
                    yield text
        except Exception as exc:
            raise LLMClientError(self._config.name, f"Stream failed: {exc}") from exc
