"""Abstract base for all language-model clients."""

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)

# Messages are plain {"role": "system"|"user"|"assistant", "content": str} dicts.
Message = dict[str, str]

RETRY_TIMEOUT_FACTOR = 1.5
DEFAULT_TIMEOUT_SEC = 60.0


class LLMClientError(Exception):
    """Raised when a model call fails."""

    def __init__(self, provider_name: str, message: str, *, timed_out: bool = False) -> None:
        self.provider_name = provider_name
        self.timed_out = timed_out
        super().__init__(f"[{provider_name}] {message}")


@dataclass(frozen=True)
class CompletionOptions:
    temperature: float = 0.7
    max_tokens: int | None = None      # None = model config default
    timeout_sec: float | None = None   # None = model config default
    json_mode: bool = False


@dataclass(frozen=True)
class Completion:
    content: str
    token_usage: int | None = None
    finish_reason: str | None = None
    model: str = ""
    latency_sec: float = 0.0


class LLMClient(ABC):
    """Abstract base for all model clients."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def complete(self, messages: list[Message], options: CompletionOptions | None = None) -> Completion:
        """Run one chat completion.

        Args:
            messages: Conversation, optionally starting with a system message.
            options: Sampling and timeout overrides.

        Returns:
            Completion with the response text and usage metadata.

        Raises:
            LLMClientError: On API failure, timeout, or empty response.
        """
        ...

    def timeout_sec(self) -> float:
        """Timeout applied when options carry none."""
        return DEFAULT_TIMEOUT_SEC

    async def stream(self, messages: list[Message], options: CompletionOptions | None = None) -> AsyncIterator[str]:
        """Yield the response in chunks. Default: one chunk from ``complete``."""
        completion = await self.complete(messages, options)
        yield completion.content


def split_system(messages: list[Message]) -> tuple[str | None, list[Message]]:
    """Separate system messages (joined) from the chat turns."""
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    chat = [m for m in messages if m["role"] != "system"]
    return ("\n\n".join(system_parts) if system_parts else None), chat


async def complete_with_retry(
    client: LLMClient,
    messages: list[Message],
    options: CompletionOptions,
) -> Completion:
    """Call ``client.complete``, retrying once on timeout with 1.5x the timeout.

    Raises:
        LLMClientError: On permanent failure, or when the retry also fails.
    """
    try:
        return await client.complete(messages, options)
    except LLMClientError as exc:
        if not exc.timed_out:
            raise
        base = options.timeout_sec if options.timeout_sec is not None else client.timeout_sec()
        retry_options = replace(options, timeout_sec=base * RETRY_TIMEOUT_FACTOR)
        logger.warning(
            "Client %s timed out, retrying with %.0fs (1.5x)",
            client.name(), retry_options.timeout_sec,
        )
        return await client.complete(messages, retry_options)
