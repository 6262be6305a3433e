"""Build LLM clients from settings.yaml model entries, keyed by ``sdk``."""

import logging

from config.config_loader import AppConfig
from roundtable.providers.anthropic import AnthropicClient
from roundtable.providers.base import LLMClient
from roundtable.providers.gemini import GeminiClient
from roundtable.providers.openai_provider import OpenAIClient

logger = logging.getLogger(__name__)

CLIENT_CLASSES: dict[str, type[LLMClient]] = {
    "anthropic": AnthropicClient,
    "openai": OpenAIClient,
    "google-genai": GeminiClient,
}


def build_clients(config: AppConfig) -> dict[str, LLMClient]:
    """Build a client for every provider that has an API key. Returns dict keyed by name."""
    clients: dict[str, LLMClient] = {}
    for name in sorted(config.available_providers):
        model_cfg = config.models[name]
        client_cls = CLIENT_CLASSES.get(model_cfg.sdk)
        if client_cls is None:
            logger.warning("Provider '%s' uses unknown sdk '%s', skipping", name, model_cfg.sdk)
            continue
        try:
            clients[name] = client_cls(model_cfg)
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return clients
