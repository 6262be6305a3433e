"""Unit tests for provider plumbing, no real API calls."""

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig
from roundtable.providers.base import CompletionOptions, LLMClientError, split_system
from roundtable.providers.openai_provider import OpenAIClient
from roundtable.providers.registry import build_clients
from tests.conftest import MockClient


def test_split_system():
    system, chat = split_system([
        {"role": "system", "content": "A"},
        {"role": "user", "content": "hi"},
        {"role": "system", "content": "B"},
    ])
    assert system == "A\n\nB"
    assert chat == [{"role": "user", "content": "hi"}]


def test_split_system_without_system():
    system, chat = split_system([{"role": "user", "content": "hi"}])
    assert system is None
    assert len(chat) == 1


def test_missing_api_key_raises(sample_model_config, monkeypatch):
    monkeypatch.delenv("TEST_API_KEY", raising=False)
    with pytest.raises(LLMClientError, match="Missing API key"):
        OpenAIClient(sample_model_config)


def test_openai_json_mode_request(sample_model_config, monkeypatch):
    monkeypatch.setenv("TEST_API_KEY", "sk-test")
    client = OpenAIClient(sample_model_config)
    assert client.name() == "test_model"
    assert client.timeout_sec() == 30.0

    request = client._request([{"role": "user", "content": "hi"}], CompletionOptions(json_mode=True))
    assert request["response_format"] == {"type": "json_object"}
    assert request["max_tokens"] == 1024
    assert "response_format" not in client._request([], CompletionOptions())


def test_build_clients_only_for_available(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_API_KEY", "sk-test")
    models = {
        "deepseek": ModelConfig("deepseek", "openai", "deepseek-chat", "TEST_API_KEY", 60, 512, "https://api.deepseek.com"),
        "mystery": ModelConfig("mystery", "carrier-pigeon", "coo", "TEST_API_KEY", 60, 512),
        "openai": ModelConfig("openai", "openai", "gpt", "TEST_API_KEY", 60, 512),
    }
    config = AppConfig(
        defaults=DefaultsConfig("debate", "deepseek", "deepseek", tmp_path),
        models=models,
        available_providers={"deepseek", "mystery"},
    )
    clients = build_clients(config)
    assert list(clients) == ["deepseek"]
    assert isinstance(clients["deepseek"], OpenAIClient)


async def test_default_stream_yields_completion():
    client = MockClient(content="whole answer")
    chunks = [chunk async for chunk in client.stream([{"role": "user", "content": "hi"}])]
    assert chunks == ["whole answer"]
