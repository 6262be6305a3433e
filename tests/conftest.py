"""Shared pytest fixtures."""

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AppConfig,
    DefaultsConfig,
    EndConditions,
    JudgeConfig,
    ModelConfig,
    ModeratorPolicy,
    PhaseConfig,
    ScenarioConfig,
)
from roundtable.models import AgentPersona, AgentVisibleContext, PhaseView, VisibleEvent
from roundtable.providers.base import Completion, CompletionOptions, LLMClient

# Marker text that only appears in intent prompts
INTENT_PROMPT_MARKER = "Decide whether you want to speak next"

# One JSON object that satisfies every moderator request
MODERATOR_REPLY = {
    "title": "Discussion plan",
    "phases": [],
    "moderator_notes": [],
    "question": "What would change your mind?",
    "type": "open",
    "summary": "Both sides restated their positions.",
    "consensus": ["Safety matters"],
    "divergence": ["Cost"],
    "next_steps": "Discuss costs.",
    "opening": "Welcome, everyone.",
    "closing": "Thank you all.",
    "conclusion": "No consensus was reached.",
}


class MockClient(LLMClient):
    """Test double LLMClient."""

    def __init__(self, client_name: str = "mock", content: str = '{"intent": "pass", "urgency": 1}') -> None:
        self._name = client_name
        self._content = content
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because complete is defined in the class body below.
        self.complete = AsyncMock(  # type: ignore[assignment]
            return_value=Completion(content=content, token_usage=10, finish_reason="stop", model="mock-model")
        )

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def complete(self, messages, options: CompletionOptions | None = None) -> Completion:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return Completion(content=self._content, model="mock-model")


def agent_reply(intent: dict, speech: dict | None = None):
    """side_effect for an agent client: intent JSON for intent prompts, speech JSON otherwise."""
    speech = speech or {"content": "I have a point to make.", "tone": "calm"}

    async def respond(messages, options=None):
        payload = intent if INTENT_PROMPT_MARKER in messages[-1]["content"] else speech
        return Completion(content=json.dumps(payload), token_usage=12, model="mock-model")

    return respond


def scripted_agent(name: str, intent: dict, speech: dict | None = None) -> MockClient:
    client = MockClient(name)
    client.complete = AsyncMock(side_effect=agent_reply(intent, speech))
    return client


def moderator_client() -> MockClient:
    return MockClient("moderator", json.dumps(MODERATOR_REPLY))


def make_scenario(
    phases: list[PhaseConfig] | None = None,
    policy: ModeratorPolicy | None = None,
    end: EndConditions | None = None,
    agents: tuple[AgentPersona, ...] = (),
    judges: tuple[JudgeConfig, ...] = (),
) -> ScenarioConfig:
    return ScenarioConfig(
        id="test",
        name="Test discussion",
        description="A scenario for tests",
        phases=tuple(phases or [PhaseConfig(id="main", name="Main", type="discussion", description="", max_rounds=3)]),
        agents=agents,
        moderator_policy=policy or ModeratorPolicy(),
        end_conditions=end or EndConditions(),
        topic="Is YAML better than JSON for config?",
        judges=judges,
    )


def make_persona(agent_id: str, name: str | None = None, **kwargs) -> AgentPersona:
    return AgentPersona(
        id=agent_id,
        name=name or agent_id.title(),
        role=kwargs.pop("role", "participant"),
        persona=kwargs.pop("persona", f"{agent_id} has opinions."),
        **kwargs,
    )


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="openai",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def sample_app_config(tmp_path: Path) -> AppConfig:
    model_cfg = ModelConfig(
        name="claude",
        sdk="anthropic",
        model="claude-sonnet-4-20250514",
        api_key_env="ANTHROPIC_API_KEY",
        timeout_sec=60,
        max_tokens=1024,
    )
    return AppConfig(
        defaults=DefaultsConfig(
            scenario="debate",
            agent_provider="claude",
            moderator_provider="claude",
            output_dir=tmp_path / "output",
        ),
        models={"claude": model_cfg},
        available_providers={"claude"},
    )


@pytest.fixture
def sample_phase_view() -> PhaseView:
    return PhaseView(id="main", type="discussion", name="Main", description="Talk it through", round=1, max_rounds=3)


@pytest.fixture
def sample_context(sample_phase_view: PhaseView) -> AgentVisibleContext:
    return AgentVisibleContext(
        session_id="s1",
        topic="Is YAML better than JSON for config?",
        phase=sample_phase_view,
        recent_events=(VisibleEvent(speaker="bob", content="JSON is stricter.", relative_time="10s ago"),),
    )


@pytest.fixture
def alice() -> AgentPersona:
    return make_persona("alice", "Alice", role="Engineer", speaking_style="analytical", position="YAML")


@pytest.fixture
def bob() -> AgentPersona:
    return make_persona("bob", "Bob", role="Ops", speaking_style="concise", position="JSON")


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
