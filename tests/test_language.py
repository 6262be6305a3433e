"""Tests for roundtable/moderator/language.py."""

import json
from unittest.mock import AsyncMock

import pytest

from roundtable.moderator.language import (
    MODERATOR_SYSTEM,
    ClosingInput,
    ModeratorLanguageError,
    ModeratorLanguageGenerator,
    OpeningInput,
    OutlineInput,
    ParticipantBrief,
    PhaseBrief,
    QuestionInput,
    SpeechBrief,
    SummaryInput,
)
from roundtable.providers.base import LLMClientError
from tests.conftest import MockClient, moderator_client

PHASES = [PhaseBrief("opening", "Opening", "opening"), PhaseBrief("clash", "Clash", "debate", "Argue it out")]
PEOPLE = [ParticipantBrief("alice", "Alice", "Engineer", "YAML"), ParticipantBrief("bob", "Bob", "Ops")]


def _generator(payload: dict) -> tuple[ModeratorLanguageGenerator, MockClient]:
    client = MockClient("moderator", json.dumps(payload))
    return ModeratorLanguageGenerator(client), client


async def test_outline_keeps_known_phases_only():
    generator, client = _generator({
        "title": "Config formats",
        "phases": [
            {"phase_id": "clash", "key_points": ["readability", " "], "suggested_questions": ["Why?"]},
            {"phase_id": "made-up", "key_points": ["x"]},
            "garbage",
        ],
        "moderator_notes": ["Keep it short"],
    })
    outline = await generator.generate_outline(OutlineInput("YAML vs JSON", PEOPLE, PHASES))

    assert outline.title == "Config formats"
    assert [p.phase_id for p in outline.phases] == ["clash"]
    assert outline.phases[0].phase_name == "Clash"
    assert outline.phases[0].key_points == ["readability"]
    assert outline.moderator_notes == ["Keep it short"]

    messages = client.complete.call_args.args[0]
    assert messages[0] == {"role": "system", "content": MODERATOR_SYSTEM}
    assert "Alice (Engineer): YAML" in messages[1]["content"]


async def test_question_type_defaults_depend_on_target():
    generator, _ = _generator({"question": "What would convince you?", "type": "rhetorical"})
    phase = PHASES[1]

    untargeted = await generator.generate_question(QuestionInput("t", phase, 2, 6))
    assert untargeted.type == "open"
    assert untargeted.target_agent_id is None

    targeted = await generator.generate_question(QuestionInput("t", phase, 2, 6, target=PEOPLE[1]))
    assert targeted.type == "directed"
    assert targeted.target_agent_id == "bob"


async def test_question_keeps_valid_type_and_strips_thoughts():
    generator, client = _generator({"question": "<think>hmm</think>Why JSON?", "type": "challenge"})
    question = await generator.generate_question(QuestionInput(
        "t", PHASES[1], 1, 6,
        divergence_points=["strictness"],
        recent_speeches=[SpeechBrief("Bob", "JSON is strict")],
    ))
    assert question.question == "Why JSON?"
    assert question.type == "challenge"
    prompt = client.complete.call_args.args[0][1]["content"]
    assert "- strictness" in prompt
    assert "- Bob: JSON is strict" in prompt


async def test_summary():
    generator, _ = _generator({
        "summary": "Both sides agree comments matter.",
        "consensus": ["comments matter"],
        "divergence": ["strictness"],
        "next_steps": "",
    })
    summary = await generator.generate_summary(SummaryInput("t", PHASES[1], kind="final"))
    assert summary.text == "Both sides agree comments matter."
    assert summary.kind == "final"
    assert summary.consensus == ["comments matter"]
    assert summary.divergence == ["strictness"]
    assert summary.next_steps is None


async def test_opening_and_closing():
    generator = ModeratorLanguageGenerator(moderator_client())
    opening = await generator.generate_opening(OpeningInput("t", "Debate", PEOPLE, PHASES))
    assert opening == "Welcome, everyone."

    closing = await generator.generate_closing(ClosingInput("t", phase_summaries=[("Clash", "Heated.")]))
    assert closing.text == "Thank you all."
    assert closing.conclusion == "No consensus was reached."


async def test_missing_field_raises():
    generator, _ = _generator({"closing": "Bye"})
    with pytest.raises(ModeratorLanguageError, match="conclusion"):
        await generator.generate_closing(ClosingInput("t"))


async def test_unparseable_output_raises():
    client = MockClient("moderator", "I am not JSON")
    with pytest.raises(ModeratorLanguageError, match="summary generation failed"):
        await ModeratorLanguageGenerator(client).generate_summary(SummaryInput("t", PHASES[0]))


async def test_client_failure_raises():
    client = MockClient("moderator")
    client.complete = AsyncMock(side_effect=LLMClientError("moderator", "quota exceeded"))
    with pytest.raises(ModeratorLanguageError, match="quota exceeded"):
        await ModeratorLanguageGenerator(client).generate_opening(OpeningInput("t", "Debate", PEOPLE, PHASES))
