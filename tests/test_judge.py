"""Tests for roundtable/moderator/judge.py."""

import json
from unittest.mock import AsyncMock

import pytest

from config.config_loader import JudgeConfig
from roundtable.moderator.judge import (
    DEFAULT_DIMENSIONS,
    JudgeInput,
    JudgePanel,
    JudgeScore,
    aggregate,
    rank,
    weighted_total,
)
from roundtable.moderator.language import ParticipantBrief, SpeechBrief
from roundtable.providers.base import Completion, LLMClientError
from tests.conftest import MockClient

ALICE = ParticipantBrief(id="alice", name="Alice", role="Engineer")
BOB = ParticipantBrief(id="bob", name="Bob", role="Ops")


def _scores(value: float) -> dict[str, float]:
    return {d.id: value for d in DEFAULT_DIMENSIONS}


def panel_reply(by_name: dict[str, dict], comment: str = "A close contest."):
    """side_effect: scores keyed on the participant named in the prompt, verdict for the head judge."""

    async def respond(messages, options=None):
        if "head judge" in messages[0]["content"]:
            return Completion(content=comment)
        for name, payload in by_name.items():
            if f"## Participant\n{name}" in messages[1]["content"]:
                return Completion(content=json.dumps(payload))
        raise AssertionError("unexpected prompt")

    return respond


def _client(side_effect) -> MockClient:
    client = MockClient("judge")
    client.complete = AsyncMock(side_effect=side_effect)
    return client


def test_weighted_total_uses_dimension_weights():
    scores = {"logic": 8, "evidence": 6, "expression": 7, "interaction": 9, "insight": 5}
    assert weighted_total(scores, DEFAULT_DIMENSIONS) == pytest.approx(7.15)


def test_aggregate_weights_judges():
    judges = [JudgeConfig("chair", "Chair", weight=2.0), JudgeConfig("crowd", "Crowd", weight=1.0)]
    scores = [
        JudgeScore("chair", "alice", _scores(9), 9.0),
        JudgeScore("crowd", "alice", _scores(6), 6.0),
    ]
    assert aggregate(scores, judges, ["alice", "bob"]) == {"alice": pytest.approx(8.0), "bob": 0.0}


def test_rank_keeps_participant_order_on_ties():
    ranking = rank({"alice": 6.0, "bob": 7.5, "carol": 6.0})
    assert [(r.agent_id, r.rank) for r in ranking] == [("bob", 1), ("alice", 2), ("carol", 3)]


async def test_score_ranks_participants_and_writes_verdict():
    client = _client(panel_reply({
        "Alice": {"scores": _scores(8), "comment": "Sharp."},
        "Bob": {"scores": _scores(6), "comment": "Solid."},
    }))
    panel = JudgePanel(client)

    result = await panel.score(JudgeInput(
        topic="YAML or JSON?",
        participants=[ALICE, BOB],
        speeches=[SpeechBrief("alice", "YAML reads better."), SpeechBrief("bob", "JSON is stricter.")],
        judges=[JudgeConfig("chair", "Chair")],
    ))

    assert [r.agent_id for r in result.ranking] == ["alice", "bob"]
    assert result.aggregated["alice"] == pytest.approx(8.0)
    assert result.judge_scores[0].comment == "Sharp."
    assert result.final_comment == "A close contest."
    # one call per (judge, participant) plus the verdict
    assert client.complete.call_count == 3


async def test_scores_are_clamped_and_bad_values_use_midpoint():
    reply = '{"scores": {"logic": 15, "evidence": -3, "expression": "high", "interaction": Infinity}, "comment": "ok"}'
    client = MockClient("judge", reply)
    panel = JudgePanel(client)

    score = await panel.score_agent(JudgeConfig("chair", "Chair"), "topic", ALICE, ["I spoke."])

    assert score.dimension_scores == {"logic": 10.0, "evidence": 0.0, "expression": 5.0, "interaction": 5.0, "insight": 5.0}
    assert not score.defaulted


async def test_silent_participant_gets_default_without_model_call():
    client = MockClient("judge")
    panel = JudgePanel(client)

    score = await panel.score_agent(JudgeConfig("chair", "Chair"), "topic", BOB, [])

    assert score.defaulted
    assert score.total == pytest.approx(5.0)
    assert score.comment == "Did not speak."
    client.complete.assert_not_called()


@pytest.mark.parametrize(
    "side_effect",
    [
        [Completion(content="I refuse to give numbers.")],
        [Completion(content='{"scores": [1, 2, 3]}')],
        LLMClientError("judge", "quota exceeded"),
    ],
)
async def test_unusable_judge_reply_falls_back_to_default(side_effect, caplog):
    panel = JudgePanel(_client(side_effect))

    score = await panel.score_agent(JudgeConfig("chair", "Chair"), "topic", ALICE, ["I spoke."])

    assert score.defaulted
    assert score.dimension_scores == _scores(5.0)
    assert "chair" in caplog.text
    assert "alice" in caplog.text


async def test_verdict_failure_names_the_winner():
    async def respond(messages, options=None):
        if "head judge" in messages[0]["content"]:
            raise LLMClientError("judge", "timed out")
        return Completion(content=json.dumps({"scores": _scores(7)}))

    panel = JudgePanel(_client(respond))
    result = await panel.score(JudgeInput(
        topic="topic",
        participants=[ALICE],
        speeches=[SpeechBrief("alice", "Point.")],
        judges=[JudgeConfig("chair", "Chair")],
    ))

    assert result.final_comment == "Alice scored highest with 7.0."


async def test_score_requires_judges_and_participants():
    panel = JudgePanel(MockClient("judge"))
    with pytest.raises(ValueError, match="judge"):
        await panel.score(JudgeInput(topic="t", participants=[ALICE], speeches=[], judges=[]))
    with pytest.raises(ValueError, match="participants"):
        await panel.score(JudgeInput(topic="t", participants=[], speeches=[], judges=[JudgeConfig("c", "C")]))


def test_panel_requires_dimensions():
    with pytest.raises(ValueError, match="dimension"):
        JudgePanel(MockClient("judge"), dimensions=())


async def test_result_content_carries_ranking_with_names():
    client = _client(panel_reply({"Alice": {"scores": _scores(8)}, "Bob": {"scores": _scores(4)}}, "Alice wins."))
    result = await JudgePanel(client).score(JudgeInput(
        topic="t",
        participants=[ALICE, BOB],
        speeches=[SpeechBrief("alice", "a"), SpeechBrief("bob", "b")],
        judges=[JudgeConfig("chair", "Chair")],
    ))

    content = result.to_content({"alice": "Alice", "bob": "Bob"})

    assert content["text"] == "Alice wins."
    assert content["ranking"] == [
        {"agent_id": "alice", "name": "Alice", "rank": 1, "score": 8.0},
        {"agent_id": "bob", "name": "Bob", "rank": 2, "score": 4.0},
    ]
    assert len(content["scores"]) == 2
