"""Tests for roundtable/models.py dataclasses."""

import dataclasses

import pytest

from roundtable.models import PASS_INTENT, AgentPersona, EventType, IntentOutput, new_event


def test_new_event_fields():
    e = new_event("s1", EventType.SPEECH, "alice", "Hello", phase="main")
    assert e.session_id == "s1"
    assert e.type is EventType.SPEECH
    assert e.speaker == "alice"
    assert e.content == "Hello"
    assert e.sequence == 0
    assert e.meta == {"phase": "main"}
    assert e.timestamp.tzinfo is not None


def test_new_event_drops_none_meta():
    e = new_event("s1", EventType.SYSTEM, "system", "x", phase="main", target=None)
    assert "target" not in e.meta


def test_new_event_ids_unique():
    ids = {new_event("s1", EventType.SYSTEM, "system", "x").event_id for _ in range(50)}
    assert len(ids) == 50


def test_event_is_immutable():
    e = new_event("s1", EventType.SYSTEM, "system", "x")
    with pytest.raises(dataclasses.FrozenInstanceError):
        e.sequence = 5  # type: ignore[misc]


def test_intent_output_to_intent():
    out = IntentOutput(intent="question", urgency=4, target="bob", topic="cost")
    intent = out.to_intent("alice")
    assert intent.agent_id == "alice"
    assert intent.kind == "question"
    assert intent.urgency == 4
    assert intent.target == "bob"


def test_pass_intent_default():
    assert PASS_INTENT.intent == "pass"
    assert PASS_INTENT.urgency == 1
    assert PASS_INTENT.vote is None


def test_persona_defaults():
    p = AgentPersona(id="a", name="A", role="r", persona="p")
    assert p.speaking_style == "concise"
    assert p.expertise == ()
    assert p.provider is None
