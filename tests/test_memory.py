"""Tests for roundtable/memory.py."""

from datetime import datetime, timezone

import pytest

from roundtable.memory import AgentPrivateContext, ShortTermMemory, estimate_tokens


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_evicts_lowest_importance_not_oldest():
    memory = ShortTermMemory(max_entries=2)
    memory.add("first", 0.9)
    memory.add("second", 0.2)
    evicted = memory.add("third", 0.5)

    assert [e.importance for e in memory.entries] == [0.9, 0.5]
    assert [e.content for e in evicted] == ["second"]


def test_ties_evict_earliest():
    memory = ShortTermMemory(max_entries=2)
    memory.add("a", 0.5)
    memory.add("b", 0.5)
    memory.add("c", 0.5)
    assert [e.content for e in memory.entries] == ["b", "c"]


def test_new_entry_can_be_evicted_itself():
    memory = ShortTermMemory(max_entries=1)
    memory.add("keep", 0.9)
    evicted = memory.add("drop", 0.1)
    assert [e.content for e in memory.entries] == ["keep"]
    assert evicted[0].content == "drop"


def test_token_bound_holds_after_every_insert():
    memory = ShortTermMemory(max_entries=100, max_tokens=10)
    for i in range(20):
        memory.add("x" * 12, importance=(i % 5) / 5)
        assert memory.estimated_tokens <= 10
        assert len(memory) <= 100
    assert memory.estimated_tokens == sum(estimate_tokens(e.content) for e in memory.entries)


def test_oversized_entry_leaves_memory_empty():
    memory = ShortTermMemory(max_entries=5, max_tokens=2)
    memory.add("far too long for the budget", 1.0)
    assert len(memory) == 0
    assert memory.estimated_tokens == 0


def test_importance_is_clamped():
    memory = ShortTermMemory()
    memory.add("high", 3.0)
    memory.add("low", -1.0)
    assert [e.importance for e in memory.entries] == [1.0, 0.0]


def test_unknown_kind_rejected():
    with pytest.raises(ValueError, match="Unknown memory kind"):
        ShortTermMemory().add("x", 0.5, kind="dream")


def test_invalid_bounds_rejected():
    with pytest.raises(ValueError):
        ShortTermMemory(max_entries=0)


def test_entries_is_a_copy_and_keeps_timestamp():
    ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
    memory = ShortTermMemory()
    memory.add("x", 0.5, kind="thought", timestamp=ts)
    entries = memory.entries
    entries.clear()
    assert len(memory) == 1
    assert memory.entries[0].timestamp == ts
    assert memory.entries[0].kind == "thought"


def test_clear():
    memory = ShortTermMemory()
    memory.add("x", 0.5)
    memory.clear()
    assert len(memory) == 0
    assert memory.estimated_tokens == 0


def test_private_context_defaults_are_independent():
    a = AgentPrivateContext()
    b = AgentPrivateContext()
    a.memory.add("only a", 0.5)
    a.long_term_summaries.append("s")
    assert len(b.memory) == 0
    assert b.long_term_summaries == []
