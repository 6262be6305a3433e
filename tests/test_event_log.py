"""Tests for roundtable/event_log.py."""

import json
import threading
from pathlib import Path

import pytest

from roundtable.event_log import (
    EventLogError,
    JsonlEventLog,
    KeepBefore,
    KeepLast,
    KeepTypes,
    MemoryEventLog,
)
from roundtable.models import EventType, new_event


def _speech(session_id: str = "s1", text: str = "hi", speaker: str = "alice"):
    return new_event(session_id, EventType.SPEECH, speaker, text)


@pytest.fixture
def log() -> MemoryEventLog:
    return MemoryEventLog()


def test_append_assigns_contiguous_sequence_from_one(log):
    stored = [log.append(_speech(text=str(i))) for i in range(5)]
    assert [e.sequence for e in stored] == [1, 2, 3, 4, 5]
    assert [e.sequence for e in log.get_events("s1")] == [1, 2, 3, 4, 5]


def test_append_auto_creates_session(log):
    assert not log.has_session("new")
    log.append(_speech("new"))
    assert log.has_session("new")


def test_sequences_are_per_session(log):
    log.append(_speech("a"))
    log.append(_speech("a"))
    b = log.append(_speech("b"))
    assert b.sequence == 1
    assert log.current_sequence("a") == 2


def test_append_is_idempotent_by_event_id(log):
    event = _speech()
    first = log.append(event)
    second = log.append(event)
    assert first == second
    assert len(log.get_events("s1")) == 1
    assert log.current_sequence("s1") == 1


def test_reads_on_unknown_session_return_empty_list(log):
    assert log.get_events("nope") == []
    assert log.get_latest_events("nope", 5) == []
    assert log.get_events_after("nope", 0) == []
    assert log.get_events_by_type("nope", [EventType.SPEECH]) == []
    assert log.get_events_paginated("nope").events == []
    assert log.current_sequence("nope") == 0


def test_get_latest_events(log):
    for i in range(10):
        log.append(_speech(text=str(i)))
    latest = log.get_latest_events("s1", 3)
    assert [e.content for e in latest] == ["7", "8", "9"]


@pytest.mark.parametrize("limit", [0, -1, 101])
def test_limit_validation(log, limit):
    with pytest.raises(ValueError):
        log.get_latest_events("s1", limit)


def test_get_events_after(log):
    for i in range(5):
        log.append(_speech(text=str(i)))
    assert [e.sequence for e in log.get_events_after("s1", 3)] == [4, 5]


def test_get_events_by_type_with_limit(log):
    log.append(_speech(text="a"))
    log.append(new_event("s1", EventType.INTENT, "bob", {"intent": "speak"}))
    log.append(_speech(text="b"))
    log.append(new_event("s1", EventType.SUMMARY, "moderator", "sum"))
    log.append(_speech(text="c"))

    speeches = log.get_events_by_type("s1", [EventType.SPEECH])
    assert [e.content for e in speeches] == ["a", "b", "c"]
    assert [e.content for e in log.get_events_by_type("s1", [EventType.SPEECH], limit=2)] == ["b", "c"]
    mixed = log.get_events_by_type("s1", [EventType.SUMMARY, EventType.INTENT])
    assert [e.type for e in mixed] == [EventType.INTENT, EventType.SUMMARY]


def test_get_events_paginated(log):
    for i in range(7):
        log.append(_speech(text=str(i)))
    page = log.get_events_paginated("s1", offset=5, limit=5)
    assert [e.content for e in page.events] == ["5", "6"]
    assert page.total == 7
    assert page.has_more is False
    assert log.get_events_paginated("s1", offset=0, limit=5).has_more is True


def test_reads_do_not_mutate(log):
    log.append(_speech())
    events = log.get_events("s1")
    events.clear()
    assert len(log.get_events("s1")) == 1


def test_prune_keep_last_does_not_renumber(log):
    for i in range(6):
        log.append(_speech(text=str(i)))
    removed = log.prune("s1", KeepLast(2))
    assert removed == 4
    assert [e.sequence for e in log.get_events("s1")] == [5, 6]


def test_prune_keep_types(log):
    log.append(_speech())
    log.append(new_event("s1", EventType.SUMMARY, "moderator", "sum"))
    log.append(_speech())
    log.prune("s1", KeepTypes(frozenset({EventType.SUMMARY})))
    events = log.get_events("s1")
    assert [(e.type, e.sequence) for e in events] == [(EventType.SUMMARY, 2)]


def test_prune_keep_before(log):
    for i in range(5):
        log.append(_speech(text=str(i)))
    log.prune("s1", KeepBefore(3))
    assert [e.sequence for e in log.get_events("s1")] == [1, 2]


def test_sequence_continues_after_prune(log):
    for _ in range(5):
        log.append(_speech())
    log.prune("s1", KeepBefore(2))
    assert log.append(_speech()).sequence == 6


def test_prune_unknown_session_is_noop(log):
    assert log.prune("nope", KeepLast(1)) == 0


def test_clear_session(log):
    log.append(_speech())
    log.clear_session("s1")
    assert not log.has_session("s1")
    assert log.get_events("s1") == []
    # A cleared session is recreated from the origin on the next append
    assert log.append(_speech()).sequence == 1


def test_concurrent_appends_to_different_sessions(log):
    def worker(session_id: str) -> None:
        for _ in range(200):
            log.append(_speech(session_id))

    threads = [threading.Thread(target=worker, args=(f"s{i}",)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for i in range(4):
        assert [e.sequence for e in log.get_events(f"s{i}")] == list(range(1, 201))


def test_jsonl_log_persists_and_reloads(tmp_path: Path):
    log = JsonlEventLog(tmp_path)
    log.append(_speech(text="one"))
    log.append(new_event("s1", EventType.SUMMARY, "moderator", {"text": "sum", "consensus": []}))

    reloaded = JsonlEventLog(tmp_path)
    events = reloaded.get_events("s1")
    assert [e.sequence for e in events] == [1, 2]
    assert events[1].content == {"text": "sum", "consensus": []}
    assert events[1].type is EventType.SUMMARY
    assert reloaded.append(_speech()).sequence == 3


def test_jsonl_log_idempotent_after_reload(tmp_path: Path):
    log = JsonlEventLog(tmp_path)
    event = _speech()
    log.append(event)
    reloaded = JsonlEventLog(tmp_path)
    assert reloaded.append(event).sequence == 1
    assert len(reloaded.get_events("s1")) == 1


def test_jsonl_prune_keeps_counter_across_reload(tmp_path: Path):
    log = JsonlEventLog(tmp_path)
    for _ in range(4):
        log.append(_speech())
    log.prune("s1", KeepBefore(2))

    reloaded = JsonlEventLog(tmp_path)
    assert [e.sequence for e in reloaded.get_events("s1")] == [1]
    assert reloaded.append(_speech()).sequence == 5


def test_jsonl_clear_removes_file(tmp_path: Path):
    log = JsonlEventLog(tmp_path)
    log.append(_speech())
    log.clear_session("s1")
    assert not (tmp_path / "s1.jsonl").exists()


def test_jsonl_corrupt_file_raises(tmp_path: Path):
    (tmp_path / "bad.jsonl").write_text("{not json\n", encoding="utf-8")
    with pytest.raises(EventLogError, match="Corrupt"):
        JsonlEventLog(tmp_path)


def test_jsonl_lines_are_json(tmp_path: Path):
    log = JsonlEventLog(tmp_path)
    log.append(_speech(text="héllo"))
    line = (tmp_path / "s1.jsonl").read_text(encoding="utf-8").splitlines()[0]
    raw = json.loads(line)
    assert raw["content"] == "héllo"
    assert raw["type"] == "SPEECH"


def test_jsonl_write_failure_raises_and_stores_nothing(tmp_path: Path, monkeypatch):
    log = JsonlEventLog(tmp_path)

    def boom(event):
        raise OSError("disk full")

    monkeypatch.setattr(log, "_persist_append", boom)
    with pytest.raises(EventLogError, match="disk full"):
        log.append(_speech())
    assert log.get_events("s1") == []
    assert log.current_sequence("s1") == 0
