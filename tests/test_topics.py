"""Unit tests for roundtable/topics.py."""

import os
import textwrap
from pathlib import Path

import pytest

from roundtable.topics import parse_topic_file, scan_topics


def test_parse_topic_file_no_frontmatter(tmp_path: Path) -> None:
    """File without frontmatter: the body is the topic, no overrides."""
    f = tmp_path / "topic.md"
    f.write_text("Should the library open on Sundays?", encoding="utf-8")
    parsed = parse_topic_file(f)
    assert parsed.topic == "Should the library open on Sundays?"
    assert parsed.scenario is None
    assert parsed.rounds is None
    assert parsed.source == str(f)


def test_parse_topic_file_with_frontmatter(tmp_path: Path) -> None:
    f = tmp_path / "topic.md"
    f.write_text(
        textwrap.dedent("""\
            ---
            scenario: brainstorm
            rounds: 12
            session_id: library-sundays
            colour: blue
            ---
            How can the library attract more teenagers?
        """),
        encoding="utf-8",
    )
    parsed = parse_topic_file(f)
    assert parsed.topic == "How can the library attract more teenagers?"
    assert parsed.scenario == "brainstorm"
    assert parsed.rounds == 12
    assert parsed.session_id == "library-sundays"


def test_parse_topic_file_empty_body(tmp_path: Path) -> None:
    f = tmp_path / "empty.md"
    f.write_text("---\nscenario: debate\n---\n   \n", encoding="utf-8")
    with pytest.raises(ValueError, match="no body"):
        parse_topic_file(f)


@pytest.mark.parametrize("rounds", ["0", "-3", "many", "true"])
def test_parse_topic_file_bad_rounds(tmp_path: Path, rounds: str) -> None:
    f = tmp_path / "bad.md"
    f.write_text(f"---\nrounds: {rounds}\n---\nTopic\n", encoding="utf-8")
    with pytest.raises(ValueError, match="rounds"):
        parse_topic_file(f)


def test_scan_topics_sorted_by_mtime(tmp_path: Path) -> None:
    newer = tmp_path / "b.md"
    older = tmp_path / "a-but-newer-name.md"
    newer.write_text("x", encoding="utf-8")
    older.write_text("y", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
    os.utime(older, (1_000_000, 1_000_000))
    os.utime(newer, (2_000_000, 2_000_000))

    assert scan_topics(tmp_path) == [older, newer]


def test_scan_topics_empty_dir(tmp_path: Path) -> None:
    assert scan_topics(tmp_path) == []
