"""Topic files: markdown body is the discussion topic, YAML frontmatter holds overrides."""

from dataclasses import dataclass
from pathlib import Path

import frontmatter


@dataclass
class TopicFile:
    topic: str
    scenario: str | None = None
    rounds: int | None = None
    session_id: str | None = None
    source: str = ""


def parse_topic_file(file_path: Path) -> TopicFile:
    """Parse a markdown file with optional YAML frontmatter.

    Recognized frontmatter keys: scenario (str), rounds (int), session_id (str).
    Unknown keys are ignored.

    Raises:
        ValueError: If the body is empty or ``rounds`` is not a positive integer.
    """
    post = frontmatter.load(str(file_path))
    topic = post.content.strip()
    if not topic:
        raise ValueError(f"Topic file has no body: {file_path}")

    rounds = post.metadata.get("rounds")
    if rounds is not None:
        if isinstance(rounds, bool) or not isinstance(rounds, int) or rounds < 1:
            raise ValueError(f"'rounds' must be a positive integer in {file_path}, got {rounds!r}")

    scenario = post.metadata.get("scenario")
    session_id = post.metadata.get("session_id")
    return TopicFile(
        topic=topic,
        scenario=str(scenario) if scenario else None,
        rounds=rounds,
        session_id=str(session_id) if session_id else None,
        source=str(file_path),
    )


def scan_topics(topics_dir: Path) -> list[Path]:
    """Return all .md files in topics_dir, sorted by mtime ascending (oldest first)."""
    files = list(topics_dir.glob("*.md"))
    return sorted(files, key=lambda p: p.stat().st_mtime)
