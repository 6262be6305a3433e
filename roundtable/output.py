"""Rich console output and markdown transcript export for discussion sessions."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from roundtable.models import Event, EventType
from roundtable.visibility import event_text

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STYLES = {
    EventType.SPEECH: "cyan",
    EventType.SUMMARY: "green",
    EventType.SYSTEM: "yellow",
    EventType.INTENT: "dim",
    EventType.VOTE: "magenta",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def speaker_label(event: Event, names: dict[str, str]) -> str:
    return names.get(event.speaker, event.speaker)


def _ranking_lines(event: Event) -> list[str]:
    """Markdown list of a judgement's ranking, empty for other summaries."""
    if event.meta.get("kind") != "judgement" or not isinstance(event.content, dict):
        return []
    return [
        f"{entry['rank']}. **{entry['name']}**: {entry['score']:.1f}"
        for entry in event.content.get("ranking") or []
    ]


def print_event(event: Event, names: dict[str, str], show_intents: bool = False) -> None:
    """Print one event as it is appended. Intents and votes only with ``show_intents``."""
    if event.type in (EventType.INTENT, EventType.VOTE) and not show_intents:
        return
    style = _STYLES[event.type]
    label = speaker_label(event, names)

    if event.type is EventType.SPEECH:
        subtitle = event.meta.get("tone", "")
        if event.meta.get("interrupt"):
            subtitle = f"{subtitle}, interrupting".strip(", ")
        console.print(Panel(event_text(event), title=f"[bold]{label}[/bold]", subtitle=subtitle, border_style=style))
    elif event.type is EventType.SUMMARY:
        console.print(Rule(f"[bold {style}]Summary ({event.meta.get('kind', 'phase_end')})[/bold {style}]"))
        console.print(Markdown(event_text(event)))
        ranking = _ranking_lines(event)
        if ranking:
            console.print(Markdown("\n".join(ranking)))
    elif event.meta.get("event") == "phase_switch":
        console.print(Rule(f"[bold {style}]{event_text(event)}[/bold {style}]"))
    else:
        console.print(Text(f"#{event.sequence} {label}: {event_text(event)}", style=style))


def print_outcome(session_id: str, status: str, reason: str | None, events: list[Event]) -> None:
    speeches = sum(1 for e in events if e.type is EventType.SPEECH)
    console.print(Rule("[bold]Discussion finished[/bold]"))
    console.print(
        Text(
            f"Session: {session_id} | Status: {status} | Reason: {reason or '-'} | "
            f"Events: {len(events)} | Speeches: {speeches}",
            style="dim",
        )
    )


def render_transcript(
    title: str,
    topic: str,
    events: list[Event],
    names: dict[str, str],
    include_intents: bool = False,
) -> str:
    """Render a session's events as a markdown transcript."""
    lines: list[str] = [
        f"# {title}",
        "",
        f"**Topic:** {topic}",
        f"**Exported:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Events:** {len(events)}",
        "",
        "---",
        "",
    ]

    for event in events:
        if event.type in (EventType.INTENT, EventType.VOTE) and not include_intents:
            continue
        label = speaker_label(event, names)
        text = event_text(event)
        if event.type is EventType.SPEECH:
            lines += [f"### {label}", "", text, "", f"*#{event.sequence}, tone: {event.meta.get('tone', 'calm')}*", ""]
        elif event.type is EventType.SUMMARY:
            lines += [f"## Summary ({event.meta.get('kind', 'phase_end')})", "", text, ""]
            ranking = _ranking_lines(event)
            if ranking:
                lines += ["**Ranking:**", ""] + ranking + [""]
            if isinstance(event.content, dict):
                for heading, key in (("Agreement", "consensus"), ("Disagreement", "divergence")):
                    items = event.content.get(key) or []
                    if items:
                        lines += [f"**{heading}:**", ""] + [f"- {item}" for item in items] + [""]
        elif event.meta.get("event") == "phase_switch":
            lines += [f"## {text}", ""]
        else:
            lines += [f"> **{label}:** {text}", ""]

    return "\n".join(lines)


def save_transcript(
    session_id: str,
    title: str,
    topic: str,
    events: list[Event],
    names: dict[str, str],
    output_dir: Path,
    slug_override: str | None = None,
) -> Path:
    """Save the transcript as a markdown file.

    Args:
        session_id: Included in the filename so reruns never collide.
        title: Heading for the document, usually the scenario name.
        topic: The discussion topic.
        events: The session's events, in sequence order.
        names: Agent id -> display name.
        output_dir: Directory to save the file in.
        slug_override: Filename stem to use instead of one derived from the topic.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(topic)
    filepath = output_dir / f"{timestamp}_{slug}_{session_id}.md"
    filepath.write_text(render_transcript(title, topic, events, names), encoding="utf-8")
    logger.info("Transcript saved to: %s", filepath)
    return filepath
