"""Build the shared view agents are allowed to prompt from.

Only public facts leave the Event Log this way: speeches, summaries and
system notices. Intents and votes stay in the log for audit; agents'
private memory never enters it at all.
"""

import json
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timezone

from roundtable.models import AgentVisibleContext, Event, EventType, PhaseView, VisibleEvent
from roundtable.parsing import strip_thoughts

DEFAULT_RECENT_EVENTS = 10
MAX_RECENT_EVENTS = 20

VISIBLE_TYPES = frozenset({EventType.SPEECH, EventType.SUMMARY, EventType.SYSTEM})


def relative_time(timestamp: datetime, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    seconds = int((now - timestamp).total_seconds())
    if seconds < 5:
        return "just now"
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    return f"{seconds // 3600}h ago"


def event_text(event: Event) -> str:
    """Render event content as plain text with internal-thought markers removed."""
    content = event.content
    if isinstance(content, dict):
        text = content.get("text") or content.get("summary") or json.dumps(content, ensure_ascii=False)
    else:
        text = str(content)
    return strip_thoughts(str(text))


def to_visible(event: Event, now: datetime | None = None) -> VisibleEvent:
    return VisibleEvent(
        speaker=event.speaker,
        content=event_text(event),
        relative_time=relative_time(event.timestamp, now),
        type=event.type,
    )


def latest_summary(events: Sequence[Event], phase_id: str | None = None) -> str | None:
    for event in reversed(events):
        if event.type is EventType.SUMMARY and (phase_id is None or event.meta.get("phase") == phase_id):
            return event_text(event)
    return None


def build_visible_context(
    session_id: str,
    topic: str,
    phase: PhaseView,
    events: Sequence[Event],
    limit: int = DEFAULT_RECENT_EVENTS,
    now: datetime | None = None,
) -> AgentVisibleContext:
    """Snapshot of the last ``limit`` public events plus phase info.

    ``events`` may be any slice of the session log; non-public types are
    filtered out before the limit is applied.
    """
    limit = max(1, min(limit, MAX_RECENT_EVENTS))
    public = [e for e in events if e.type in VISIBLE_TYPES]
    return AgentVisibleContext(
        session_id=session_id,
        topic=topic,
        phase=phase,
        recent_events=tuple(to_visible(e, now) for e in public[-limit:]),
        phase_summary=latest_summary(public, phase.id),
    )


def called_on(context: AgentVisibleContext, reason: str) -> AgentVisibleContext:
    return replace(context, is_called_to_speak=True, call_reason=reason)
