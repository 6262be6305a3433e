"""Pure dataclasses for the discussion engine. No logic, no deps."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

MODERATOR = "moderator"
SYSTEM = "system"

SPEAKING_STYLES = ("concise", "elaborate", "aggressive", "diplomatic", "analytical", "emotional")
INTENT_KINDS = ("speak", "interrupt", "question", "respond", "pass")
TONES = ("calm", "assertive", "questioning", "conciliatory", "passionate")
MEMORY_KINDS = ("observation", "thought", "action", "feedback")
VOTE_CHOICES = ("end", "continue")


class EventType(str, Enum):
    INTENT = "INTENT"
    SPEECH = "SPEECH"
    SUMMARY = "SUMMARY"
    VOTE = "VOTE"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class Event:
    event_id: str
    type: EventType
    speaker: str           # agent id, "moderator" or "system"
    content: Any           # str or a small JSON-able payload
    timestamp: datetime
    session_id: str
    sequence: int = 0      # 0 until the log assigns one
    meta: dict[str, Any] = field(default_factory=dict)


def new_event(
    session_id: str,
    type: EventType,
    speaker: str,
    content: Any,
    **meta: Any,
) -> Event:
    """Build an unsequenced event with a fresh id and a UTC timestamp."""
    return Event(
        event_id=uuid.uuid4().hex,
        type=type,
        speaker=speaker,
        content=content,
        timestamp=datetime.now(timezone.utc),
        session_id=session_id,
        meta={k: v for k, v in meta.items() if v is not None},
    )


@dataclass(frozen=True)
class AgentPersona:
    id: str
    name: str
    role: str
    persona: str
    speaking_style: str = "concise"
    faction: str | None = None
    position: str | None = None
    expertise: tuple[str, ...] = ()
    traits: tuple[str, ...] = ()
    provider: str | None = None  # settings.yaml model key, None = default


@dataclass
class MemoryEntry:
    content: str
    timestamp: datetime
    importance: float
    kind: str  # one of MEMORY_KINDS


@dataclass(frozen=True)
class VisibleEvent:
    speaker: str
    content: str
    relative_time: str     # "just now", "42s ago", "3m ago"
    type: EventType = EventType.SPEECH


@dataclass(frozen=True)
class PhaseView:
    id: str
    type: str
    name: str
    description: str
    round: int
    max_rounds: int


@dataclass(frozen=True)
class AgentVisibleContext:
    """Everything an agent may see when building a prompt."""
    session_id: str
    topic: str
    phase: PhaseView
    recent_events: tuple[VisibleEvent, ...] = ()
    phase_summary: str | None = None
    is_called_to_speak: bool = False
    call_reason: str | None = None


@dataclass(frozen=True)
class Intent:
    agent_id: str
    kind: str              # one of INTENT_KINDS
    urgency: int           # 1..5
    target: str | None = None
    topic: str | None = None


@dataclass(frozen=True)
class IntentOutput:
    intent: str
    urgency: int
    target: str | None = None
    topic: str | None = None
    vote: str | None = None  # "end" / "continue" / None

    def to_intent(self, agent_id: str) -> Intent:
        return Intent(
            agent_id=agent_id,
            kind=self.intent,
            urgency=self.urgency,
            target=self.target,
            topic=self.topic,
        )


PASS_INTENT = IntentOutput(intent="pass", urgency=1)


@dataclass(frozen=True)
class SpeechOutput:
    content: str
    tone: str = "calm"
    reply_to: str | None = None
    token_usage: int | None = None
