"""Wording for moderator-authored artifacts.

The controller decides *what* happens; this module only phrases it. Each
function gets exactly the structured input the loop chose to pass in and
never reads the Event Log or any agent's private state. The moderator
hosts: it never takes sides or makes decisions for the participants.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from roundtable.parsing import ParseFailure, normalize_choice, parse_object, strip_thoughts
from roundtable.providers.base import CompletionOptions, LLMClient, LLMClientError, Message, complete_with_retry

logger = logging.getLogger(__name__)

QUESTION_TYPES = ("open", "directed", "clarification", "challenge")
SUMMARY_KINDS = ("phase_end", "mid_phase", "final")

MODERATOR_SYSTEM = """\
You are the neutral host of a structured discussion.
- You never take a side, vote, or decide anything for the participants.
- You do not invent statements nobody made.
- You keep the discussion on topic and fair.
- Reply with the requested JSON object only, no other text."""

_OPTIONS = CompletionOptions(temperature=0.5, max_tokens=800, json_mode=True)


class ModeratorLanguageError(Exception):
    """Raised when moderator text could not be generated."""


@dataclass(frozen=True)
class ParticipantBrief:
    id: str
    name: str
    role: str = ""
    position: str | None = None


@dataclass(frozen=True)
class PhaseBrief:
    id: str
    name: str
    type: str
    description: str = ""


@dataclass(frozen=True)
class SpeechBrief:
    speaker: str
    summary: str


@dataclass
class OutlineInput:
    topic: str
    participants: list[ParticipantBrief]
    phases: list[PhaseBrief]


@dataclass
class OutlinePhase:
    phase_id: str
    phase_name: str
    key_points: list[str] = field(default_factory=list)
    suggested_questions: list[str] = field(default_factory=list)


@dataclass
class Outline:
    title: str
    phases: list[OutlinePhase] = field(default_factory=list)
    moderator_notes: list[str] = field(default_factory=list)


@dataclass
class QuestionInput:
    topic: str
    phase: PhaseBrief
    round: int
    max_rounds: int
    divergence_points: list[str] = field(default_factory=list)
    recent_speeches: list[SpeechBrief] = field(default_factory=list)
    target: ParticipantBrief | None = None


@dataclass
class GuidingQuestion:
    question: str
    type: str = "open"
    target_agent_id: str | None = None


@dataclass
class SummaryInput:
    topic: str
    phase: PhaseBrief
    kind: str = "phase_end"
    key_points: list[SpeechBrief] = field(default_factory=list)
    consensus_points: list[str] = field(default_factory=list)
    divergence_points: list[str] = field(default_factory=list)


@dataclass
class Summary:
    text: str
    kind: str = "phase_end"
    consensus: list[str] = field(default_factory=list)
    divergence: list[str] = field(default_factory=list)
    next_steps: str | None = None


@dataclass
class OpeningInput:
    topic: str
    scenario_name: str
    participants: list[ParticipantBrief]
    phases: list[PhaseBrief]


@dataclass
class ClosingInput:
    topic: str
    phase_summaries: list[tuple[str, str]] = field(default_factory=list)  # (phase name, summary)
    final_consensus: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    duration_minutes: float = 0.0


@dataclass
class Closing:
    text: str
    conclusion: str


def _bullets(items: list[str], empty: str = "(none)") -> str:
    return "\n".join(f"- {item}" for item in items) if items else empty


def _participants(participants: list[ParticipantBrief]) -> str:
    lines = []
    for p in participants:
        line = f"- {p.name}"
        if p.role:
            line += f" ({p.role})"
        if p.position:
            line += f": {p.position}"
        lines.append(line)
    return "\n".join(lines) or "(none)"


def _phases(phases: list[PhaseBrief]) -> str:
    return "\n".join(f"- {p.id}: {p.name} [{p.type}] {p.description}".rstrip() for p in phases) or "(none)"


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


class ModeratorLanguageGenerator:
    """Stateless text generation for the moderator, backed by one model client."""

    def __init__(self, client: LLMClient) -> None:
        self._client = client

    async def _generate(self, kind: str, task: str, required: tuple[str, ...]) -> dict[str, Any]:
        messages: list[Message] = [
            {"role": "system", "content": MODERATOR_SYSTEM},
            {"role": "user", "content": task},
        ]
        try:
            completion = await complete_with_retry(self._client, messages, _OPTIONS)
        except LLMClientError as exc:
            raise ModeratorLanguageError(f"{kind} generation failed: {exc}") from exc
        result = parse_object(completion.content, kind, required)
        if isinstance(result, ParseFailure):
            raise ModeratorLanguageError(f"{kind} generation failed: {result.reason}")
        return result.value

    async def generate_outline(self, data: OutlineInput) -> Outline:
        task = (
            f"## Topic\n{data.topic}\n\n"
            f"## Participants\n{_participants(data.participants)}\n\n"
            f"## Phases\n{_phases(data.phases)}\n\n"
            "## Task\nDraft a discussion outline. For every phase give 2-4 key points and 1-3 questions.\n"
            'Reply as {"title": str, "phases": [{"phase_id": str, "key_points": [str], '
            '"suggested_questions": [str]}], "moderator_notes": [str]}'
        )
        raw = await self._generate("outline", task, ("title", "phases"))
        names = {p.id: p.name for p in data.phases}
        phases = []
        for item in raw["phases"] if isinstance(raw["phases"], list) else []:
            if not isinstance(item, dict) or str(item.get("phase_id")) not in names:
                continue
            phase_id = str(item["phase_id"])
            phases.append(OutlinePhase(
                phase_id=phase_id,
                phase_name=names[phase_id],
                key_points=_str_list(item.get("key_points")),
                suggested_questions=_str_list(item.get("suggested_questions")),
            ))
        return Outline(
            title=str(raw["title"]).strip(),
            phases=phases,
            moderator_notes=_str_list(raw.get("moderator_notes")),
        )

    async def generate_question(self, data: QuestionInput) -> GuidingQuestion:
        speeches = _bullets([f"{s.speaker}: {s.summary}" for s in data.recent_speeches], "(nobody has spoken recently)")
        target = ""
        if data.target is not None:
            target = f"## Address the question to\n{data.target.name} ({data.target.role})\n\n"
        task = (
            f"## Topic\n{data.topic}\n\n"
            f"## Phase\n{data.phase.name} [{data.phase.type}], round {data.round} of {data.max_rounds}\n"
            f"{data.phase.description}\n\n"
            f"## Points of disagreement\n{_bullets(data.divergence_points)}\n\n"
            f"## Recent speeches\n{speeches}\n\n"
            f"{target}"
            "## Task\nAsk ONE short question that moves the discussion forward.\n"
            'Reply as {"question": str, "type": "open | directed | clarification | challenge"}'
        )
        raw = await self._generate("question", task, ("question",))
        default_type = "directed" if data.target is not None else "open"
        return GuidingQuestion(
            question=strip_thoughts(str(raw["question"])),
            type=normalize_choice(raw.get("type"), QUESTION_TYPES, default_type),
            target_agent_id=data.target.id if data.target is not None else None,
        )

    async def generate_summary(self, data: SummaryInput) -> Summary:
        points = _bullets([f"{p.speaker}: {p.summary}" for p in data.key_points], "(no speeches)")
        task = (
            f"## Topic\n{data.topic}\n\n"
            f"## Phase\n{data.phase.name} [{data.phase.type}]\n\n"
            f"## What was said\n{points}\n\n"
            f"## Known agreement\n{_bullets(data.consensus_points)}\n\n"
            f"## Known disagreement\n{_bullets(data.divergence_points)}\n\n"
            f"## Task\nWrite a neutral {data.kind.replace('_', ' ')} summary in 80-150 words.\n"
            'Reply as {"summary": str, "consensus": [str], "divergence": [str], "next_steps": str}'
        )
        raw = await self._generate("summary", task, ("summary",))
        next_steps = raw.get("next_steps")
        return Summary(
            text=strip_thoughts(str(raw["summary"])),
            kind=data.kind if data.kind in SUMMARY_KINDS else "phase_end",
            consensus=_str_list(raw.get("consensus")),
            divergence=_str_list(raw.get("divergence")),
            next_steps=str(next_steps).strip() if next_steps else None,
        )

    async def generate_opening(self, data: OpeningInput) -> str:
        task = (
            f"## Discussion\n{data.scenario_name}\n\n"
            f"## Topic\n{data.topic}\n\n"
            f"## Participants\n{_participants(data.participants)}\n\n"
            f"## Agenda\n{_phases(data.phases)}\n\n"
            "## Task\nWelcome everyone, introduce the topic and the agenda in under 120 words.\n"
            'Reply as {"opening": str}'
        )
        raw = await self._generate("opening", task, ("opening",))
        return strip_thoughts(str(raw["opening"]))

    async def generate_closing(self, data: ClosingInput) -> Closing:
        summaries = _bullets([f"{name}: {summary}" for name, summary in data.phase_summaries], "(no phase summaries)")
        task = (
            f"## Topic\n{data.topic}\n\n"
            f"## Phase summaries\n{summaries}\n\n"
            f"## Agreed\n{_bullets(data.final_consensus)}\n\n"
            f"## Unresolved\n{_bullets(data.unresolved)}\n\n"
            f"## Duration\n{data.duration_minutes:.0f} minutes\n\n"
            "## Task\nClose the discussion in under 120 words, then state the overall outcome in one sentence.\n"
            'Reply as {"closing": str, "conclusion": str}'
        )
        raw = await self._generate("closing", task, ("closing", "conclusion"))
        return Closing(
            text=strip_thoughts(str(raw["closing"])),
            conclusion=strip_thoughts(str(raw["conclusion"])),
        )
