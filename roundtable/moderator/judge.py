"""End-of-discussion scoring by a panel of model judges.

Every judge scores every participant on weighted dimensions from that
participant's speeches alone. Per-judge totals are combined with the
judges' weights into one score per participant, which gives the ranking.
The panel only sees the condensed speeches the loop passes in; it never
reads the Event Log.

A judge whose reply is unusable gives the neutral midpoint score rather
than failing the whole panel.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any

from config.config_loader import JudgeConfig
from roundtable.moderator.language import ParticipantBrief, SpeechBrief
from roundtable.parsing import ParseFailure, parse_object, strip_thoughts
from roundtable.providers.base import CompletionOptions, LLMClient, LLMClientError, Message, complete_with_retry

logger = logging.getLogger(__name__)

STYLE_PROMPTS = {
    "strict": "You are a strict judge with high standards for argument quality.",
    "lenient": "You are an encouraging judge who looks for strengths first.",
    "balanced": "You are a fair judge who weighs strengths and weaknesses objectively.",
}

_SCORE_OPTIONS = CompletionOptions(temperature=0.5, max_tokens=300, json_mode=True)
_COMMENT_OPTIONS = CompletionOptions(temperature=0.6, max_tokens=200)


@dataclass(frozen=True)
class ScoringDimension:
    id: str
    name: str
    description: str
    weight: float
    max_score: float = 10.0

    @property
    def midpoint(self) -> float:
        return self.max_score / 2


DEFAULT_DIMENSIONS = (
    ScoringDimension("logic", "Logic", "Is the reasoning sound and the argument coherent?", 0.25),
    ScoringDimension("evidence", "Evidence", "Are claims backed by facts, data or examples?", 0.20),
    ScoringDimension("expression", "Expression", "Is the language clear and persuasive?", 0.20),
    ScoringDimension("interaction", "Interaction", "Does the speaker engage with what others said?", 0.20),
    ScoringDimension("insight", "Insight", "Does the speaker bring original, deep ideas?", 0.15),
)


@dataclass
class JudgeInput:
    topic: str
    participants: list[ParticipantBrief]
    speeches: list[SpeechBrief]
    judges: list[JudgeConfig]


@dataclass
class JudgeScore:
    judge_id: str
    agent_id: str
    dimension_scores: dict[str, float]
    total: float
    comment: str = ""
    defaulted: bool = False


@dataclass
class RankEntry:
    agent_id: str
    rank: int
    score: float


@dataclass
class ScoringResult:
    dimensions: tuple[ScoringDimension, ...]
    judge_scores: list[JudgeScore] = field(default_factory=list)
    aggregated: dict[str, float] = field(default_factory=dict)
    ranking: list[RankEntry] = field(default_factory=list)
    final_comment: str = ""

    def to_content(self, names: dict[str, str] | None = None) -> dict[str, Any]:
        """Event payload: the comment as ``text`` plus the ranking and per-judge totals."""
        names = names or {}
        return {
            "text": self.final_comment,
            "ranking": [
                {"agent_id": r.agent_id, "name": names.get(r.agent_id, r.agent_id), "rank": r.rank, "score": round(r.score, 2)}
                for r in self.ranking
            ],
            "scores": [
                {"judge_id": s.judge_id, "agent_id": s.agent_id, "total": round(s.total, 2), "comment": s.comment}
                for s in self.judge_scores
            ],
        }


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def weighted_total(scores: dict[str, float], dimensions: tuple[ScoringDimension, ...]) -> float:
    total_weight = sum(d.weight for d in dimensions)
    if total_weight <= 0:
        return 0.0
    return sum(scores.get(d.id, d.midpoint) * d.weight for d in dimensions) / total_weight


def aggregate(judge_scores: list[JudgeScore], judges: list[JudgeConfig], agent_ids: list[str]) -> dict[str, float]:
    """Judge-weighted mean of every judge's total, per agent."""
    weights = {j.id: j.weight for j in judges}
    result: dict[str, float] = {}
    for agent_id in agent_ids:
        own = [s for s in judge_scores if s.agent_id == agent_id]
        total_weight = sum(weights.get(s.judge_id, 1.0) for s in own)
        weighted = sum(s.total * weights.get(s.judge_id, 1.0) for s in own)
        result[agent_id] = weighted / total_weight if total_weight > 0 else 0.0
    return result


def rank(aggregated: dict[str, float]) -> list[RankEntry]:
    """Highest score first; equal scores keep participant order."""
    ordered = sorted(aggregated.items(), key=lambda item: -item[1])
    return [RankEntry(agent_id, idx + 1, score) for idx, (agent_id, score) in enumerate(ordered)]


class JudgePanel:
    """Scores participants with one model client playing every configured judge."""

    def __init__(self, client: LLMClient, dimensions: tuple[ScoringDimension, ...] = DEFAULT_DIMENSIONS) -> None:
        if not dimensions:
            raise ValueError("At least one scoring dimension is required")
        self._client = client
        self.dimensions = dimensions

    def default_score(self, judge_id: str, agent_id: str, comment: str = "No comment.") -> JudgeScore:
        scores = {d.id: d.midpoint for d in self.dimensions}
        return JudgeScore(
            judge_id=judge_id,
            agent_id=agent_id,
            dimension_scores=scores,
            total=weighted_total(scores, self.dimensions),
            comment=comment,
            defaulted=True,
        )

    def _score_messages(self, judge: JudgeConfig, topic: str, participant: ParticipantBrief, speeches: list[str]) -> list[Message]:
        dimension_list = "\n".join(
            f"- {d.name} ({d.id}): {d.description} Score 0-{d.max_score:g}." for d in self.dimensions
        )
        example = ", ".join(f'"{d.id}": 7' for d in self.dimensions)
        system = (
            f"{STYLE_PROMPTS.get(judge.style, STYLE_PROMPTS['balanced'])}\n"
            "Score the participant's performance in a discussion.\n\n"
            f"## Dimensions\n{dimension_list}\n\n"
            f'Reply with JSON only: {{"scores": {{{example}}}, "comment": "one or two sentences"}}'
        )
        numbered = "\n\n".join(f"[{i}] {s}" for i, s in enumerate(speeches, 1))
        user = (
            f"## Topic\n{topic}\n\n"
            f"## Participant\n{participant.name} ({participant.role or 'participant'})\n\n"
            f"## Their speeches\n{numbered}"
        )
        return [{"role": "system", "content": system}, {"role": "user", "content": user}]

    async def score_agent(
        self, judge: JudgeConfig, topic: str, participant: ParticipantBrief, speeches: list[str]
    ) -> JudgeScore:
        """One judge's score for one participant. Never raises on model failure."""
        if not speeches:
            return self.default_score(judge.id, participant.id, "Did not speak.")

        messages = self._score_messages(judge, topic, participant, speeches)
        try:
            completion = await complete_with_retry(self._client, messages, _SCORE_OPTIONS)
        except LLMClientError as exc:
            logger.warning("Judge %s could not score %s: %s", judge.id, participant.id, exc)
            return self.default_score(judge.id, participant.id)

        result = parse_object(completion.content, "judgement", ("scores",))
        if isinstance(result, ParseFailure) or not isinstance(result.value["scores"], dict):
            reason = result.reason if isinstance(result, ParseFailure) else "'scores' is not an object"
            logger.warning("Judge %s gave an unusable score for %s: %s", judge.id, participant.id, reason)
            return self.default_score(judge.id, participant.id)

        raw_scores = result.value["scores"]
        scores: dict[str, float] = {}
        for dim in self.dimensions:
            number = _number(raw_scores.get(dim.id))
            scores[dim.id] = dim.midpoint if number is None else min(dim.max_score, max(0.0, number))
        comment = result.value.get("comment")
        return JudgeScore(
            judge_id=judge.id,
            agent_id=participant.id,
            dimension_scores=scores,
            total=weighted_total(scores, self.dimensions),
            comment=strip_thoughts(str(comment)) if comment else "",
        )

    async def final_comment(self, topic: str, ranking: list[RankEntry], names: dict[str, str]) -> str:
        lines = "\n".join(f"{r.rank}. {names.get(r.agent_id, r.agent_id)} ({r.score:.1f})" for r in ranking)
        messages: list[Message] = [
            {"role": "system", "content": "You are the head judge of a discussion. Write a short verdict of 50-100 words."},
            {"role": "user", "content": f"## Topic\n{topic}\n\n## Ranking\n{lines}"},
        ]
        winner = ranking[0]
        fallback = f"{names.get(winner.agent_id, winner.agent_id)} scored highest with {winner.score:.1f}."
        try:
            completion = await complete_with_retry(self._client, messages, _COMMENT_OPTIONS)
        except LLMClientError as exc:
            logger.warning("Final judge comment failed: %s", exc)
            return fallback
        return strip_thoughts(completion.content) or fallback

    async def score(self, data: JudgeInput) -> ScoringResult:
        """Score every participant with every judge, then rank.

        Raises:
            ValueError: If there are no judges or no participants.
        """
        if not data.judges:
            raise ValueError("At least one judge is required")
        if not data.participants:
            raise ValueError("Nothing to score without participants")

        by_agent: dict[str, list[str]] = {p.id: [] for p in data.participants}
        for speech in data.speeches:
            if speech.speaker in by_agent and speech.summary:
                by_agent[speech.speaker].append(speech.summary)

        pairs = [(judge, p) for judge in data.judges for p in data.participants]
        judge_scores = list(await asyncio.gather(*(
            self.score_agent(judge, data.topic, p, by_agent[p.id]) for judge, p in pairs
        )))

        agent_ids = [p.id for p in data.participants]
        aggregated = aggregate(judge_scores, data.judges, agent_ids)
        ranking = rank(aggregated)
        names = {p.id: p.name for p in data.participants}
        comment = await self.final_comment(data.topic, ranking, names)
        logger.info(
            "Judging done: %d judges, %d participants, winner %s",
            len(data.judges), len(agent_ids), ranking[0].agent_id,
        )
        return ScoringResult(
            dimensions=self.dimensions,
            judge_scores=judge_scores,
            aggregated=aggregated,
            ranking=ranking,
            final_comment=comment,
        )
