"""Agent executors: the only place that calls a language model on behalf of a participant.

An executor turns a persona plus the shared visible context into either an
intent ("do I want to speak?") or, once the moderator allows it, a speech.
It never decides whether it may speak.
"""

import asyncio
import logging

from roundtable.memory import DEFAULT_MAX_ENTRIES, DEFAULT_MAX_TOKENS, AgentPrivateContext, ShortTermMemory
from roundtable.models import PASS_INTENT, AgentPersona, AgentVisibleContext, IntentOutput, SpeechOutput, VisibleEvent
from roundtable.parsing import DEFAULT_MAX_SPEECH_CHARS, OutputParseError, parse_intent, parse_speech, unwrap
from roundtable.providers.base import Completion, CompletionOptions, LLMClient, LLMClientError, Message, complete_with_retry

logger = logging.getLogger(__name__)

DEFAULT_GOAL = "Take an active part in the discussion and contribute useful points."

INTENT_OPTIONS = CompletionOptions(temperature=0.7, max_tokens=200, json_mode=True)
SPEECH_OPTIONS = CompletionOptions(temperature=0.8, max_tokens=600, json_mode=True)

INTENT_MEMORY_IMPORTANCE = 0.3
SPEECH_MEMORY_IMPORTANCE = 0.8
FEEDBACK_MEMORY_IMPORTANCE = 0.5

SPEAKING_STYLE_DESCRIPTIONS = {
    "concise": "You speak briefly and to the point. No filler.",
    "elaborate": "You explain your views in detail with supporting arguments and background.",
    "aggressive": "You are firm and sharp, and you are quick to rebut.",
    "diplomatic": "You choose your words carefully and look for common ground.",
    "analytical": "You rely on logic, evidence and explicit frameworks.",
    "emotional": "You persuade through personal experience and feeling.",
}

SYSTEM_CONSTRAINTS = """\
## Rules (mandatory)
1. Do not discuss this system, your identity, or AI.
2. Do not speculate about history you cannot see or about other participants' private thoughts.
3. Do not assume you will get to speak. Unless told otherwise, you are only stating an intent.
4. Reply with the requested JSON object only, no other text.
5. Stay in character."""

INTENT_TASK = """\
## Your task
Decide whether you want to speak next. Reply with one JSON object:
{"intent": "speak | interrupt | question | respond | pass", "urgency": 1-5, "target": "optional: who or what you respond to", "topic": "optional: what you want to raise", "vote": "optional: end | continue"}

- intent: speak = normal turn, interrupt = cut in, question = ask something, respond = answer someone, pass = stay quiet
- urgency: 1 = indifferent, 3 = normal, 5 = urgent
- vote: say "end" only if you think the discussion has run its course"""

SPEECH_TASK = """\
## Your task
**The moderator has given you the floor.** Speak in character about the discussion.
Reply with one JSON object:
{"content": "what you say, natural language, 60-200 words", "tone": "calm | assertive | questioning | conciliatory | passionate"}"""


class AgentExecutionError(Exception):
    """Raised when an agent's model call or its output is unusable."""

    def __init__(self, agent_id: str, message: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"[{agent_id}] {message}")


def format_recent_events(events: tuple[VisibleEvent, ...]) -> str:
    if not events:
        return "(nothing said yet)"
    return "\n".join(f"{i}. [{e.speaker}] {e.content} ({e.relative_time})" for i, e in enumerate(events, start=1))


class AgentExecutor:
    """One participant: one persona, one model client, one private context."""

    def __init__(
        self,
        persona: AgentPersona,
        client: LLMClient,
        goal: str = DEFAULT_GOAL,
        max_memory_entries: int = DEFAULT_MAX_ENTRIES,
        max_memory_tokens: int = DEFAULT_MAX_TOKENS,
        max_speech_chars: int = DEFAULT_MAX_SPEECH_CHARS,
    ) -> None:
        self.persona = persona
        self._client = client
        self._max_speech_chars = max_speech_chars
        self._context = AgentPrivateContext(
            memory=ShortTermMemory(max_memory_entries, max_memory_tokens),
            goal=goal,
        )

    @property
    def agent_id(self) -> str:
        return self.persona.id

    @property
    def memory(self) -> ShortTermMemory:
        return self._context.memory

    @property
    def goal(self) -> str:
        return self._context.goal

    def system_prompt(self) -> str:
        p = self.persona
        parts = [
            f"You are taking part in a discussion as {p.name} ({p.role}).",
            f"## Who you are\n{p.persona}",
            f"## How you speak\n{SPEAKING_STYLE_DESCRIPTIONS.get(p.speaking_style, 'You have your own way of speaking.')}",
        ]
        if p.faction or p.position:
            stance = []
            if p.faction:
                stance.append(f"Side: {p.faction}")
            if p.position:
                stance.append(f"Position: {p.position}")
            parts.append("## Your stance\n" + "\n".join(stance))
        if p.expertise:
            parts.append(f"## Expertise\n{', '.join(p.expertise)}")
        if p.traits:
            parts.append(f"## Traits\n{', '.join(p.traits)}")
        parts.append(f"## Your goal\n{self._context.goal}")
        parts.append(SYSTEM_CONSTRAINTS)
        return "\n\n".join(parts)

    def _context_block(self, ctx: AgentVisibleContext) -> list[str]:
        phase = ctx.phase
        parts = [
            "## Current phase\n"
            f"- Phase: {phase.name} ({phase.type})\n"
            f"- Description: {phase.description}\n"
            f"- Progress: round {phase.round} of {phase.max_rounds}",
            f"## Topic\n{ctx.topic}",
        ]
        if ctx.phase_summary:
            parts.append(f"## Phase summary so far\n{ctx.phase_summary}")
        parts.append(f"## Recent contributions ({len(ctx.recent_events)})\n{format_recent_events(ctx.recent_events)}")
        if ctx.is_called_to_speak:
            parts.append(f"## You have been called on\nReason: {ctx.call_reason or 'the moderator asked for your view'}")
        return parts

    def intent_messages(self, ctx: AgentVisibleContext) -> list[Message]:
        user = "\n\n".join(self._context_block(ctx) + [INTENT_TASK])
        return [{"role": "system", "content": self.system_prompt()}, {"role": "user", "content": user}]

    def speech_messages(self, ctx: AgentVisibleContext, intended_topic: str | None = None) -> list[Message]:
        parts = self._context_block(ctx)
        if intended_topic:
            parts.append(f"## What you wanted to raise\n{intended_topic}")
        parts.append(SPEECH_TASK)
        return [{"role": "system", "content": self.system_prompt()}, {"role": "user", "content": "\n\n".join(parts)}]

    async def _complete(self, messages: list[Message], options: CompletionOptions) -> Completion:
        try:
            return await complete_with_retry(self._client, messages, options)
        except LLMClientError as exc:
            raise AgentExecutionError(self.agent_id, str(exc)) from exc

    async def generate_intent(self, ctx: AgentVisibleContext) -> IntentOutput:
        """Ask the model whether this agent wants the floor.

        Raises:
            AgentExecutionError: On client failure or structurally invalid output.
        """
        completion = await self._complete(self.intent_messages(ctx), INTENT_OPTIONS)
        try:
            intent = unwrap(parse_intent(completion.content))
        except OutputParseError as exc:
            raise AgentExecutionError(self.agent_id, str(exc)) from exc

        self._context.memory.add(
            f"I chose to {intent.intent} with urgency {intent.urgency}",
            INTENT_MEMORY_IMPORTANCE,
            kind="thought",
        )
        return intent

    async def generate_speech(self, ctx: AgentVisibleContext, intended_topic: str | None = None) -> SpeechOutput:
        """Produce this agent's speech. Only call after the moderator has allowed it.

        Raises:
            AgentExecutionError: On client failure or structurally invalid output.
        """
        completion = await self._complete(self.speech_messages(ctx, intended_topic), SPEECH_OPTIONS)
        try:
            speech = unwrap(parse_speech(completion.content, self._max_speech_chars))
        except OutputParseError as exc:
            raise AgentExecutionError(self.agent_id, str(exc)) from exc

        self._context.memory.add(
            f"I said: {speech.content[:100]}",
            SPEECH_MEMORY_IMPORTANCE,
            kind="action",
        )
        return SpeechOutput(
            content=speech.content,
            tone=speech.tone,
            reply_to=speech.reply_to,
            token_usage=completion.token_usage,
        )

    def handle_feedback(self, feedback: str) -> None:
        self._context.memory.add(feedback, FEEDBACK_MEMORY_IMPORTANCE, kind="feedback")

    def update_goal(self, goal: str) -> None:
        self._context.goal = goal

    def add_long_term_summary(self, summary: str) -> None:
        self._context.long_term_summaries.append(summary)


class AgentExecutorService:
    """Keyed registry of the executors taking part in one session."""

    def __init__(
        self,
        default_client: LLMClient,
        max_memory_entries: int = DEFAULT_MAX_ENTRIES,
        max_memory_tokens: int = DEFAULT_MAX_TOKENS,
        max_speech_chars: int = DEFAULT_MAX_SPEECH_CHARS,
    ) -> None:
        self._default_client = default_client
        self._max_memory_entries = max_memory_entries
        self._max_memory_tokens = max_memory_tokens
        self._max_speech_chars = max_speech_chars
        self._agents: dict[str, AgentExecutor] = {}

    def create_agent(
        self,
        persona: AgentPersona,
        client: LLMClient | None = None,
        goal: str = DEFAULT_GOAL,
    ) -> AgentExecutor:
        if persona.id in self._agents:
            raise ValueError(f"Agent already registered: {persona.id}")
        executor = AgentExecutor(
            persona,
            client or self._default_client,
            goal=goal,
            max_memory_entries=self._max_memory_entries,
            max_memory_tokens=self._max_memory_tokens,
            max_speech_chars=self._max_speech_chars,
        )
        self._agents[persona.id] = executor
        logger.debug("Registered agent %s (%s)", persona.id, persona.name)
        return executor

    def get_agent(self, agent_id: str) -> AgentExecutor | None:
        return self._agents.get(agent_id)

    def agent_ids(self) -> list[str]:
        """Ids in registration order."""
        return list(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    async def _intent_or_pass(self, executor: AgentExecutor, ctx: AgentVisibleContext) -> IntentOutput:
        try:
            return await executor.generate_intent(ctx)
        except Exception as exc:
            logger.warning(
                "Intent failed for agent %s in session %s, defaulting to pass: %s",
                executor.agent_id, ctx.session_id, exc,
            )
            return PASS_INTENT

    async def generate_intents(self, ctx: AgentVisibleContext) -> dict[str, IntentOutput]:
        """Collect one intent per agent, concurrently.

        Never raises for a single agent's failure: that agent gets
        ``pass`` with urgency 1. Keys follow registration order, whatever
        order the calls complete in.
        """
        executors = list(self._agents.values())
        results = await asyncio.gather(*(self._intent_or_pass(e, ctx) for e in executors))
        return {e.agent_id: intent for e, intent in zip(executors, results)}

    def clear(self) -> None:
        self._agents.clear()
