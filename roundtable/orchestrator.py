"""Round-based discussion loop.

One round: snapshot the public context, collect intents from every agent
concurrently, record them, ask the controller for a decision, execute it,
record the outcome, then advance the moderator state. Rounds repeat until
the controller ends the discussion or the hard round ceiling is hit.

The loop is the only component that talks to both the agents and the
controller. Moderator state is replaced only after the round's events
have been appended, so a cancelled round leaves the last committed state.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from config.config_loader import PhaseConfig, ScenarioConfig
from roundtable.agents import AgentExecutionError, AgentExecutor, AgentExecutorService
from roundtable.event_log import MAX_READ_LIMIT, EventLog, EventLogError
from roundtable.models import (
    MODERATOR,
    SYSTEM,
    AgentVisibleContext,
    Event,
    EventType,
    Intent,
    IntentOutput,
    PhaseView,
    new_event,
)
from roundtable.moderator.controller import (
    AllowSpeech,
    CallAgent,
    Decision,
    EndDiscussion,
    ForceSummary,
    ModeratorController,
    ModeratorError,
    ModeratorState,
    PromptQuestion,
    SwitchPhase,
    Wait,
)
from roundtable.moderator.judge import JudgeInput, JudgePanel
from roundtable.moderator.language import (
    ClosingInput,
    ModeratorLanguageError,
    ModeratorLanguageGenerator,
    OpeningInput,
    OutlineInput,
    ParticipantBrief,
    PhaseBrief,
    QuestionInput,
    SpeechBrief,
    SummaryInput,
)
from roundtable.visibility import DEFAULT_RECENT_EVENTS, build_visible_context, called_on, event_text

logger = logging.getLogger(__name__)

# Extra rounds allowed past the scenario budget before the loop gives up.
HARD_CEILING_MARGIN = 3
DECISION_WINDOW = 50
SUMMARY_POINT_CHARS = 100
QUESTION_SPEECHES = 3


class SessionFailedError(Exception):
    """Unrecoverable session error: storage failure or a moderator invariant violation."""

    def __init__(self, session_id: str, message: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} failed: {message}")


@dataclass
class DiscussionSession:
    session_id: str
    scenario: ScenarioConfig
    topic: str
    agents: AgentExecutorService
    controller: ModeratorController
    state: ModeratorState
    started_at: datetime
    opened: bool = False
    closed: bool = False
    consensus: list[str] = field(default_factory=list)
    divergence: list[str] = field(default_factory=list)
    phase_summaries: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ended_reason(self) -> str | None:
        return self.state.ended_reason

    @property
    def phase(self) -> PhaseConfig:
        return self.controller.current_phase(self.state)


def _phase_brief(phase: PhaseConfig) -> PhaseBrief:
    return PhaseBrief(id=phase.id, name=phase.name, type=phase.type, description=phase.description)


def _participant(executor: AgentExecutor) -> ParticipantBrief:
    p = executor.persona
    return ParticipantBrief(id=p.id, name=p.name, role=p.role, position=p.position)


class Orchestrator:
    """Drives discussion sessions against one Event Log and one moderator voice."""

    def __init__(
        self,
        event_log: EventLog,
        language: ModeratorLanguageGenerator,
        recent_events: int = DEFAULT_RECENT_EVENTS,
        on_event: Callable[[Event], None] | None = None,
        clock: Callable[[], datetime] | None = None,
        judge: JudgePanel | None = None,
    ) -> None:
        self._log = event_log
        self._language = language
        self._judge = judge
        self._recent_events = recent_events
        self._on_event = on_event
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sessions: dict[str, DiscussionSession] = {}

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        scenario: ScenarioConfig,
        agents: AgentExecutorService,
        topic: str | None = None,
        session_id: str | None = None,
    ) -> DiscussionSession:
        session_id = session_id or uuid.uuid4().hex[:12]
        if session_id in self._sessions:
            raise ValueError(f"Session already exists: {session_id}")
        controller = ModeratorController(scenario)
        now = self._clock()
        try:
            state = controller.create_initial_state(agents.agent_ids(), now)
        except ModeratorError as exc:
            raise SessionFailedError(session_id, str(exc)) from exc
        session = DiscussionSession(
            session_id=session_id,
            scenario=scenario,
            topic=topic or scenario.topic or scenario.description,
            agents=agents,
            controller=controller,
            state=state,
            started_at=now,
        )
        self._sessions[session_id] = session
        self._append(session, new_event(
            session_id, EventType.SYSTEM, SYSTEM,
            f"Discussion started: {scenario.name}",
            event="start", scenario=scenario.id, topic=session.topic, phase=state.phase_id,
        ))
        logger.info("Session %s created: scenario=%s, %d agents", session_id, scenario.id, len(agents))
        return session

    def get_session(self, session_id: str) -> DiscussionSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown session: {session_id}") from None

    def cleanup(self, session_id: str, clear_events: bool = False) -> None:
        """Release the session's agents (and their private memory)."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.agents.clear()
        if clear_events:
            self._log.clear_session(session_id)
        logger.debug("Session %s cleaned up", session_id)

    async def run(self, session_id: str) -> DiscussionSession:
        """Open, loop until the discussion ends, and close.

        Raises:
            SessionFailedError: On storage failure or a moderator invariant violation.
        """
        session = self.get_session(session_id)
        await self.open_session(session)

        ceiling = session.controller.max_rounds + HARD_CEILING_MARGIN
        while session.ended_reason is None and session.state.total_rounds < ceiling:
            await self.run_round(session_id)

        if session.ended_reason is None:
            logger.warning("Session %s hit the hard round ceiling (%d)", session_id, ceiling)
            self._end(session, "round_ceiling")

        await self.close_session(session)
        logger.info(
            "Session %s finished after %d rounds: %s",
            session_id, session.state.total_rounds, session.ended_reason,
        )
        return session

    async def open_session(self, session: DiscussionSession) -> None:
        """Opening remarks and outline, once. Failures here are logged and skipped."""
        if session.opened:
            return
        session.opened = True
        participants = [_participant(session.agents.get_agent(a)) for a in session.agents.agent_ids()]
        phases = [_phase_brief(p) for p in session.scenario.phases]

        try:
            opening = await self._language.generate_opening(OpeningInput(
                topic=session.topic,
                scenario_name=session.scenario.name,
                participants=participants,
                phases=phases,
            ))
        except ModeratorLanguageError as exc:
            logger.warning("Opening remarks failed in session %s: %s", session.session_id, exc)
        else:
            self._append(session, new_event(
                session.session_id, EventType.SYSTEM, MODERATOR, opening,
                event="opening", phase=session.state.phase_id,
            ))

        try:
            outline = await self._language.generate_outline(OutlineInput(
                topic=session.topic, participants=participants, phases=phases,
            ))
        except ModeratorLanguageError as exc:
            logger.warning("Outline failed in session %s: %s", session.session_id, exc)
        else:
            lines = [outline.title]
            for item in outline.phases:
                lines.append(f"{item.phase_name}: " + "; ".join(item.key_points))
            self._append(session, new_event(
                session.session_id, EventType.SYSTEM, MODERATOR, "\n".join(lines),
                event="outline", phase=session.state.phase_id,
            ))

    async def close_session(self, session: DiscussionSession) -> None:
        """Final summary, judge scores when the scenario names judges, then closing remarks, once.

        Text failures here are logged and skipped.
        """
        if session.closed:
            return
        session.closed = True
        phase = session.phase

        try:
            summary = await self._language.generate_summary(SummaryInput(
                topic=session.topic,
                phase=_phase_brief(phase),
                kind="final",
                key_points=self._speech_points(session.session_id, None),
                consensus_points=session.consensus,
                divergence_points=session.divergence,
            ))
        except ModeratorLanguageError as exc:
            logger.warning("Final summary failed in session %s: %s", session.session_id, exc)
        else:
            self._append(session, new_event(
                session.session_id, EventType.SUMMARY, MODERATOR,
                {"text": summary.text, "consensus": summary.consensus, "divergence": summary.divergence},
                kind="final", phase=phase.id,
            ))
            session.consensus = summary.consensus or session.consensus
            session.divergence = summary.divergence or session.divergence

        if self._judge is not None and session.scenario.judges:
            await self._judge_session(self._judge, session, phase)

        minutes = (self._clock() - session.started_at).total_seconds() / 60
        try:
            closing = await self._language.generate_closing(ClosingInput(
                topic=session.topic,
                phase_summaries=session.phase_summaries,
                final_consensus=session.consensus,
                unresolved=session.divergence,
                duration_minutes=minutes,
            ))
        except ModeratorLanguageError as exc:
            logger.warning("Closing remarks failed in session %s: %s", session.session_id, exc)
        else:
            self._append(session, new_event(
                session.session_id, EventType.SYSTEM, MODERATOR,
                {"text": closing.text, "conclusion": closing.conclusion},
                event="closing", phase=phase.id,
            ))

    async def _judge_session(self, judge: JudgePanel, session: DiscussionSession, phase: PhaseConfig) -> None:
        participants = [_participant(session.agents.get_agent(a)) for a in session.agents.agent_ids()]
        result = await judge.score(JudgeInput(
            topic=session.topic,
            participants=participants,
            speeches=self._speech_points(session.session_id, None),
            judges=list(session.scenario.judges),
        ))
        names = {p.id: p.name for p in participants}
        self._append(session, new_event(
            session.session_id, EventType.SUMMARY, MODERATOR, result.to_content(names),
            kind="judgement", phase=phase.id,
        ))

    # ------------------------------------------------------------------
    # One round
    # ------------------------------------------------------------------

    async def run_round(self, session_id: str) -> Decision:
        """Run one round and return the decision that was executed."""
        session = self.get_session(session_id)
        if session.ended_reason is not None:
            return EndDiscussion(session.ended_reason)

        ctx = self._snapshot(session)
        outputs = await session.agents.generate_intents(ctx)
        intents = self._record_intents(session, outputs)
        recent = self._read(session, lambda: self._log.get_latest_events(session_id, DECISION_WINDOW))

        try:
            decision = session.controller.decide(session.state, intents, recent, now=self._clock())
        except ModeratorError as exc:
            logger.error("Moderator fault in session %s: %s", session_id, exc)
            raise SessionFailedError(session_id, f"moderator fault: {exc}") from exc

        logger.debug("Session %s round %d: %s", session_id, session.state.total_rounds + 1, decision)

        try:
            await self._execute(session, decision, ctx)
        except ModeratorError as exc:
            logger.error("Moderator fault in session %s: %s", session_id, exc)
            raise SessionFailedError(session_id, f"moderator fault: {exc}") from exc
        return decision

    async def _execute(self, session: DiscussionSession, decision: Decision, ctx: AgentVisibleContext) -> None:
        controller = session.controller
        match decision:
            case AllowSpeech(agent_id=agent_id, topic=topic, interrupt=interrupt):
                await self._speak(session, agent_id, ctx, topic, interrupt=interrupt)
            case CallAgent(agent_id=agent_id, reason=reason):
                executor = self._executor(session, agent_id)
                self._append(session, new_event(
                    session.session_id, EventType.SYSTEM, MODERATOR,
                    f"{executor.persona.name}, {reason[0].lower()}{reason[1:]}",
                    event="call_agent", target=agent_id, phase=session.state.phase_id,
                ))
                executor.handle_feedback(f"The moderator called on me: {reason}")
                await self._speak(session, agent_id, called_on(self._snapshot(session), reason), None)
            case ForceSummary(phase_id=phase_id):
                await self._summarize(session, phase_id)
            case SwitchPhase(next_phase_id=next_phase_id):
                self._switch_phase(session, next_phase_id)
            case PromptQuestion(target_agent_id=target):
                await self._ask(session, target)
            case EndDiscussion(reason=reason):
                self._end(session, reason)
            case Wait():
                session.state = controller.update_state_after_idle(session.state)
            case _:
                raise ModeratorError(f"Unhandled decision: {decision!r}")

    # ------------------------------------------------------------------
    # Decision handlers
    # ------------------------------------------------------------------

    async def _speak(
        self,
        session: DiscussionSession,
        agent_id: str,
        ctx: AgentVisibleContext,
        topic: str | None,
        interrupt: bool = False,
    ) -> None:
        executor = self._executor(session, agent_id)
        try:
            speech = await executor.generate_speech(ctx, topic)
        except AgentExecutionError as exc:
            logger.warning(
                "Speech failed for agent %s in session %s: %s", agent_id, session.session_id, exc,
            )
            executor.handle_feedback("My last attempt to speak could not be delivered.")
            session.state = session.controller.update_state_after_idle(session.state)
            return

        self._append(session, new_event(
            session.session_id, EventType.SPEECH, agent_id, speech.content,
            phase=session.state.phase_id,
            round=session.state.total_rounds + 1,
            tone=speech.tone,
            interrupt=interrupt or None,
            reply_to=speech.reply_to,
            tokens=speech.token_usage,
        ))
        session.state = session.controller.update_state_after_speech(session.state, agent_id, self._clock())

    async def _summarize(self, session: DiscussionSession, phase_id: str) -> None:
        phase = session.scenario.phase(phase_id)
        if phase is None:
            raise ModeratorError(f"Summary requested for unknown phase: {phase_id}")
        try:
            summary = await self._language.generate_summary(SummaryInput(
                topic=session.topic,
                phase=_phase_brief(phase),
                kind="phase_end",
                key_points=self._speech_points(session.session_id, phase_id),
                consensus_points=session.consensus,
                divergence_points=session.divergence,
            ))
        except ModeratorLanguageError as exc:
            logger.warning("Summary failed in session %s: %s", session.session_id, exc)
            session.state = session.controller.update_state_after_idle(session.state)
            return

        self._append(session, new_event(
            session.session_id, EventType.SUMMARY, MODERATOR,
            {
                "text": summary.text,
                "consensus": summary.consensus,
                "divergence": summary.divergence,
                "next_steps": summary.next_steps,
            },
            kind=summary.kind, phase=phase_id,
        ))
        session.phase_summaries.append((phase.name, summary.text))
        session.consensus = summary.consensus or session.consensus
        session.divergence = summary.divergence or session.divergence
        for agent_id in session.agents.agent_ids():
            session.agents.get_agent(agent_id).add_long_term_summary(summary.text)
        session.state = session.controller.update_state_after_summary(session.state)

    def _switch_phase(self, session: DiscussionSession, next_phase_id: str) -> None:
        previous = session.state.phase_id
        phase = session.scenario.phase(next_phase_id)
        if phase is None:
            raise ModeratorError(f"Switch to unknown phase: {next_phase_id}")
        self._append(session, new_event(
            session.session_id, EventType.SYSTEM, SYSTEM,
            f"Moving on to {phase.name}: {phase.description}".rstrip(": "),
            event="phase_switch", **{"from": previous, "to": next_phase_id}, phase=next_phase_id,
        ))
        session.state = session.controller.update_state_after_phase_switch(session.state, next_phase_id, self._clock())
        for agent_id in session.agents.agent_ids():
            session.agents.get_agent(agent_id).update_goal(
                f"Contribute to the {phase.name} phase. {phase.description}".strip()
            )
        logger.info("Session %s: phase %s -> %s", session.session_id, previous, next_phase_id)

    async def _ask(self, session: DiscussionSession, target: str | None) -> None:
        phase = session.phase
        speeches = self._read(session, lambda: self._log.get_events_by_type(
            session.session_id, [EventType.SPEECH], limit=QUESTION_SPEECHES,
        ))
        target_brief = _participant(self._executor(session, target)) if target else None
        try:
            question = await self._language.generate_question(QuestionInput(
                topic=session.topic,
                phase=_phase_brief(phase),
                round=min(session.state.phase_round + 1, phase.max_rounds),
                max_rounds=phase.max_rounds,
                divergence_points=session.divergence,
                recent_speeches=[SpeechBrief(e.speaker, event_text(e)[:SUMMARY_POINT_CHARS]) for e in speeches],
                target=target_brief,
            ))
        except ModeratorLanguageError as exc:
            logger.warning("Guiding question failed in session %s: %s", session.session_id, exc)
        else:
            self._append(session, new_event(
                session.session_id, EventType.SYSTEM, MODERATOR, question.question,
                event="question", question_type=question.type, target=question.target_agent_id,
                phase=phase.id,
            ))
        session.state = session.controller.update_state_after_idle(session.state)

    def _end(self, session: DiscussionSession, reason: str) -> None:
        self._append(session, new_event(
            session.session_id, EventType.SYSTEM, SYSTEM, f"Discussion ended: {reason}",
            event="end", reason=reason, phase=session.state.phase_id,
        ))
        session.state = session.controller.update_state_after_end(session.state, reason)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _executor(self, session: DiscussionSession, agent_id: str) -> AgentExecutor:
        executor = session.agents.get_agent(agent_id)
        if executor is None:
            raise ModeratorError(f"Decision names unknown agent: {agent_id}")
        return executor

    def _append(self, session: DiscussionSession, event: Event) -> Event:
        try:
            stored = self._log.append(event)
        except EventLogError as exc:
            logger.error("Event log append failed in session %s: %s", session.session_id, exc)
            raise SessionFailedError(session.session_id, f"event log append failed: {exc}") from exc
        if self._on_event is not None:
            self._on_event(stored)
        return stored

    def _read(self, session: DiscussionSession, read: Callable[[], list[Event]]) -> list[Event]:
        try:
            return read()
        except EventLogError as exc:
            logger.error("Event log read failed in session %s: %s", session.session_id, exc)
            raise SessionFailedError(session.session_id, f"event log read failed: {exc}") from exc

    def _snapshot(self, session: DiscussionSession) -> AgentVisibleContext:
        phase = session.phase
        view = PhaseView(
            id=phase.id,
            type=phase.type,
            name=phase.name,
            description=phase.description,
            round=min(session.state.phase_round + 1, phase.max_rounds),
            max_rounds=phase.max_rounds,
        )
        events = self._read(session, lambda: self._log.get_latest_events(session.session_id, MAX_READ_LIMIT))
        return build_visible_context(
            session.session_id, session.topic, view, events,
            limit=self._recent_events, now=self._clock(),
        )

    def _record_intents(self, session: DiscussionSession, outputs: dict[str, IntentOutput]) -> list[Intent]:
        """Append INTENT (non-pass) and VOTE events in registration order."""
        intents: list[Intent] = []
        round_number = session.state.total_rounds + 1
        for agent_id, output in outputs.items():
            if output.intent != "pass":
                intent = output.to_intent(agent_id)
                intents.append(intent)
                self._append(session, new_event(
                    session.session_id, EventType.INTENT, agent_id,
                    {"intent": output.intent, "urgency": output.urgency, "target": output.target, "topic": output.topic},
                    urgency=output.urgency, phase=session.state.phase_id, round=round_number,
                ))
            if output.vote is not None:
                self._append(session, new_event(
                    session.session_id, EventType.VOTE, agent_id, output.vote,
                    phase=session.state.phase_id, round=round_number,
                ))
        return intents

    def _speech_points(self, session_id: str, phase_id: str | None) -> list[SpeechBrief]:
        """Speeches condensed for summaries, optionally limited to one phase."""
        session = self.get_session(session_id)
        speeches = self._read(session, lambda: self._log.get_events_by_type(session_id, [EventType.SPEECH]))
        return [
            SpeechBrief(e.speaker, event_text(e)[:SUMMARY_POINT_CHARS])
            for e in speeches
            if phase_id is None or e.meta.get("phase") == phase_id
        ]
