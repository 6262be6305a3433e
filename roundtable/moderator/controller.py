"""Deterministic moderator: picks exactly one next action per round.

``ModeratorController.decide`` is a pure function of its arguments. It does
not read clocks, call models or touch the Event Log; the same
``(state, intents, recent_events, now)`` always yields the same decision.
``ModeratorState`` is frozen and only changes through the
``update_state_after_*`` helpers, each of which counts one round.

Decision precedence, first match wins:

1. already ended, majority end vote, round budget, time budget, stall
2. phase round limit: summary (once, if the phase wants one), next phase, or end
3. eligible intents, arbitrated by the phase's speaking order
4. cold room (``idle_rounds >= cold_threshold``), by intervention level
5. proactive nudge for intervention level >= 2 after an idle round
6. wait

Among competing intents the higher urgency wins; equal urgency goes to the
intent submitted first (the loop submits in agent registration order).
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from config.config_loader import PhaseConfig, ScenarioConfig
from roundtable.models import Event, EventType, Intent

logger = logging.getLogger(__name__)

MIN_INTERRUPT_URGENCY = 3
ROUND_ROBIN_INTERRUPT_URGENCY = 4


class ModeratorError(Exception):
    """Raised when the moderator state violates an invariant. Halts the session."""


# Decisions. Exactly one is returned per round.

@dataclass(frozen=True)
class AllowSpeech:
    agent_id: str
    topic: str | None = None
    interrupt: bool = False


@dataclass(frozen=True)
class CallAgent:
    agent_id: str
    reason: str


@dataclass(frozen=True)
class ForceSummary:
    phase_id: str
    reason: str = "phase_end"


@dataclass(frozen=True)
class SwitchPhase:
    next_phase_id: str
    reason: str = "max_rounds"


@dataclass(frozen=True)
class PromptQuestion:
    target_agent_id: str | None = None
    reason: str = "cold"


@dataclass(frozen=True)
class EndDiscussion:
    reason: str


@dataclass(frozen=True)
class Wait:
    reason: str = ""


Decision = AllowSpeech | CallAgent | ForceSummary | SwitchPhase | PromptQuestion | EndDiscussion | Wait


@dataclass(frozen=True)
class ModeratorState:
    phase_id: str
    phase_type: str
    agent_ids: tuple[str, ...]
    started_at: datetime
    phase_started_at: datetime
    phase_round: int = 0          # speeches recorded in this phase
    total_rounds: int = 0         # loop iterations, any outcome
    idle_rounds: int = 0          # consecutive rounds without a speech
    last_speaker: str | None = None
    consecutive_speaks: int = 0
    speak_counts: Mapping[str, int] = field(default_factory=dict)
    round_robin_index: int = 0
    last_speak_at: datetime | None = None
    phase_summarized: bool = False
    ended_reason: str | None = None


class ModeratorController:
    """Decision policy for one scenario."""

    def __init__(self, scenario: ScenarioConfig) -> None:
        if not scenario.phases:
            raise ModeratorError(f"Scenario {scenario.id} has no phases")
        self.scenario = scenario
        self.policy = scenario.moderator_policy
        self.max_rounds = scenario.effective_max_rounds

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def create_initial_state(self, agent_ids: Sequence[str], now: datetime | None = None) -> ModeratorState:
        if not agent_ids:
            raise ModeratorError("A discussion needs at least one agent")
        if len(set(agent_ids)) != len(agent_ids):
            raise ModeratorError(f"Duplicate agent ids: {list(agent_ids)}")
        now = now or datetime.now(timezone.utc)
        first = self.scenario.phases[0]
        return ModeratorState(
            phase_id=first.id,
            phase_type=first.type,
            agent_ids=tuple(agent_ids),
            started_at=now,
            phase_started_at=now,
            speak_counts={agent_id: 0 for agent_id in agent_ids},
        )

    def update_state_after_speech(self, state: ModeratorState, speaker: str, now: datetime | None = None) -> ModeratorState:
        if speaker not in state.agent_ids:
            raise ModeratorError(f"Unknown speaker: {speaker}")
        counts = dict(state.speak_counts)
        counts[speaker] = counts.get(speaker, 0) + 1
        return replace(
            state,
            phase_round=state.phase_round + 1,
            total_rounds=state.total_rounds + 1,
            idle_rounds=0,
            last_speaker=speaker,
            consecutive_speaks=state.consecutive_speaks + 1 if speaker == state.last_speaker else 1,
            speak_counts=counts,
            round_robin_index=state.agent_ids.index(speaker) + 1,
            last_speak_at=now or datetime.now(timezone.utc),
        )

    def update_state_after_idle(self, state: ModeratorState) -> ModeratorState:
        return replace(state, total_rounds=state.total_rounds + 1, idle_rounds=state.idle_rounds + 1)

    def update_state_after_summary(self, state: ModeratorState) -> ModeratorState:
        return replace(state, total_rounds=state.total_rounds + 1, phase_summarized=True)

    def update_state_after_phase_switch(self, state: ModeratorState, phase_id: str, now: datetime | None = None) -> ModeratorState:
        phase = self.scenario.phase(phase_id)
        if phase is None:
            raise ModeratorError(f"Phase not found: {phase_id}")
        return replace(
            state,
            phase_id=phase.id,
            phase_type=phase.type,
            phase_round=0,
            total_rounds=state.total_rounds + 1,
            idle_rounds=0,
            round_robin_index=0,
            phase_started_at=now or datetime.now(timezone.utc),
            phase_summarized=False,
        )

    def update_state_after_end(self, state: ModeratorState, reason: str) -> ModeratorState:
        return replace(state, total_rounds=state.total_rounds + 1, ended_reason=reason)

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def current_phase(self, state: ModeratorState) -> PhaseConfig:
        phase = self.scenario.phase(state.phase_id)
        if phase is None:
            raise ModeratorError(f"State refers to unknown phase: {state.phase_id}")
        return phase

    def decide(
        self,
        state: ModeratorState,
        intents: Sequence[Intent],
        recent_events: Sequence[Event],
        now: datetime | None = None,
    ) -> Decision:
        phase = self.current_phase(state)

        ending = self._check_end(state, recent_events, now)
        if ending is not None:
            return ending

        transition = self._check_phase_end(state, phase)
        if transition is not None:
            return transition

        eligible = self._eligible_intents(state, phase, intents)
        if eligible:
            match phase.speaking_order:
                case "round-robin":
                    return self._round_robin(state, eligible)
                case "moderated":
                    return self._moderated(state, eligible)
                case "free":
                    return self._free(state, eligible)
            raise ModeratorError(f"Unknown speaking order: {phase.speaking_order}")

        if state.idle_rounds >= self.policy.cold_threshold:
            return self._handle_cold(state)

        if self.policy.intervention_level >= 2 and state.idle_rounds >= 1:
            return self._proactive(state)

        return Wait("no intents")

    def _check_end(self, state: ModeratorState, recent_events: Sequence[Event], now: datetime | None) -> Decision | None:
        if state.ended_reason is not None:
            return EndDiscussion(state.ended_reason)
        if self.scenario.end_conditions.end_vote and self._end_vote_passed(state, recent_events):
            return EndDiscussion("vote")
        if state.total_rounds >= self.max_rounds:
            return EndDiscussion("max_rounds")
        max_duration = self.scenario.end_conditions.max_duration_sec
        if max_duration is not None and now is not None:
            if (now - state.started_at).total_seconds() >= max_duration:
                return EndDiscussion("max_time")
        if state.idle_rounds >= self.policy.max_idle_rounds:
            return EndDiscussion("stalled")
        return None

    @staticmethod
    def _end_vote_passed(state: ModeratorState, recent_events: Sequence[Event]) -> bool:
        """Strict majority of agents whose latest recorded vote is "end"."""
        latest: dict[str, str] = {}
        for event in sorted((e for e in recent_events if e.type is EventType.VOTE), key=lambda e: e.sequence):
            if event.speaker in state.agent_ids:
                latest[event.speaker] = str(event.content)
        ends = sum(1 for vote in latest.values() if vote == "end")
        return ends * 2 > len(state.agent_ids)

    def _check_phase_end(self, state: ModeratorState, phase: PhaseConfig) -> Decision | None:
        if state.phase_round < phase.max_rounds:
            return None
        wants_summary = phase.force_summary or self.policy.force_summary_each_phase
        if wants_summary and not state.phase_summarized:
            return ForceSummary(phase.id)
        next_phase = self.scenario.next_phase(phase.id)
        if next_phase is not None:
            return SwitchPhase(next_phase.id)
        return EndDiscussion("phases_complete")

    @staticmethod
    def _eligible_intents(state: ModeratorState, phase: PhaseConfig, intents: Sequence[Intent]) -> list[Intent]:
        """Drop passes, unknown agents and disallowed interrupts; sort by urgency, then submission order."""
        eligible = []
        for intent in intents:
            if intent.kind == "pass" or intent.agent_id not in state.agent_ids:
                continue
            if intent.kind == "interrupt" and (not phase.allow_interrupt or intent.urgency < MIN_INTERRUPT_URGENCY):
                continue
            eligible.append(intent)
        # sorted() is stable, so equal urgency keeps submission order
        return sorted(eligible, key=lambda i: -i.urgency)

    def _least_speaker(self, state: ModeratorState, exclude: str | None = None) -> str | None:
        candidates = [a for a in state.agent_ids if a != exclude]
        if not candidates:
            return None
        return min(candidates, key=lambda a: state.speak_counts.get(a, 0))

    def _round_robin(self, state: ModeratorState, eligible: list[Intent]) -> Decision:
        expected = state.agent_ids[state.round_robin_index % len(state.agent_ids)]
        for intent in eligible:
            if intent.agent_id == expected:
                return AllowSpeech(expected, topic=intent.topic)
        for intent in eligible:
            if intent.kind == "interrupt" and intent.urgency >= ROUND_ROBIN_INTERRUPT_URGENCY:
                return AllowSpeech(intent.agent_id, topic=intent.topic, interrupt=True)
        return CallAgent(expected, "It is your turn to speak.")

    def _free(self, state: ModeratorState, eligible: list[Intent]) -> Decision:
        capped = state.last_speaker is not None and state.consecutive_speaks >= self.policy.max_consecutive_speaks
        if capped:
            others = [i for i in eligible if i.agent_id != state.last_speaker]
            if others:
                eligible = others
        chosen = eligible[0]
        return AllowSpeech(chosen.agent_id, topic=chosen.topic, interrupt=chosen.kind == "interrupt")

    def _moderated(self, state: ModeratorState, eligible: list[Intent]) -> Decision:
        """Favor whoever has spoken least; a pending intent counts as half a turn less."""
        by_agent = {}
        for intent in eligible:
            by_agent.setdefault(intent.agent_id, intent)
        capped = None
        if state.consecutive_speaks >= self.policy.max_consecutive_speaks and len(state.agent_ids) > 1:
            capped = state.last_speaker

        best: str | None = None
        best_score = float("inf")
        for agent_id in state.agent_ids:
            if agent_id == capped:
                continue
            score = state.speak_counts.get(agent_id, 0) - (0.5 if agent_id in by_agent else 0.0)
            if score < best_score:
                best, best_score = agent_id, score

        if best is None:
            raise ModeratorError("State has no agents to choose from")
        if best in by_agent:
            return AllowSpeech(best, topic=by_agent[best].topic)
        return CallAgent(best, "The moderator would like to hear from you.")

    def _handle_cold(self, state: ModeratorState) -> Decision:
        level = self.policy.intervention_level
        threshold = self.policy.cold_threshold
        target = self._least_speaker(state)
        if target is None:
            raise ModeratorError("State has no agents to call on")
        if level == 0:
            return Wait("cold, intervention disabled")
        if level == 1:
            if state.idle_rounds >= threshold * 2:
                return CallAgent(target, "The discussion has stalled. Please share your view.")
            return Wait("cold")
        if level == 2:
            return CallAgent(target, "Please share your view.")
        if (state.idle_rounds - threshold) % 2 == 0:
            return PromptQuestion(target, reason="cold")
        return CallAgent(target, "Please respond to the moderator's question.")

    def _proactive(self, state: ModeratorState) -> Decision:
        if self.policy.intervention_level >= 3:
            return PromptQuestion(None, reason="proactive")
        target = self._least_speaker(state, exclude=state.last_speaker)
        if target is None:
            return Wait("nobody to call")
        return CallAgent(target, "Please share your view.")
