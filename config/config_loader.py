"""Load settings.yaml and scenario files into typed dataclasses.

Settings validate API keys at startup. Scenarios are validated field by
field; every problem is reported with its path in one ScenarioConfigError.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from roundtable.models import SPEAKING_STYLES, AgentPersona

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"
SCENARIOS_DIR = Path(__file__).parent / "scenarios"

PHASE_TYPES = ("opening", "discussion", "debate", "brainstorm", "voting", "closing")
SPEAKING_ORDERS = ("round-robin", "free", "moderated")
JUDGE_STYLES = ("strict", "lenient", "balanced")


class ScenarioConfigError(ValueError):
    """Raised when a scenario file is invalid. ``errors`` holds "path: message" strings."""

    def __init__(self, source: str, errors: list[str]) -> None:
        self.source = source
        self.errors = errors
        super().__init__(f"Invalid scenario {source}:\n  " + "\n  ".join(errors))


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class DefaultsConfig:
    scenario: str
    agent_provider: str
    moderator_provider: str
    output_dir: Path
    events_dir: Path | None = None
    recent_events: int = 10
    memory_max_entries: int = 10
    memory_max_tokens: int = 2000
    max_speech_chars: int = 2000


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    available_providers: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class PhaseConfig:
    id: str
    name: str
    type: str
    description: str
    max_rounds: int
    speaking_order: str = "free"
    allow_interrupt: bool = False
    force_summary: bool = False


@dataclass(frozen=True)
class ModeratorPolicy:
    intervention_level: int = 1        # 0 passive .. 3 directive
    cold_threshold: int = 3            # idle rounds before the room counts as cold
    max_idle_rounds: int = 8           # idle rounds before the discussion is declared stalled
    force_summary_each_phase: bool = False
    max_consecutive_speaks: int = 2


@dataclass(frozen=True)
class EndConditions:
    max_rounds: int | None = None      # None = sum of phase limits + 2 per phase
    max_duration_sec: float | None = None
    end_vote: bool = True


@dataclass(frozen=True)
class JudgeConfig:
    id: str
    name: str
    style: str = "balanced"
    weight: float = 1.0


@dataclass(frozen=True)
class ScenarioConfig:
    id: str
    name: str
    description: str
    phases: tuple[PhaseConfig, ...]
    agents: tuple[AgentPersona, ...] = ()
    moderator_policy: ModeratorPolicy = ModeratorPolicy()
    end_conditions: EndConditions = EndConditions()
    topic: str | None = None
    alignment: str | None = None
    judges: tuple[JudgeConfig, ...] = ()  # empty = no scoring at the end

    def phase(self, phase_id: str) -> PhaseConfig | None:
        return next((p for p in self.phases if p.id == phase_id), None)

    def next_phase(self, phase_id: str) -> PhaseConfig | None:
        ids = [p.id for p in self.phases]
        if phase_id not in ids:
            return None
        idx = ids.index(phase_id)
        return self.phases[idx + 1] if idx + 1 < len(self.phases) else None

    @property
    def effective_max_rounds(self) -> int:
        if self.end_conditions.max_rounds is not None:
            return self.end_conditions.max_rounds
        return sum(p.max_rounds for p in self.phases) + 2 * len(self.phases)


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs missing API keys but does not raise; callers check
    available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    events_dir = defaults_raw.get("events_dir")
    defaults = DefaultsConfig(
        scenario=str(defaults_raw["scenario"]),
        agent_provider=str(defaults_raw["agent_provider"]),
        moderator_provider=str(defaults_raw["moderator_provider"]),
        output_dir=Path(defaults_raw["output_dir"]),
        events_dir=Path(events_dir) if events_dir else None,
        recent_events=int(defaults_raw.get("recent_events", 10)),
        memory_max_entries=int(defaults_raw.get("memory_max_entries", 10)),
        memory_max_tokens=int(defaults_raw.get("memory_max_tokens", 2000)),
        max_speech_chars=int(defaults_raw.get("max_speech_chars", 2000)),
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        available_providers=available_providers,
    )


class _Checker:
    """Collects "path: message" errors while reading raw YAML values."""

    def __init__(self) -> None:
        self.errors: list[str] = []

    def fail(self, path: str, message: str) -> None:
        self.errors.append(f"{path}: {message}")

    def string(self, raw: dict, key: str, path: str, required: bool = True) -> str | None:
        value = raw.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            if required:
                self.fail(f"{path}.{key}", "is required")
            return None
        if not isinstance(value, (str, int, float)):
            self.fail(f"{path}.{key}", "must be a string")
            return None
        return str(value).strip()

    def integer(
        self, raw: dict, key: str, path: str, default: int | None, low: int, high: int | None = None, required: bool = False
    ) -> int | None:
        value = raw.get(key)
        if value is None:
            if required:
                self.fail(f"{path}.{key}", "is required")
            return default
        if isinstance(value, bool) or not isinstance(value, int):
            self.fail(f"{path}.{key}", f"must be an integer, got {value!r}")
            return default
        if value < low or (high is not None and value > high):
            bounds = f">= {low}" if high is None else f"between {low} and {high}"
            self.fail(f"{path}.{key}", f"must be {bounds}, got {value}")
            return default
        return value

    def boolean(self, raw: dict, key: str, path: str, default: bool) -> bool:
        value = raw.get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            self.fail(f"{path}.{key}", f"must be true or false, got {value!r}")
            return default
        return value

    def choice(self, raw: dict, key: str, path: str, allowed: tuple[str, ...], default: str | None) -> str | None:
        value = raw.get(key)
        if value is None:
            if default is None:
                self.fail(f"{path}.{key}", "is required")
            return default
        if value not in allowed:
            self.fail(f"{path}.{key}", f"must be one of {', '.join(allowed)}, got {value!r}")
            return default
        return value

    def mapping(self, raw: dict, key: str) -> dict:
        value = raw.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            self.fail(key, "must be a mapping")
            return {}
        return value

    def string_list(self, raw: dict, key: str, path: str) -> tuple[str, ...]:
        value = raw.get(key)
        if value is None:
            return ()
        if not isinstance(value, list):
            self.fail(f"{path}.{key}", "must be a list")
            return ()
        return tuple(str(x) for x in value)


def _parse_phases(check: _Checker, raw_phases: Any) -> list[PhaseConfig]:
    if not isinstance(raw_phases, list) or not raw_phases:
        check.fail("phases", "must be a non-empty list")
        return []

    phases: list[PhaseConfig] = []
    seen: set[str] = set()
    for i, raw in enumerate(raw_phases):
        path = f"phases[{i}]"
        if not isinstance(raw, dict):
            check.fail(path, "must be a mapping")
            continue
        phase_id = check.string(raw, "id", path)
        if phase_id in seen:
            check.fail(f"{path}.id", f"duplicate phase id {phase_id!r}")
        seen.add(phase_id or "")
        phase_type = check.choice(raw, "type", path, PHASE_TYPES, None)
        if phase_type == "opening" and i != 0:
            check.fail(f"{path}.type", "an opening phase must be first")
        if phase_type == "closing" and i != len(raw_phases) - 1:
            check.fail(f"{path}.type", "a closing phase must be last")
        phase = PhaseConfig(
            id=phase_id or "",
            name=check.string(raw, "name", path, required=False) or phase_id or "",
            type=phase_type or "discussion",
            description=check.string(raw, "description", path, required=False) or "",
            max_rounds=check.integer(raw, "max_rounds", path, None, 1, required=True) or 1,
            speaking_order=check.choice(raw, "speaking_order", path, SPEAKING_ORDERS, "free") or "free",
            allow_interrupt=check.boolean(raw, "allow_interrupt", path, False),
            force_summary=check.boolean(raw, "force_summary", path, False),
        )
        phases.append(phase)
    return phases


def _parse_agents(check: _Checker, raw_agents: Any) -> list[AgentPersona]:
    if raw_agents is None:
        return []
    if not isinstance(raw_agents, list):
        check.fail("agents", "must be a list")
        return []

    agents: list[AgentPersona] = []
    seen: set[str] = set()
    for i, raw in enumerate(raw_agents):
        path = f"agents[{i}]"
        if not isinstance(raw, dict):
            check.fail(path, "must be a mapping")
            continue
        agent_id = check.string(raw, "id", path)
        if agent_id in ("moderator", "system"):
            check.fail(f"{path}.id", f"{agent_id!r} is reserved")
        if agent_id in seen:
            check.fail(f"{path}.id", f"duplicate agent id {agent_id!r}")
        seen.add(agent_id or "")
        agents.append(AgentPersona(
            id=agent_id or "",
            name=check.string(raw, "name", path) or "",
            role=check.string(raw, "role", path, required=False) or "participant",
            persona=check.string(raw, "persona", path) or "",
            speaking_style=check.choice(raw, "speaking_style", path, SPEAKING_STYLES, "concise") or "concise",
            faction=check.string(raw, "faction", path, required=False),
            position=check.string(raw, "position", path, required=False),
            expertise=check.string_list(raw, "expertise", path),
            traits=check.string_list(raw, "traits", path),
            provider=check.string(raw, "provider", path, required=False),
        ))
    return agents


def _parse_judges(check: _Checker, raw_judges: Any) -> list[JudgeConfig]:
    if raw_judges is None:
        return []
    if not isinstance(raw_judges, list):
        check.fail("judges", "must be a list")
        return []

    judges: list[JudgeConfig] = []
    seen: set[str] = set()
    for i, raw in enumerate(raw_judges):
        path = f"judges[{i}]"
        if not isinstance(raw, dict):
            check.fail(path, "must be a mapping")
            continue
        judge_id = check.string(raw, "id", path)
        if judge_id in seen:
            check.fail(f"{path}.id", f"duplicate judge id {judge_id!r}")
        seen.add(judge_id or "")
        weight = raw.get("weight")
        if weight is None:
            weight = 1.0
        elif isinstance(weight, bool) or not isinstance(weight, (int, float)) or not 0 < weight < float("inf"):
            check.fail(f"{path}.weight", f"must be a positive number, got {weight!r}")
            weight = 1.0
        judges.append(JudgeConfig(
            id=judge_id or "",
            name=check.string(raw, "name", path, required=False) or judge_id or "",
            style=check.choice(raw, "style", path, JUDGE_STYLES, "balanced") or "balanced",
            weight=float(weight),
        ))
    return judges


def parse_scenario(raw: Any, source: str = "<scenario>") -> ScenarioConfig:
    """Validate a raw scenario mapping.

    Raises:
        ScenarioConfigError: Listing every invalid field by path.
    """
    check = _Checker()
    if not isinstance(raw, dict):
        raise ScenarioConfigError(source, ["<root>: must be a mapping"])

    scenario_id = check.string(raw, "id", "scenario")
    name = check.string(raw, "name", "scenario", required=False)
    phases = _parse_phases(check, raw.get("phases"))
    agents = _parse_agents(check, raw.get("agents"))
    judges = _parse_judges(check, raw.get("judges"))

    policy_raw = check.mapping(raw, "moderator_policy")
    policy = ModeratorPolicy(
        intervention_level=check.integer(policy_raw, "intervention_level", "moderator_policy", 1, 0, 3),
        cold_threshold=check.integer(policy_raw, "cold_threshold", "moderator_policy", 3, 1),
        max_idle_rounds=check.integer(policy_raw, "max_idle_rounds", "moderator_policy", 8, 1),
        force_summary_each_phase=check.boolean(policy_raw, "force_summary_each_phase", "moderator_policy", False),
        max_consecutive_speaks=check.integer(policy_raw, "max_consecutive_speaks", "moderator_policy", 2, 1),
    )

    end_raw = check.mapping(raw, "end_conditions")
    max_duration = end_raw.get("max_duration_sec")
    if max_duration is not None and (isinstance(max_duration, bool) or not isinstance(max_duration, (int, float)) or max_duration <= 0):
        check.fail("end_conditions.max_duration_sec", f"must be a positive number, got {max_duration!r}")
        max_duration = None
    end_conditions = EndConditions(
        max_rounds=check.integer(end_raw, "max_rounds", "end_conditions", None, 1),
        max_duration_sec=float(max_duration) if max_duration is not None else None,
        end_vote=check.boolean(end_raw, "end_vote", "end_conditions", True),
    )

    if check.errors:
        raise ScenarioConfigError(source, check.errors)

    return ScenarioConfig(
        id=scenario_id or "",
        name=name or scenario_id or "",
        description=str(raw.get("description") or ""),
        phases=tuple(phases),
        agents=tuple(agents),
        moderator_policy=policy,
        end_conditions=end_conditions,
        topic=raw.get("topic"),
        alignment=raw.get("alignment"),
        judges=tuple(judges),
    )


def load_scenario(path: Path) -> ScenarioConfig:
    """Load and validate one scenario YAML file.

    Raises FileNotFoundError if the file is missing, ScenarioConfigError if invalid.
    """
    if not path.exists():
        raise FileNotFoundError(f"Scenario file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ScenarioConfigError(str(path), [f"<root>: invalid YAML: {exc}"]) from exc
    scenario = parse_scenario(raw, source=str(path))
    logger.debug("Loaded scenario %s with %d phases", scenario.id, len(scenario.phases))
    return scenario


def load_scenario_by_id(scenario_id: str, scenarios_dir: Path = SCENARIOS_DIR) -> ScenarioConfig:
    return load_scenario(scenarios_dir / f"{scenario_id}.yaml")


def list_scenarios(scenarios_dir: Path = SCENARIOS_DIR) -> list[str]:
    return sorted(p.stem for p in scenarios_dir.glob("*.yaml"))
