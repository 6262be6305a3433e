"""Click CLI: loads config and scenario, wires clients, runs a discussion, saves the transcript."""

import asyncio
import dataclasses
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from config.config_loader import (
    SCENARIOS_DIR,
    AppConfig,
    ScenarioConfig,
    ScenarioConfigError,
    list_scenarios,
    load_config,
    load_scenario,
    load_scenario_by_id,
)
from roundtable.agents import AgentExecutorService
from roundtable.event_log import EventLog, EventLogError, JsonlEventLog, MemoryEventLog
from roundtable.healthcheck import run_health_checks
from roundtable.launcher import AsyncioLauncher, SessionOutcome
from roundtable.moderator.judge import JudgePanel
from roundtable.moderator.language import ModeratorLanguageGenerator
from roundtable.orchestrator import Orchestrator, SessionFailedError
from roundtable.output import print_event, print_outcome, save_transcript
from roundtable.providers.base import LLMClient
from roundtable.providers.registry import build_clients
from roundtable.topics import parse_topic_file, scan_topics

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _with_max_rounds(scenario: ScenarioConfig, rounds: int | None) -> ScenarioConfig:
    """Copy of the scenario with its round budget overridden."""
    if rounds is None:
        return scenario
    end = dataclasses.replace(scenario.end_conditions, max_rounds=rounds)
    return dataclasses.replace(scenario, end_conditions=end)


def _assign_clients(
    scenario: ScenarioConfig,
    clients: dict[str, LLMClient],
    agent_provider: str,
    moderator_provider: str,
    force_agent_provider: bool = False,
) -> tuple[dict[str, LLMClient], LLMClient]:
    """Pick a client per agent and one for the moderator.

    An agent's own ``provider`` wins unless ``force_agent_provider``; an
    unavailable choice falls back to the default agent provider.

    Raises:
        ValueError: If the default agent provider or the moderator provider is unavailable.
    """
    if agent_provider not in clients:
        raise ValueError(f"Agent provider '{agent_provider}' is not available")
    if moderator_provider not in clients:
        raise ValueError(f"Moderator provider '{moderator_provider}' is not available")

    assigned: dict[str, LLMClient] = {}
    for persona in scenario.agents:
        wanted = agent_provider if force_agent_provider or not persona.provider else persona.provider
        if wanted not in clients:
            logger.warning("Provider '%s' for agent %s unavailable, using %s", wanted, persona.id, agent_provider)
            wanted = agent_provider
        assigned[persona.id] = clients[wanted]
    return assigned, clients[moderator_provider]


def _check_and_filter_clients(clients: dict[str, LLMClient]) -> dict[str, LLMClient]:
    """Run health checks, print results, and ask what to do on failures.

    Returns the working clients. Exits if the user declines to continue
    or nothing passes.
    """
    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(clients))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return clients

    working = {n: c for n, c in clients.items() if n not in failed_names}
    if not working:
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}")
    if not click.confirm("Continue with working providers only?", default=True):
        sys.exit(0)
    console.print()
    return working


def _build_event_log(config: AppConfig, memory_only: bool) -> EventLog:
    if memory_only or config.defaults.events_dir is None:
        return MemoryEventLog()
    return JsonlEventLog(config.defaults.events_dir)


async def _run_discussion(
    config: AppConfig,
    scenario: ScenarioConfig,
    topic: str,
    agent_clients: dict[str, LLMClient],
    default_agent_client: LLMClient,
    moderator_client: LLMClient,
    event_log: EventLog,
    output_dir: Path,
    show_intents: bool,
    session_id: str | None = None,
    slug_override: str | None = None,
    judging: bool = True,
) -> tuple[SessionOutcome, Path]:
    """Run one discussion to completion and save its transcript."""
    names = {p.id: p.name for p in scenario.agents}

    agents = AgentExecutorService(
        default_client=default_agent_client,
        max_memory_entries=config.defaults.memory_max_entries,
        max_memory_tokens=config.defaults.memory_max_tokens,
        max_speech_chars=config.defaults.max_speech_chars,
    )
    for persona in scenario.agents:
        agents.create_agent(persona, agent_clients[persona.id])

    orchestrator = Orchestrator(
        event_log=event_log,
        language=ModeratorLanguageGenerator(moderator_client),
        recent_events=config.defaults.recent_events,
        on_event=lambda event: print_event(event, names, show_intents),
        judge=JudgePanel(moderator_client) if judging and scenario.judges else None,
    )
    launcher = AsyncioLauncher(orchestrator)

    session = orchestrator.create_session(scenario, agents, topic=topic, session_id=session_id)
    console.print(f"\n[bold cyan]Roundtable[/bold cyan]: {scenario.name} ({len(scenario.agents)} agents)")
    console.print(f"Session: {session.session_id}")
    console.print(f"Topic: [italic]{topic[:80]}{'...' if len(topic) > 80 else ''}[/italic]\n")

    launcher.start(session.session_id)
    try:
        outcome = await launcher.wait(session.session_id)
    finally:
        launcher.stop(session.session_id)

    events = event_log.get_events(session.session_id)
    print_outcome(session.session_id, outcome.status, outcome.ended_reason or outcome.error, events)
    saved = save_transcript(
        session.session_id, scenario.name, session.topic, events, names, output_dir, slug_override=slug_override,
    )
    orchestrator.cleanup(session.session_id)
    console.print(f"\n[dim]Saved to: {saved}[/dim]")
    return outcome, saved


def _load_scenario(scenario_id: str, scenario_file: str | None) -> ScenarioConfig:
    try:
        if scenario_file:
            return load_scenario(Path(scenario_file))
        return load_scenario_by_id(scenario_id)
    except (FileNotFoundError, ScenarioConfigError) as exc:
        console.print(f"[bold red]Scenario error:[/bold red] {exc}")
        sys.exit(1)


@click.command()
@click.argument("topic", required=False)
@click.option("--file", "topic_file", type=click.Path(exists=True), help="Read topic from .md file")
@click.option("--topics-dir", default=None, type=click.Path(exists=True, file_okay=False),
              help="Run one discussion per .md file in this folder")
@click.option("--scenario", "scenario_id", default=None, help="Scenario id under config/scenarios (default: from config)")
@click.option("--scenario-file", default=None, type=click.Path(exists=True), help="Path to a scenario YAML file")
@click.option("--rounds", default=None, type=int, help="Round budget, overrides the scenario")
@click.option("--provider", default=None, help="Model for every agent, overrides per-agent providers")
@click.option("--moderator", "moderator_provider", default=None, help="Model for the moderator (default: from config)")
@click.option("--output", "output_path", default=None, help="Transcript directory (default: from config)")
@click.option("--memory-only", is_flag=True, default=False, help="Keep events in memory instead of JSONL files")
@click.option("--show-intents", is_flag=True, default=False, help="Print intent and vote events too")
@click.option("--no-judges", is_flag=True, default=False, help="Skip end-of-discussion scoring even if the scenario has judges")
@click.option("--list-scenarios", "show_scenarios", is_flag=True, default=False, help="List scenario ids and exit")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
def main(
    topic: str | None,
    topic_file: str | None,
    topics_dir: str | None,
    scenario_id: str | None,
    scenario_file: str | None,
    rounds: int | None,
    provider: str | None,
    moderator_provider: str | None,
    output_path: str | None,
    memory_only: bool,
    show_intents: bool,
    no_judges: bool,
    show_scenarios: bool,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """Roundtable -- moderated multi-agent discussions.

    \b
    Examples:
      roundtable "Should cities ban private cars from historic centres?"
      roundtable --scenario brainstorm "How can a library attract more visitors?"
      roundtable --file topic.md --rounds 12 --provider claude
      roundtable --topics-dir ./topics --memory-only
      roundtable --list-scenarios
    """
    load_dotenv()
    _setup_logging(verbose)

    if show_scenarios:
        for name in list_scenarios(SCENARIOS_DIR):
            click.echo(name)
        return

    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    clients = build_clients(config)
    if not clients:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)
    if not skip_health_check:
        clients = _check_and_filter_clients(clients)

    output_dir = Path(output_path) if output_path else config.defaults.output_dir
    agent_provider = provider or config.defaults.agent_provider
    moderator_name = moderator_provider or config.defaults.moderator_provider

    if topics_dir:
        jobs = [parse_topic_file(path) for path in scan_topics(Path(topics_dir))]
        if not jobs:
            click.echo("No topic files found.")
            return
    elif topic_file:
        jobs = [parse_topic_file(Path(topic_file))]
    else:
        jobs = []

    try:
        event_log = _build_event_log(config, memory_only)
    except EventLogError as exc:
        console.print(f"[bold red]Event log error:[/bold red] {exc}")
        sys.exit(1)

    async def run_all() -> None:
        if not jobs:
            scenario = _with_max_rounds(_load_scenario(scenario_id or config.defaults.scenario, scenario_file), rounds)
            text = topic or scenario.topic
            if not text:
                console.print("[bold red]Error:[/bold red] Provide a TOPIC argument, --file, or a scenario with a topic.")
                sys.exit(1)
            await run_one(scenario, text, None, None)
            return
        for job in jobs:
            scenario = _load_scenario(job.scenario or scenario_id or config.defaults.scenario, scenario_file)
            # CLI flag wins over frontmatter
            scenario = _with_max_rounds(scenario, rounds if rounds is not None else job.rounds)
            try:
                await run_one(scenario, job.topic, job.session_id, Path(job.source).stem)
            except SessionFailedError as exc:
                logger.error("Failed: %s -- %s", job.source, exc)

    async def run_one(scenario: ScenarioConfig, text: str, session_id: str | None, slug: str | None) -> None:
        try:
            agent_clients, moderator_client = _assign_clients(
                scenario, clients, agent_provider, moderator_name, force_agent_provider=provider is not None,
            )
        except ValueError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            sys.exit(1)
        if not scenario.agents:
            console.print(f"[bold red]Error:[/bold red] Scenario {scenario.id} defines no agents.")
            sys.exit(1)
        await _run_discussion(
            config=config,
            scenario=scenario,
            topic=text,
            agent_clients=agent_clients,
            default_agent_client=clients[agent_provider],
            moderator_client=moderator_client,
            event_log=event_log,
            output_dir=output_dir,
            show_intents=show_intents,
            session_id=session_id,
            slug_override=slug,
            judging=not no_judges,
        )

    asyncio.run(run_all())


if __name__ == "__main__":
    main()
