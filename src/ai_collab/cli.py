"""
CLI entry point for AI Collab.
"""

import dataclasses
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .adapter import ExternalAgentAdapter
from .backends.llm import AnthropicModelClient
from .config import DEFAULT_CONFIG_PATH, CollabConfig, load_config, save_config
from .orchestrator import PlanExecutor, approval_reason
from .planner import Planner
from .publisher import ConsolePublisher, MessageType, render_plan_summary, render_plan_table
from .rate_limiter import TokenBucket
from .review_tool import REVIEW_FOCUS_AREAS, review_code
from .swarm import SwarmReviewer


console = Console()

_APPROVAL_POLL_SECONDS = 0.2


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=verbose)],
        force=True,
    )


def _load(config_path: str | None) -> CollabConfig:
    try:
        return load_config(config_path)
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


def _rate_limiter(config: CollabConfig) -> TokenBucket:
    return TokenBucket(config.rate_limit_capacity, config.rate_limit_refill_rate)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def main(verbose: bool):
    """AI Collab - plan, execute and review tasks with multiple AI agents

    A planner agent breaks the task into steps, worker agents execute them,
    and a self-correcting review swarm votes on every step that changes code.

    \b
    Configuration:
      Config file: .collab/config.json (created by 'collab init')
      CLI flags override config file settings.

    \b
    Quick start:
      collab init                Write the default config
      collab plan "task"         Show the plan without executing it
      collab run "task"          Plan, approve and execute a task
    """
    _configure_logging(verbose)


@main.command()
@click.argument("query")
@click.option(
    "--config", "-c",
    type=click.Path(exists=True),
    help="Path to config file. Default: .collab/config.json",
)
@click.option(
    "--yes", "-y",
    is_flag=True,
    help="Approve low-confidence plans without prompting.",
)
@click.option(
    "--swarm-size",
    type=int,
    default=None,
    help="Number of review agents per reviewed step.",
)
@click.option(
    "--threshold",
    type=float,
    default=None,
    help="Weighted approval ratio the swarm needs to accept a step (0.0-1.0).",
)
def run(query: str, config: str | None, yes: bool, swarm_size: int | None, threshold: float | None):
    """Plan and execute a task with the configured agents."""
    console.print(
        Panel.fit(
            f"[bold blue]AI Collab v{__version__}[/]",
            border_style="blue",
        )
    )

    collab_config = _load(config)
    try:
        if swarm_size is not None:
            collab_config.swarm = dataclasses.replace(collab_config.swarm, swarm_size=swarm_size)
        if threshold is not None:
            collab_config.swarm = dataclasses.replace(collab_config.swarm, consensus_threshold=threshold)
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)

    publisher = ConsolePublisher(console)
    executor = PlanExecutor(collab_config, publisher=publisher)

    try:
        session = executor.handle_message({"type": "REQUEST", "payload": query})
        while session.is_alive():
            if publisher.approval_requested.wait(_APPROVAL_POLL_SECONDS):
                publisher.approval_requested.clear()
                if yes or click.confirm("Approve this plan?", default=False):
                    executor.approve()
                else:
                    executor.reject()
        session.join()
    except KeyboardInterrupt:
        executor.cancel()
        console.print("\n[yellow]Interrupted by user[/]")
        raise SystemExit(1)
    finally:
        executor.shutdown()

    last = publisher.last_message
    if last is not None and last.type is MessageType.ERROR:
        raise SystemExit(1)


@main.command()
@click.argument("query")
@click.option(
    "--config", "-c",
    type=click.Path(exists=True),
    help="Path to config file. Default: .collab/config.json",
)
def plan(query: str, config: str | None):
    """Generate a plan for a task (dry run, nothing is executed)."""
    collab_config = _load(config)
    console.print(f"\n[bold]Planning:[/] {query}\n")

    try:
        with ExternalAgentAdapter.from_config(collab_config) as adapter:
            planner = Planner(
                adapter,
                agent_name=collab_config.planner_agent,
                workspace_dir=collab_config.workspace_dir,
            )
            plan_response = planner.generate_plan(query)
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)

    console.print(render_plan_summary(plan_response))
    console.print(render_plan_table(plan_response.steps))
    if plan_response.requires_approval:
        console.print(f"[yellow]Approval required:[/] {approval_reason(plan_response)}")
    else:
        console.print("[green]Confidence above threshold, no approval needed[/]")


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--task", "-t", required=True, help="What the code is supposed to do.")
@click.option(
    "--focus",
    type=click.Choice(REVIEW_FOCUS_AREAS),
    default="all",
    help="Review focus area (default: all).",
)
@click.option(
    "--config", "-c",
    type=click.Path(exists=True),
    help="Path to config file. Default: .collab/config.json",
)
def review(file: str, task: str, focus: str, config: str | None):
    """Review a file with the self-correcting swarm and print the verdict."""
    collab_config = _load(config)
    code = Path(file).read_text()

    reviewer = SwarmReviewer.from_config(
        collab_config,
        AnthropicModelClient(timeout=collab_config.llm_timeout),
        rate_limiter=_rate_limiter(collab_config),
    )
    try:
        report = review_code(reviewer, code, task, focus=focus)
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)

    console.print_json(json.dumps(report))


@main.command()
@click.option(
    "--force", "-f",
    is_flag=True,
    help="Overwrite existing configuration",
)
def init(force: bool):
    """Write the default configuration to .collab/config.json."""
    if DEFAULT_CONFIG_PATH.exists() and not force:
        console.print("[yellow]Configuration already exists[/]")
        console.print("   Use --force to overwrite existing configuration")
        return

    save_config(CollabConfig())
    console.print(f"   ✓ Created {DEFAULT_CONFIG_PATH}")
    console.print("\n[dim]Next steps:[/]")
    console.print("   1. Adjust agent commands in the config if your CLIs differ")
    console.print("   2. Run [cyan]collab run \"your task\"[/] to start")


@main.group()
def config():
    """View and modify collab configuration.

    \b
    Commands:
      show    Display current configuration
      set     Update a configuration value
    """
    pass


# Map CLI keys (with hyphens) to (section, field, type)
CONFIG_KEYS = {
    "swarm-size": ("swarm", "swarm_size", int),
    "consensus-threshold": ("swarm", "consensus_threshold", float),
    "generate-temp": ("swarm", "generate_temp", float),
    "correct-temp": ("swarm", "correct_temp", float),
    "planner-agent": (None, "planner_agent", str),
    "approval-timeout": (None, "approval_timeout", float),
    "llm-timeout": (None, "llm_timeout", int),
    "rate-limit-capacity": (None, "rate_limit_capacity", int),
    "rate-limit-refill-rate": (None, "rate_limit_refill_rate", float),
}


@config.command("show")
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(exists=True),
    help="Path to config file. Default: .collab/config.json",
)
def config_show(config_path: str | None):
    """Display the effective configuration."""
    collab_config = _load(config_path)

    console.print("\n[bold]AI Collab Configuration[/]\n")
    console.print(f"   [dim]Config file:[/] {config_path or DEFAULT_CONFIG_PATH}\n")

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="white")
    table.add_column("Current Value", style="green")
    for cli_key, (section, field_name, _) in CONFIG_KEYS.items():
        source = getattr(collab_config, section) if section else collab_config
        table.add_row(cli_key, str(getattr(source, field_name)))
    table.add_row("swarm-models", ", ".join(collab_config.swarm_models))
    console.print(table)

    agents = Table(show_header=True, header_style="bold cyan")
    agents.add_column("Agent", style="white")
    agents.add_column("Command", style="green")
    agents.add_column("Mode")
    agents.add_column("Timeout", justify="right")
    for name, agent in collab_config.agents.items():
        agents.add_row(
            name,
            " ".join([agent.command] + agent.args),
            agent.interaction_mode,
            f"{agent.timeout_seconds:.0f}s",
        )
    console.print(agents)


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Update a configuration value in .collab/config.json."""
    if key not in CONFIG_KEYS:
        console.print(f"[bold red]Error:[/] Unknown key '{key}'")
        console.print(f"   Valid keys: {', '.join(CONFIG_KEYS)}")
        raise SystemExit(1)

    section, field_name, cast = CONFIG_KEYS[key]
    try:
        typed = cast(value)
        collab_config = load_config()
        if section:
            updated = dataclasses.replace(getattr(collab_config, section), **{field_name: typed})
            collab_config = dataclasses.replace(collab_config, **{section: updated})
        else:
            collab_config = dataclasses.replace(collab_config, **{field_name: typed})
    except ValueError as e:
        console.print(f"[bold red]Error:[/] Invalid value for {key}: {e}")
        raise SystemExit(1)

    save_config(collab_config)
    console.print(f"   ✓ Set {key} = {typed}")
