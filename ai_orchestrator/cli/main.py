"""
CLI interface for the AI request orchestrator.

Provides command-line access to generation, provider status and persisted
usage.
"""

import asyncio
import logging
import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_orchestrator.config.loader import (
    OrchestratorConfig,
    default_config,
    load_config,
    resolve_config_path,
)
from ai_orchestrator.core.errors import OrchestrationError, RateLimited
from ai_orchestrator.core.orchestrator import GenerationRequest, Orchestrator
from ai_orchestrator.core.router import PREFERENCE_ORDER
from ai_orchestrator.core.tasks import SubjectTier, TaskComplexity
from ai_orchestrator.sdk import EchoProvider
from ai_orchestrator.storage.db import DEFAULT_DB_PATH
from ai_orchestrator.storage.repository import (
    get_repository,
    initialize_schema,
    insert_usage_snapshots,
    snapshots_from_records,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_RATE_LIMITED = 2


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load(config_path: Optional[str]) -> OrchestratorConfig:
    path = resolve_config_path(config_path)
    return load_config(path) if path else default_config()


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI request orchestrator CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Orchestrator - Use --help to see available commands")


@app.command()
def init(db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path")):
    """Initialize the usage snapshot database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def generate(
    prompt: str = typer.Argument(..., help="Prompt to send"),
    task: Optional[str] = typer.Option(
        None, "--task", "-t", help="Task type; sets complexity and cache category"
    ),
    complexity: TaskComplexity = typer.Option(
        TaskComplexity.MEDIUM, "--complexity", "-c", help="Task complexity"
    ),
    tier: SubjectTier = typer.Option(SubjectTier.FREE, "--tier", help="Subscription tier"),
    subject: str = typer.Option("cli", "--subject", "-s", help="Subject the request is for"),
    stream: bool = typer.Option(False, "--stream", help="Print fragments as they arrive"),
    config: Optional[str] = typer.Option(None, "--config", help="YAML configuration file"),
    offline: bool = typer.Option(
        False, "--offline", help="Answer with the local echo provider only"
    ),
    record: Optional[str] = typer.Option(
        None, "--record", help="Append a usage snapshot to this database"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Generate a response through cache, router and providers."""
    _configure_logging(verbose)
    try:
        cfg = _load(config)
        adapters = None
        if offline:
            adapters = {pid: EchoProvider(profile) for pid, profile in cfg.providers.items()}
        orchestrator = Orchestrator.from_config(cfg, providers=adapters)

        options = dict(tier=tier, subject_id=subject, streaming=stream)
        if task:
            request = GenerationRequest.for_task(prompt, task, **options)
        else:
            request = GenerationRequest(prompt=prompt, complexity=complexity, **options)

        def on_chunk(fragment: str) -> None:
            console.print(fragment, end="", markup=False, highlight=False)

        result = asyncio.run(orchestrator.generate(request, on_chunk if stream else None))
    except RateLimited as e:
        console.print(f"[yellow]Rate limited:[/] {e}")
        sys.exit(EXIT_CODE_RATE_LIMITED)
    except (OrchestrationError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if stream:
        console.print()
    else:
        console.print(result.value, markup=False, highlight=False)

    source = "cache" if result.from_cache else result.provider_id
    degraded = " (degraded)" if result.degraded else ""
    console.print(
        f"[dim]{source}{degraded} · {result.tokens} tokens · ${result.cost:.6f}[/]"
    )

    if record:
        try:
            initialize_schema(record)
            insert_usage_snapshots(
                snapshots_from_records(orchestrator.cost_tracker.records()), record
            )
        except sqlite3.Error as e:
            console.print(f"[red]Error recording usage:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def providers(
    config: Optional[str] = typer.Option(None, "--config", help="YAML configuration file"),
):
    """List configured providers and the role each one plays."""
    try:
        cfg = _load(config)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    roles = {}
    for role in PREFERENCE_ORDER:
        roles.setdefault(cfg.routing.provider_for(role), []).append(role.value)

    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Kind")
    table.add_column("Model")
    table.add_column("Cost/token", justify="right")
    table.add_column("Speed")
    table.add_column("Role")
    for provider_id, profile in cfg.providers.items():
        table.add_row(
            provider_id,
            profile.kind,
            profile.model,
            f"${profile.cost_per_token:.7f}",
            profile.relative_speed,
            ", ".join(roles.get(provider_id, [])) or "-",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    subject: Optional[str] = typer.Option(None, "--subject", "-s", help="Filter by subject"),
):
    """Show recorded usage totals per provider."""
    try:
        totals = get_repository(db).get_provider_totals(subject)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No recorded usage found[/]")
            console.print("Run `ai-orchestrator init`, then `generate --record`.\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not totals:
        console.print("\n[dim]No recorded usage found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recorded usage")
    table.add_column("Provider")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for provider_id, row in totals.items():
        table.add_row(
            provider_id,
            str(row["requests"]),
            f"{row['tokens']:,}",
            _format_currency(row["cost"]),
        )
    table.add_row(
        "[bold]Total[/]",
        str(sum(r["requests"] for r in totals.values())),
        f"{sum(r['tokens'] for r in totals.values()):,}",
        _format_currency(sum(r["cost"] for r in totals.values())),
    )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency to the precision small per-token costs need."""
    return f"${abs(amount):,.6f}"


if __name__ == "__main__":
    app()
