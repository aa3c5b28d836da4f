"""
CLI interface for AI Cost Router.

Operator commands over the usage ledger and routing policy.
"""

import asyncio
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_cost_router.config.loader import RouterConfig, load_router_config
from ai_cost_router.core.ledger import CostLedger
from ai_cost_router.storage.db import DEFAULT_DB_PATH
from ai_cost_router.storage.repository import SqliteUsageRepository, initialize_schema
from ai_cost_router.utils.logger import configure_logging

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", "-d", help="Path to the usage database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a router YAML config")


def _load_config(config_path: Optional[str]) -> RouterConfig:
    if config_path is None:
        return RouterConfig()
    return load_router_config(config_path)


def _ledger(db_path: str, config: RouterConfig) -> CostLedger:
    return CostLedger(SqliteUsageRepository(db_path), pricing=config.pricing)


def _format_currency(amount: float) -> str:
    return f"${amount:,.6f}" if 0 < amount < 0.01 else f"${amount:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
):
    """AI Cost Router CLI."""
    configure_logging(log_level, json_logs)
    if ctx.invoked_subcommand is None:
        console.print("AI Cost Router - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the usage database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(db: str = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Show recorded usage, overall and per provider."""
    try:
        usage = asyncio.run(_ledger(db, _load_config(config)).get_usage_stats())
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if usage.summary.total_requests == 0:
        console.print("\n[bold yellow]No usage recorded yet[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="AI Usage")
    table.add_column("Provider")
    table.add_column("Requests", justify="right")
    table.add_column("Input tokens", justify="right")
    table.add_column("Output tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Avg tokens/request", justify="right")

    for provider, summary in usage.providers.items():
        table.add_row(
            provider,
            str(summary.total_requests),
            f"{summary.input_tokens:,}",
            f"{summary.output_tokens:,}",
            _format_currency(summary.total_cost),
            str(summary.avg_tokens_per_request),
        )
    total = usage.summary
    table.add_row(
        "[bold]total[/]",
        str(total.total_requests),
        f"{total.input_tokens:,}",
        f"{total.output_tokens:,}",
        _format_currency(total.total_cost),
        str(total.avg_tokens_per_request),
    )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def projection(
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    days: int = typer.Option(30, "--days", help="Days in the monthly horizon"),
):
    """Project current spend forward (current total taken as one day)."""
    try:
        result = asyncio.run(_ledger(db, _load_config(config)).get_cost_projection(days))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("\n[bold]Cost Projection[/bold]")
    console.print("-" * 40)
    console.print(f"Daily:   {_format_currency(result.daily)} {result.currency}")
    console.print(f"Weekly:  {_format_currency(result.weekly)} {result.currency}")
    console.print(f"Monthly: {_format_currency(result.monthly)} {result.currency} ({days} days)")
    sys.exit(EXIT_CODE_PASS)


@app.command("check-thresholds")
def check_thresholds(
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    enforced: bool = typer.Option(
        False,
        "--enforced",
        "-e",
        help="Exit with error code if any threshold is reached"
    ),
):
    """Report which cost alert thresholds current usage has reached."""
    try:
        router_config = _load_config(config)
        breaches = asyncio.run(
            _ledger(db, router_config).check_thresholds(router_config.thresholds)
        )
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not breaches:
        console.print("[green]✓[/] All cost thresholds OK")
        sys.exit(EXIT_CODE_PASS)

    for breach in breaches:
        console.print(f"[bold red]{breach.period.value.upper()}[/] {breach.message}")

    if enforced:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reset(
    db: str = DB_OPTION,
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Reset only this provider"),
):
    """Zero recorded usage for one provider or all of them."""
    try:
        count = asyncio.run(CostLedger(SqliteUsageRepository(db)).reset_usage(provider))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Reset {count} usage record(s) for {provider or 'all providers'}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def policy(config: Optional[str] = CONFIG_OPTION):
    """Show the effective routing policy."""
    try:
        routing_policy = _load_config(config).policy
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Tool Routing")
    table.add_column("Tool")
    table.add_column("Default")
    table.add_column("Cost-optimized")
    table.add_column("Fallback")
    table.add_column("Transcription")
    for tool, route in routing_policy.tool_routes.items():
        table.add_row(
            tool.value,
            route.default_provider.value,
            route.cost_optimized_provider.value if route.cost_optimized_provider else "-",
            route.fallback_provider.value if route.fallback_provider else "-",
            route.transcription_provider.value if route.transcription_provider else "-",
        )
    console.print(table)

    access = Table(title="Role Access")
    access.add_column("Role")
    access.add_column("Tools")
    access.add_column("Max cost per request")
    for role, tools in routing_policy.permissions.items():
        caps = ", ".join(
            f"{tool.value}=${routing_policy.max_cost(role, tool):g}" for tool in sorted(tools, key=lambda t: t.value)
        )
        access.add_row(role.value, ", ".join(sorted(t.value for t in tools)), caps)
    console.print(access)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
