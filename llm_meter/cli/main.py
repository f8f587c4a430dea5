"""
CLI interface for LLM Meter.

Operator commands over the same classes the service uses in-process.
"""

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from llm_meter.config.loader import DEFAULT_CONFIG_PATH, MeterConfig, load_meter_config
from llm_meter.core.meter import UsageMeter
from llm_meter.errors import MeterError
from llm_meter.storage.models import LLMProvider, UsageFilters
from llm_meter.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def load_config(path: str) -> MeterConfig:
    """Load the config file, or the defaults when the default path is absent."""
    if path == DEFAULT_CONFIG_PATH and not Path(path).exists():
        return MeterConfig()
    return load_meter_config(path)


def build_meter(config: MeterConfig) -> UsageMeter:
    return UsageMeter.from_config(config)


def _replay_current_month(meter: UsageMeter) -> None:
    """Fill process-local counters from this month's ledger events."""
    now = datetime.now(timezone.utc)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    meter.rebuild_counters(month_start, end=now)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _period(days: int, start: Optional[datetime], end: Optional[datetime]) -> Tuple[datetime, datetime]:
    end = end.replace(tzinfo=timezone.utc) if end else datetime.now(timezone.utc)
    start = start.replace(tzinfo=timezone.utc) if start else end - timedelta(days=days)
    return start, end


def _filters(
    provider: Optional[str],
    customer: Optional[str],
    agent: Optional[str],
    campaign: Optional[str]
) -> UsageFilters:
    return UsageFilters(
        provider=LLMProvider(provider) if provider else None,
        customer_id=customer,
        agent_id=agent,
        campaign_id=campaign
    )


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to YAML config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """LLM Meter CLI."""
    ctx.obj = config
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    if ctx.invoked_subcommand is None:
        console.print("LLM Meter - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Create the usage ledger table."""
    try:
        cfg = load_config(ctx.obj)
        initialize_schema(cfg.storage.db_path)
        console.print(f"[green]✓[/] Ledger initialized at {cfg.storage.db_path}")
    except (MeterError, OSError, ValueError) as e:
        _fail(f"initializing database: {e}")


@app.command()
def status(ctx: typer.Context):
    """Show spend against the global daily and monthly budgets."""
    try:
        cfg = load_config(ctx.obj)
        meter = build_meter(cfg)
        if cfg.storage.counters == "memory":
            _replay_current_month(meter)
        budget = meter.get_budget_status()
    except (MeterError, OSError, ValueError) as e:
        _fail(str(e))
        return

    table = Table(title="Budget Status")
    table.add_column("Window")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Used %", justify="right")
    for name, window in (("daily", budget.daily), ("monthly", budget.monthly)):
        table.add_row(
            name,
            _format_currency(window.used),
            _format_currency(window.limit),
            _format_currency(window.remaining),
            f"{window.percentage:,.1f}%"
        )
    console.print(table)


@app.command()
def metrics(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", "-d", help="Look back this many days"),
    start: Optional[datetime] = typer.Option(None, "--start", help="Period start (UTC)"),
    end: Optional[datetime] = typer.Option(None, "--end", help="Period end (UTC)"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter by provider"),
    customer: Optional[str] = typer.Option(None, "--customer", help="Filter by customer id"),
    agent: Optional[str] = typer.Option(None, "--agent", help="Filter by agent id"),
    campaign: Optional[str] = typer.Option(None, "--campaign", help="Filter by campaign id")
):
    """Report usage over a period from the ledger."""
    try:
        period_start, period_end = _period(days, start, end)
        result = build_meter(load_config(ctx.obj)).get_usage_metrics(
            period_start, period_end, _filters(provider, customer, agent, campaign)
        )
    except (MeterError, OSError, ValueError) as e:
        _fail(str(e))
        return

    console.print("\n[bold]LLM Usage Metrics[/bold]")
    console.print(f"Period: {result.period_start:%Y-%m-%d %H:%M} to {result.period_end:%Y-%m-%d %H:%M} UTC")
    console.print(f"Requests: {result.total_requests:,}")
    console.print(f"Tokens: {result.total_tokens:,}")
    console.print(f"Total cost: {_format_currency(result.total_cost)}")
    console.print(f"Avg cost/request: ${result.avg_cost_per_request:,.4f}")

    if not result.breakdown:
        console.print("\n[dim]No usage recorded in this period.[/]")
        return

    table = Table(title="By provider and model")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for row in result.breakdown:
        table.add_row(
            row.provider.value, row.model, f"{row.requests:,}", f"{row.tokens:,}",
            _format_currency(row.cost)
        )
    console.print(table)


@app.command()
def export(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", "-d", help="Look back this many days"),
    start: Optional[datetime] = typer.Option(None, "--start", help="Period start (UTC)"),
    end: Optional[datetime] = typer.Option(None, "--end", help="Period end (UTC)"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter by provider"),
    customer: Optional[str] = typer.Option(None, "--customer", help="Filter by customer id"),
    agent: Optional[str] = typer.Option(None, "--agent", help="Filter by agent id"),
    campaign: Optional[str] = typer.Option(None, "--campaign", help="Filter by campaign id")
):
    """Write ledger events as JSON lines to stdout."""
    try:
        period_start, period_end = _period(days, start, end)
        events = build_meter(load_config(ctx.obj)).export(
            period_start, period_end, _filters(provider, customer, agent, campaign)
        )
    except (MeterError, OSError, ValueError) as e:
        _fail(str(e))
        return

    for event in events:
        typer.echo(json.dumps({
            "timestamp": event.timestamp.isoformat(),
            "provider": event.provider.value,
            "model": event.model,
            "prompt_tokens": event.prompt_tokens,
            "completion_tokens": event.completion_tokens,
            "total_tokens": event.total_tokens,
            "cost": event.cost,
            "customer_id": event.customer_id,
            "agent_id": event.agent_id,
            "campaign_id": event.campaign_id,
            "request_id": event.request_id,
        }))


@app.command()
def trim(
    ctx: typer.Context,
    retention_days: Optional[int] = typer.Option(
        None, "--retention-days", "-r", help="Keep this many days (defaults to config)"
    )
):
    """Delete ledger events older than the retention window."""
    try:
        cfg = load_config(ctx.obj)
        days = retention_days if retention_days is not None else cfg.retention_days
        removed = build_meter(cfg).trim(days)
    except (MeterError, OSError, ValueError) as e:
        _fail(str(e))
        return
    console.print(f"[green]✓[/] Removed {removed:,} events older than {days} days")


@app.command()
def rebuild(
    ctx: typer.Context,
    days: int = typer.Option(31, "--days", "-d", help="Replay this many days of ledger events")
):
    """Replay the ledger into empty shared counters."""
    try:
        cfg = load_config(ctx.obj)
        if cfg.storage.counters == "memory":
            _fail(
                "rebuild needs shared counters (storage.counters: redis); "
                "in-memory counters live only as long as one process"
            )
            return
        meter = build_meter(cfg)
        replayed = meter.rebuild_counters(datetime.now(timezone.utc) - timedelta(days=days))
    except (MeterError, OSError, ValueError) as e:
        _fail(str(e))
        return
    console.print(f"[green]✓[/] Replayed {replayed:,} events into counters")


if __name__ == "__main__":
    app()
