"""
CLI interface for Spend Reconciler.

Provides command-line access to usage reports, pricing timelines, spend
history overrides and FX rates.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from spend_reconciler.config.loader import EngineConfig, load_engine_config
from spend_reconciler.core.anomaly import compute_usage_anomalies, fmt_usd_maybe
from spend_reconciler.core.autosave import PricingAutoSaver
from spend_reconciler.core.currency import build_currency_options, currency_label, normalize_currency_code
from spend_reconciler.core.dedup import (
    aggregate_effective_total,
    build_display_groups,
    build_shared_cost_view,
    compute_totals_and_averages,
)
from spend_reconciler.core.errors import HistoryFloorError, ReconcileError, TransportError
from spend_reconciler.core.fx import refresh_fx_rates_daily
from spend_reconciler.core.history import (
    HistoryDraft,
    HistoryEditor,
    HistoryField,
    derive_history_entry,
    fmt_history_source,
)
from spend_reconciler.core.pricing_draft import PricingDraft, build_pricing_draft
from spend_reconciler.core.sequencing import RequestLogFeed
from spend_reconciler.core.sources import fmt_pricing_source
from spend_reconciler.core.timeline import TimelineManager
from spend_reconciler.demo.seed_demo_data import seed_demo_data
from spend_reconciler.storage.models import HistoryEntry, PricingMode, ProviderConfig
from spend_reconciler.storage.prefs import PrefsStore
from spend_reconciler.storage.repository import SqliteBackend, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = "spend-reconciler.yaml"

_state = {"config": EngineConfig.default()}


def _config() -> EngineConfig:
    return _state["config"]


def _prefs() -> PrefsStore:
    return PrefsStore(_config().prefs_path).init()


def _backend() -> SqliteBackend:
    return SqliteBackend(_config().database)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Path to engine config (default: {DEFAULT_CONFIG_PATH} if present)"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    ),
):
    """Spend Reconciler CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    path = config or (DEFAULT_CONFIG_PATH if Path(DEFAULT_CONFIG_PATH).exists() else None)
    try:
        _state["config"] = load_engine_config(path) if path else EngineConfig.default()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if ctx.invoked_subcommand is None:
        console.print("Spend Reconciler - Use --help to see available commands")


@app.command()
def status():
    """Check initialization status of Spend Reconciler."""
    db_path = _config().database
    if not Path(db_path).exists():
        console.print(f"[yellow]![/] No database at {db_path}. Run `spend-reconciler init` first")
        sys.exit(EXIT_CODE_PASS)
    try:
        configs = asyncio.run(_backend().get_provider_configs())
    except TransportError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Spend Reconciler is initialized ({len(configs)} providers)")


@app.command()
def init():
    """Initialize the Spend Reconciler database."""
    try:
        initialize_schema(_config().database)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("seed-demo")
def seed_demo():
    """Insert a day of demo telemetry and pricing."""
    try:
        count = seed_demo_data(_config().database)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Demo usage data inserted ({count} requests)")


@app.command()
def fx(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Refetch even if today's rates are cached"
    )
):
    """Refresh and show the cached FX table."""
    prefs = _prefs()
    table = asyncio.run(refresh_fx_rates_daily(prefs, force=force, endpoints=_config().fx.endpoints))
    output = Table(title=f"FX rates per USD ({table.date or 'defaults'})")
    output.add_column("Currency")
    output.add_column("Rate", justify="right")
    for code in build_currency_options(table):
        output.add_row(currency_label(code), f"{table.rate(code):,.4f}")
    console.print(output)


def _fmt_usd(amount: Optional[float]) -> str:
    if amount is None:
        return "-"
    return f"${amount:,.3f}"


async def _report(hours: int):
    stats = await _backend().get_usage_statistics(hours)
    rows = list(stats.summary.by_provider)
    view = build_shared_cost_view(rows)
    anomalies = compute_usage_anomalies(
        rows, stats.summary.timeline, stats.window_hours, config=_config().anomaly
    )
    return stats, rows, view, anomalies


@app.command()
def report(
    hours: int = typer.Option(
        24,
        "--hours",
        "-h",
        help="Trailing window in hours"
    )
):
    """Show resolved per-provider cost with shared-key dedup and anomalies."""
    if hours <= 0:
        console.print("[red]Error:[/] --hours must be > 0")
        sys.exit(EXIT_CODE_FAIL)
    try:
        stats, rows, view, anomalies = asyncio.run(_report(hours))
    except TransportError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        console.print("Run `spend-reconciler init` if the database has not been created")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print("\n[bold yellow]No usage data found in this window[/]")
        console.print("\nRun `spend-reconciler seed-demo` to load sample data\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Usage cost, last {stats.window_hours}h")
    for column in ("Provider", "Key", "Requests", "Tokens", "Source", "Total", "$/day", "$/req", "$/M tok"):
        table.add_column(column, justify="left" if column in ("Provider", "Key", "Source") else "right")
    for row in rows:
        flag = " [red]![/]" if row.row_key in anomalies.high_cost_row_keys else ""
        shared = " [dim](shared)[/]" if row.row_key in view.zero_row_keys else ""
        table.add_row(
            row.provider + flag,
            row.api_key_ref,
            f"{row.requests:,}",
            f"{row.total_tokens:,}",
            fmt_pricing_source(row.pricing_source) + shared,
            _fmt_usd(row.total_used_cost_usd),
            _fmt_usd(row.estimated_daily_cost_usd),
            fmt_usd_maybe(row.estimated_avg_request_cost_usd),
            fmt_usd_maybe(row.usd_per_million_tokens),
        )
    console.print(table)

    groups = build_display_groups(rows, view)
    if any(len(group.providers) > 1 for group in groups):
        console.print("\n[bold]Shared keys[/bold]")
        for group in groups:
            if len(group.providers) > 1:
                console.print(
                    f"{group.display_name} ({group.api_key_ref}): {_fmt_usd(group.effective_total_usd)} "
                    f"[{fmt_pricing_source(group.pricing_source)}]"
                )

    totals = compute_totals_and_averages(rows, view)
    console.print(f"\n[bold]Total cost:[/bold] {_fmt_usd(aggregate_effective_total(rows, view))}")
    if totals is not None:
        console.print(f"Requests: {totals.total_requests:,}  Tokens: {totals.total_tokens:,}")
        console.print(f"Avg $/req: {fmt_usd_maybe(totals.avg_usd_per_request)}  "
                      f"Avg $/day: {_fmt_usd(totals.avg_estimated_daily_usd)}")

    if anomalies.messages:
        console.print("\n[bold yellow]Anomalies[/]")
        for message in anomalies.messages:
            console.print(f"- {message}")
    print()


@app.command()
def timeline(provider: str = typer.Argument(..., help="Provider to show")):
    """Show the merged schedule rows for a provider and its key peers."""
    manager = TimelineManager(_backend(), _prefs())
    try:
        rows = asyncio.run(manager.load(provider))
    except TransportError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if not rows:
        console.print(f"[dim]No schedule periods for {provider}[/]")
        sys.exit(EXIT_CODE_PASS)
    table = Table(title=f"Schedule for {provider}")
    for column in ("Providers", "Key", "Mode", "Start", "Expires", "Amount"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            ", ".join(row.targets),
            row.api_key_ref,
            row.mode.value,
            row.start_text,
            row.end_text or "open",
            f"{row.amount_text} {row.currency}",
        )
    console.print(table)


@app.command()
def recent(limit: int = typer.Option(20, "--limit", "-n", help="Number of requests to show")):
    """Show the newest request records."""
    if limit <= 0:
        console.print("[red]Error:[/] --limit must be > 0")
        sys.exit(EXIT_CODE_FAIL)
    feed = RequestLogFeed(_backend())
    try:
        rows = asyncio.run(feed.reload(limit)) or []
    except TransportError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if not rows:
        console.print("[dim]No requests recorded[/]")
        sys.exit(EXIT_CODE_PASS)
    table = Table(title=f"Latest {len(rows)} requests")
    for column in ("Time", "Provider", "Key", "Model", "Origin", "Tokens"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            row.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            row.provider,
            row.api_key_ref,
            row.model,
            row.origin or "-",
            str(row.total_tokens),
        )
    console.print(table)


async def _history_set(provider: str, day: str, total: Optional[float], per_req: Optional[float]) -> HistoryEntry:
    history = _config().history
    editor = HistoryEditor(_backend(), days=history.days, epsilon=history.epsilon)
    try:
        await editor.refresh()
        entry = next(
            (e for e in editor.entries if e.provider == provider and e.day_key == day),
            None,
        ) or derive_history_entry(HistoryEntry(provider=provider, day_key=day))
        if total is not None:
            editor.edit(entry, HistoryDraft(effective_text=str(total)))
            await editor.save(entry, HistoryField.EFFECTIVE)
        else:
            editor.edit(entry, HistoryDraft(per_req_text=str(per_req)))
            await editor.save(entry, HistoryField.PER_REQ)
        return next(
            (e for e in editor.entries if e.provider == provider and e.day_key == day),
            entry,
        )
    finally:
        editor.close()


@app.command("history-set")
def history_set(
    provider: str = typer.Argument(..., help="Provider"),
    day: str = typer.Argument(..., help="UTC day, YYYY-MM-DD"),
    total: Optional[float] = typer.Option(None, "--total", help="Effective total for the day in USD"),
    per_req: Optional[float] = typer.Option(None, "--per-req", help="Override $/request for the day"),
):
    """Override one provider-day of spend history."""
    if (total is None) == (per_req is None):
        console.print("[red]Error:[/] pass exactly one of --total or --per-req")
        sys.exit(EXIT_CODE_FAIL)
    try:
        entry = asyncio.run(_history_set(provider, day, total, per_req))
    except HistoryFloorError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except TransportError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(
        f"[green]✓[/] {entry.provider} {entry.day_key}: {_fmt_usd(entry.effective_total_usd)} "
        f"({fmt_history_source(entry.source)})"
    )


async def _activate(provider: str, amount: Optional[float], currency: Optional[str]) -> Optional[str]:
    """Returns None on success, else the reason activation did not happen."""
    prefs = _prefs()
    backend = _backend()
    configs = await backend.get_provider_configs()
    opened = build_pricing_draft(configs.get(provider) or ProviderConfig(name=provider), prefs, prefs.fx_table)
    draft = PricingDraft(
        mode=PricingMode.PACKAGE_TOTAL,
        amount_text="" if amount is None else str(amount),
        currency=normalize_currency_code(currency) if currency else opened.currency,
    )
    saver = PricingAutoSaver(backend, TimelineManager(backend, prefs), prefs)
    try:
        if await saver.confirm_package_activation(provider, draft):
            return None
        return saver.tracker.errors.get(provider) or f"no package amount known for {provider}"
    finally:
        saver.close()


@app.command("activate-package")
def activate_package(
    provider: str = typer.Argument(..., help="Provider"),
    amount: Optional[float] = typer.Option(None, "--amount", "-a", help="Package price per cycle"),
    currency: Optional[str] = typer.Option(
        None, "--currency", help="Currency of --amount (default: the provider's preferred currency)"
    ),
):
    """Switch a provider to package-total pricing."""
    if amount is not None and amount <= 0:
        console.print("[red]Error:[/] --amount must be > 0")
        sys.exit(EXIT_CODE_FAIL)
    try:
        failure = asyncio.run(_activate(provider, amount, currency))
    except ReconcileError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if failure is not None:
        console.print(f"[red]Error:[/] {failure}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Package pricing active for {provider}")


if __name__ == "__main__":
    app()
