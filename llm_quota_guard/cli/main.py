"""
CLI interface for LLM Quota Guard.

Provides command-line access to usage stats, limits, admission checks and
quota-governed streaming completions.
"""

import asyncio
import contextlib
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from llm_quota_guard.config.loader import Settings, load_settings_or_default
from llm_quota_guard.core.coordinator import StreamChunk, StreamError, StreamEvent, StreamSettled
from llm_quota_guard.core.errors import FailureKind
from llm_quota_guard.sdk.service import QuotaGuardService
from llm_quota_guard.storage.repository import SQLiteKeyValueStore, initialize_schema

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

PERIOD_CHOICES = ("daily", "monthly", "lifetime")


def _configure_logging(verbose: bool) -> None:
    package_logger = logging.getLogger("llm_quota_guard")
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if not any(isinstance(h, RichHandler) for h in package_logger.handlers):
        package_logger.addHandler(RichHandler(console=err_console, show_path=False))


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


def _service(ctx: typer.Context) -> QuotaGuardService:
    settings = _settings(ctx)
    return QuotaGuardService(settings, store=SQLiteKeyValueStore(settings.db_path))


@contextlib.asynccontextmanager
async def _running(ctx: typer.Context):
    """Yield a started service and close it afterwards."""
    service = _service(ctx)
    try:
        await service.start()
        yield service
    finally:
        await service.aclose()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML settings file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    ),
):
    """LLM Quota Guard CLI."""
    _configure_logging(verbose)
    ctx.obj = {"settings": load_settings_or_default(config)}
    if ctx.invoked_subcommand is None:
        console.print("LLM Quota Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the usage database."""
    try:
        initialize_schema(_settings(ctx).db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(
    ctx: typer.Context,
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print raw JSON instead of a table"
    ),
):
    """Show usage against limits for every period."""
    async def run():
        async with _running(ctx) as service:
            return await service.get_usage_stats()

    try:
        usage_stats = asyncio.run(run())
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if as_json:
        console.print_json(json.dumps(usage_stats))
        sys.exit(EXIT_CODE_PASS)

    _display_stats(usage_stats)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def check(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Prompt text to check"),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        "-m",
        help="Model to check against (defaults to the configured model)"
    ),
    completion_tokens: Optional[int] = typer.Option(
        None,
        "--completion-tokens",
        "-t",
        help="Estimated completion tokens"
    ),
):
    """
    Check whether a request would be admitted.

    This is a read-only operation; nothing is recorded.
    """
    async def run():
        async with _running(ctx) as service:
            return await service.check_admission(prompt, model, completion_tokens)

    try:
        decision = asyncio.run(run())
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if decision.allowed:
        usage = decision.estimated_usage
        console.print(
            f"[green]✓[/] Allowed: ~{usage.total_tokens} tokens "
            f"({usage.prompt_tokens} prompt + {usage.completion_tokens} completion), "
            f"estimated {_format_currency(decision.estimated_cost)}"
        )
        sys.exit(EXIT_CODE_PASS)

    console.print(f"[red]✗[/] Denied ({decision.kind.value}): {decision.reason}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def reset(
    ctx: typer.Context,
    period: str = typer.Argument(..., help="daily, monthly or lifetime"),
):
    """Reset usage counters for one period."""
    if period not in PERIOD_CHOICES:
        console.print(f"[red]Error:[/] Invalid period: {period} (expected one of {', '.join(PERIOD_CHOICES)})")
        sys.exit(EXIT_CODE_FAIL)

    async def run():
        async with _running(ctx) as service:
            await service.reset_usage(period)

    try:
        asyncio.run(run())
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] {period.capitalize()} usage reset")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def limits(
    ctx: typer.Context,
    assignments: Optional[List[str]] = typer.Option(
        None,
        "--set",
        "-s",
        help="Update a limit, e.g. daily.tokens=50000 or per_minute.requests=none"
    ),
):
    """Show or update quota limits."""
    try:
        partial = _parse_assignments(assignments or [])
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    async def run():
        async with _running(ctx) as service:
            applied = await service.update_quota_policy(partial) if partial else True
            return applied, service.policy

    try:
        applied, policy = asyncio.run(run())
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not applied:
        console.print("[red]Error:[/] Invalid limits, current limits kept")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Quota Limits")
    table.add_column("Scope")
    table.add_column("Limit")
    table.add_column("Value", justify="right")
    for section, values in policy.to_dict().items():
        for name, value in values.items():
            table.add_row(section, name, "unlimited" if value is None else str(value))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command(name="export")
def export_command(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write to this file instead of stdout"
    ),
):
    """Export usage, limits and pricing as JSON."""
    async def run():
        async with _running(ctx) as service:
            return await service.export_data()

    try:
        data = asyncio.run(run())
        payload = json.dumps(data, indent=2)
        if output:
            Path(output).write_text(payload, encoding="utf-8")
            console.print(f"[green]✓[/] Exported to {output}")
        else:
            print(payload)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command(name="import")
def import_command(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="JSON file produced by export"),
):
    """Import usage and limits from an export file."""
    async def run(data):
        async with _running(ctx) as service:
            await service.import_data(data)

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        asyncio.run(run(data))
    except Exception as e:
        console.print(f"[red]Error importing data:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Imported {path}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ask(
    ctx: typer.Context,
    message: str = typer.Argument(..., help="Message to send"),
    page: Optional[str] = typer.Option(
        None,
        "--page",
        "-p",
        help="Markdown file used as page content"
    ),
    no_stream: bool = typer.Option(
        False,
        "--no-stream",
        help="Wait for the full response instead of streaming"
    ),
):
    """
    Ask a question, streaming the answer as it arrives.

    Press Ctrl-C to abort; usage accrued so far is still recorded.
    """
    context = None
    if page:
        try:
            content = Path(page).read_text(encoding="utf-8")
        except OSError as e:
            console.print(f"[red]Error:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
        context = {
            "title": Path(page).stem,
            "url": Path(page).resolve().as_uri(),
            "content_type": "article",
            "word_count": len(content.split()),
            "content": content,
        }

    try:
        if no_stream:
            exit_code = asyncio.run(_ask_once(ctx, message, context))
        else:
            exit_code = asyncio.run(_ask_streaming(ctx, message, context))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(exit_code)


async def _ask_once(ctx: typer.Context, message: str, context) -> int:
    async with _running(ctx) as service:
        result = await service.generate("cli", message, context)

    if not result.success:
        _print_failure(result.kind, result.error, result.retry_after)
        return EXIT_CODE_FAIL
    console.print(result.text, markup=False, highlight=False)
    _print_usage(result.usage.total_tokens, result.cost)
    return EXIT_CODE_PASS


async def _ask_streaming(ctx: typer.Context, message: str, context) -> int:
    def on_event(event: StreamEvent) -> None:
        if isinstance(event, StreamChunk):
            console.print(event.delta, end="", markup=False, highlight=False)

    async with _running(ctx) as service:
        stream_id = await service.start_stream("cli", message, context, listener=on_event)
        loop = asyncio.get_running_loop()
        # add_signal_handler is unavailable on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, service.cancel_stream, stream_id)
        try:
            event = await service.wait_stream(stream_id)
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)

    console.print()
    if isinstance(event, StreamSettled):
        _print_usage(event.usage.total_tokens, event.cost)
        return EXIT_CODE_PASS

    if isinstance(event, StreamError):
        _print_failure(event.kind, event.message, event.retry_after)
        if event.usage is not None:
            _print_usage(event.usage.total_tokens, None)
    return EXIT_CODE_FAIL


def _parse_assignments(assignments: List[str]) -> dict:
    """Turn ``section.key=value`` strings into a partial policy mapping.

    Raises:
        ValueError: If an assignment is malformed
    """
    partial: dict = {}
    for assignment in assignments:
        target, sep, raw = assignment.partition("=")
        section, dot, key = target.strip().partition(".")
        if not sep or not dot or not section or not key:
            raise ValueError(f"Expected section.key=value, got '{assignment}'")
        raw = raw.strip()
        if raw.lower() in ("none", "null", "unlimited"):
            value = None
        else:
            try:
                value = int(raw)
            except ValueError:
                try:
                    value = float(raw)
                except ValueError:
                    raise ValueError(f"Invalid number for {target}: '{raw}'")
        partial.setdefault(section, {})[key] = value
    return partial


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.4f}" if 0 < abs(amount) < 0.01 else f"${abs(amount):,.2f}"


def _format_limit(value, currency: bool = False) -> str:
    if value is None:
        return "unlimited"
    return _format_currency(value) if currency else f"{value:,}"


def _print_failure(kind: Optional[FailureKind], message: str, retry_after) -> None:
    label = kind.value if kind is not None else "error"
    if kind == FailureKind.CANCELLED:
        console.print(f"[yellow]Aborted:[/] {message}")
    else:
        console.print(f"[red]Failed ({label}):[/] {message}")
    if retry_after:
        console.print(f"Retry after {retry_after:g} s")


def _print_usage(total_tokens: int, cost: Optional[float]) -> None:
    if cost is None:
        console.print(f"[dim]{total_tokens} tokens recorded[/]")
    else:
        console.print(f"[dim]{total_tokens} tokens, {_format_currency(cost)}[/]")


def _display_stats(usage_stats: dict) -> None:
    """Display usage stats as a table, one row per period."""
    table = Table(title="Usage")
    table.add_column("Period")
    table.add_column("Tokens", justify="right")
    table.add_column("Requests", justify="right")
    table.add_column("Cost", justify="right")

    for period in PERIOD_CHOICES:
        entry = usage_stats[period]
        usage = entry["usage"]
        limits = entry["limits"] or {}
        percentages = entry["percentages"]

        def cell(value: str, key: str, currency: bool = False) -> str:
            if key not in limits:
                return value
            text = f"{value} / {_format_limit(limits[key], currency)}"
            if key in percentages:
                text += f" ({percentages[key]:.1f}%)"
            return text

        table.add_row(
            period,
            cell(f"{usage['tokens']['total']:,}", "tokens"),
            cell(f"{usage['requests']:,}", "requests"),
            cell(_format_currency(usage["cost"]), "cost", currency=True),
        )

    console.print(table)
    console.print(f"Requests in the last minute: {usage_stats['current_minute_requests']}")


if __name__ == "__main__":
    app()
