#!/usr/bin/env python3
"""
FeedRelay - Feed to Channel Relay
=================================

Main application entry point with CLI interface for management and runs.

Usage:
    python main.py --help                    # Show all commands
    python main.py check-config              # Validate configuration
    python main.py init-db                   # Initialize database
    python main.py run --once                # Run the pipeline once
    python main.py run --loop --interval 600 # Run the pipeline repeatedly
    python main.py stats                     # Show feed, item and cost statistics
"""

import sys
import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent))

from feedrelay.config.settings import get_settings
from feedrelay.database.schema import DatabaseSchema
from feedrelay.database.connection import get_db_manager
from feedrelay.processing.pipeline import build_pipeline
from feedrelay.processing.run_context import RunContext, RunReport
from feedrelay.storage.analysis_repository import AIAnalysisRepository
from feedrelay.storage.feed_state_repository import FeedStateRepository
from feedrelay.storage.publication_repository import PublicationRepository
from feedrelay.utils.logging import configure_application_logging, get_logger_for_component
from feedrelay.utils.exceptions import FeedRelayError, handle_exception, is_retryable_error

console = Console()
logger = get_logger_for_component("cli")


def _setup_logging(settings, debug: bool = False) -> None:
    configure_application_logging(
        log_level="DEBUG" if debug else settings.get_effective_log_level(),
        log_file=settings.logging.file_path,
        enable_console=settings.logging.console_logging,
        structured_logging=settings.logging.structured_logging,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )


@click.group(invoke_without_command=True)
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, debug):
    """FeedRelay - relay syndication feeds to messaging channels."""
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
def check_config():
    """Validate configuration and environment variables."""
    console.print("[bold blue]🔧 Checking FeedRelay Configuration[/bold blue]")

    try:
        settings = get_settings()

        table = Table(title="Configuration Status")
        table.add_column("Component", style="cyan")
        table.add_column("Status", style="green")
        table.add_column("Details")

        checks = [
            ("Database", _check_database_config),
            ("Logging", _check_logging_config),
            ("Telegram", _check_telegram_config),
            ("AI Analysis", _check_ai_config),
            ("Feeds", _check_feeds_config),
        ]

        all_passed = True
        for name, check_func in checks:
            status, details = check_func(settings)
            table.add_row(name, "✅ Valid" if status else "❌ Invalid", details)
            if not status:
                all_passed = False

        console.print(table)

        if all_passed:
            console.print("[bold green]✅ All configuration checks passed![/bold green]")
        else:
            console.print("[bold red]❌ Configuration validation failed[/bold red]")
            sys.exit(1)

    except FeedRelayError as e:
        console.print(f"[bold red]❌ Configuration error: {e}[/bold red]")
        sys.exit(1)


@cli.command()
def init_db():
    """Initialize database with schema."""
    console.print("[bold blue]🗄️ Initializing FeedRelay Database[/bold blue]")

    try:
        settings = get_settings()
        Path(settings.database.path).parent.mkdir(parents=True, exist_ok=True)

        schema = DatabaseSchema(settings.database.path)
        schema.create_tables()

        if not schema.verify_schema():
            console.print("[bold red]❌ Database schema verification failed[/bold red]")
            sys.exit(1)

        console.print("[bold green]✅ Database initialized successfully![/bold green]")

        info = get_db_manager(settings.database.path).get_database_info()
        info_table = Table(title="Database Information")
        info_table.add_column("Property", style="cyan")
        info_table.add_column("Value", style="green")
        info_table.add_row("Database Path", settings.database.path)
        info_table.add_row("Size", f"{info['database_size_mb']:.2f} MB")
        for table_name, count in info['table_counts'].items():
            info_table.add_row(f"Rows in {table_name}", str(count))
        console.print(info_table)

    except FeedRelayError as e:
        console.print(f"[bold red]❌ Database initialization error: {e}[/bold red]")
        sys.exit(1)


@cli.command()
@click.option('--once/--loop', default=True, help='Run a single pass or keep running')
@click.option('--interval', default=600, show_default=True, help='Seconds between passes in loop mode')
@click.option('--max-iterations', type=int, default=None, help='Stop after this many passes in loop mode')
@click.option('--max-items', type=int, default=None, help='Stop accepting new items after this many per pass')
@click.option('--json-report', is_flag=True, help='Print the run report as JSON')
@click.pass_context
def run(ctx, once, interval, max_iterations, max_items, json_report):
    """Fetch feeds, analyze new items and publish them."""
    try:
        settings = get_settings()
        _setup_logging(settings, ctx.obj.get("debug", False))
        settings.validate_configuration()
        DatabaseSchema(settings.database.path).create_tables()
    except FeedRelayError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        sys.exit(1)

    cap = max_items if max_items is not None else settings.processing.max_items_per_run
    iterations = 1 if once else max_iterations

    try:
        asyncio.run(_run_passes(settings, cap, iterations, interval, json_report))
    except FeedRelayError as e:
        console.print(f"[bold red]❌ Run failed: {e}[/bold red]")
        sys.exit(1)


async def _run_passes(
    settings, max_items: Optional[int], iterations: Optional[int], interval: int, json_report: bool = False
) -> int:
    """Run pipeline passes until the iteration limit or a stop signal."""
    pipeline = build_pipeline(settings)
    stop_event = asyncio.Event()
    current: dict = {}

    def request_stop():
        stop_event.set()
        if current.get('context'):
            current['context'].request_stop("signal received")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except (NotImplementedError, RuntimeError):
            pass

    iteration = 0
    try:
        if pipeline.sender is not None:
            await pipeline.sender.start()

        while not stop_event.is_set():
            iteration += 1
            context = RunContext(max_items=max_items)
            current['context'] = context
            try:
                report = await pipeline.run(context)
            except Exception as e:
                error = handle_exception(e, logger, f"pipeline run {context.run_id}")
                if iterations == 1 or not is_retryable_error(error):
                    if error is e:
                        raise
                    raise error from e
                console.print(f"[yellow]⚠️ Run {context.run_id} failed, retrying next pass: {error}[/yellow]")
            else:
                if json_report:
                    console.print_json(json.dumps(report.to_dict(), default=str))
                else:
                    _print_report(report)

            if iterations is not None and iteration >= iterations:
                break

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
    finally:
        await pipeline.close()

    return iteration


def _print_report(report: RunReport) -> None:
    title = f"Run {report.run_id} ({report.duration_seconds:.1f}s)"
    if report.stopped_reason:
        title += f" - {report.stopped_reason}"

    feeds_table = Table(title=title)
    feeds_table.add_column("Feed", style="cyan")
    feeds_table.add_column("Status", style="green")
    feeds_table.add_column("Candidates", style="yellow")
    feeds_table.add_column("New")
    feeds_table.add_column("Duplicates")
    feeds_table.add_column("Rejected", style="red")

    for summary in report.feeds.values():
        status = ("✅ " if summary.success else "⏭️ " if summary.skipped else "❌ ") + summary.status
        feeds_table.add_row(
            str(summary.feed_id), status, str(summary.candidates),
            str(summary.stored), str(summary.duplicates), str(summary.rejected),
        )
    console.print(feeds_table)

    console.print(
        f"📊 Analyses: {report.analyses_succeeded} succeeded, {report.analyses_failed} failed, "
        f"{report.analyses_skipped} skipped (net cost ${report.net_cost})"
    )
    for target, counts in sorted(report.publications.items()):
        console.print(
            f"📨 {target}: {counts.sent} sent, {counts.failed} failed, {counts.skipped} skipped"
        )


@cli.command()
def stats():
    """Show feed health, analysis costs and publication counts."""
    console.print("[bold blue]📊 FeedRelay Statistics[/bold blue]")

    try:
        settings = get_settings()
        db_manager = get_db_manager(settings.database.path, settings.database.pool_size)

        feeds_table = Table(title="Feed State")
        feeds_table.add_column("Status", style="green")
        feeds_table.add_column("Feed", style="cyan")
        feeds_table.add_column("URL", style="blue")
        feeds_table.add_column("Failures", style="red")
        feeds_table.add_column("Last Success")
        feeds_table.add_column("Backoff Until")

        for state in FeedStateRepository(db_manager).get_all_states():
            status = "🟢" if state.is_healthy() else "🟡" if state.failure_count < 5 else "🔴"
            url = state.url or ""
            feeds_table.add_row(
                status,
                str(state.feed_id),
                url[:37] + "..." if len(url) > 40 else url,
                str(state.failure_count),
                str(state.last_fetch_at) if state.last_fetch_at else "Never",
                str(state.backoff_until) if state.is_in_backoff() else "-",
            )
        console.print(feeds_table)

        cost = AIAnalysisRepository(db_manager).get_cost_summary()
        cost_table = Table(title="AI Analysis Cost")
        cost_table.add_column("Model", style="cyan")
        cost_table.add_column("Analyses")
        cost_table.add_column("Succeeded", style="green")
        cost_table.add_column("Tokens")
        cost_table.add_column("Gross $")
        cost_table.add_column("Net $", style="yellow")
        for model, row in cost['by_model'].items():
            cost_table.add_row(
                model,
                str(row['analyses']),
                str(row['succeeded']),
                f"{row['tokens_prompt'] or 0}+{row['tokens_completion'] or 0}",
                f"{row['gross'] or 0:.8f}",
                f"{row['net'] or 0:.8f}",
            )
        console.print(cost_table)
        console.print(
            f"Total: {cost['total_analyses']} analyses, net ${cost['total_net']:.8f}"
        )

        pub_table = Table(title="Publications")
        pub_table.add_column("Target", style="cyan")
        pub_table.add_column("Pending", style="yellow")
        pub_table.add_column("Sent", style="green")
        pub_table.add_column("Failed", style="red")
        for target, counts in sorted(PublicationRepository(db_manager).get_stats().items()):
            pub_table.add_row(
                target, str(counts['pending']), str(counts['sent']), str(counts['failed'])
            )
        console.print(pub_table)

    except FeedRelayError as e:
        console.print(f"[bold red]❌ Error showing statistics: {e}[/bold red]")
        sys.exit(1)


# Helper functions for configuration checks
def _check_database_config(settings) -> tuple[bool, str]:
    """Check database configuration."""
    try:
        Path(settings.database.path).parent.mkdir(parents=True, exist_ok=True)
        return True, f"Path: {settings.database.path}"
    except OSError as e:
        return False, str(e)


def _check_logging_config(settings) -> tuple[bool, str]:
    """Check logging configuration."""
    try:
        if settings.logging.file_path:
            Path(settings.logging.file_path).parent.mkdir(parents=True, exist_ok=True)
        return True, f"Level: {settings.logging.level.value}, Console: {settings.logging.console_logging}"
    except OSError as e:
        return False, str(e)


def _check_telegram_config(settings) -> tuple[bool, str]:
    """Check Telegram configuration."""
    if not settings.telegram.targets:
        return False, "No publication targets configured"
    return True, f"Targets: {', '.join(sorted(settings.telegram.targets))}"


def _check_ai_config(settings) -> tuple[bool, str]:
    """Check AI analysis configuration."""
    if not settings.processing.analysis_enabled:
        return True, "Analysis disabled"
    if not settings.ai.openrouter_api_key:
        return False, "OpenRouter API key not set"
    if not settings.ai.models:
        return False, "No models configured"
    return True, f"Models: {' → '.join(settings.ai.models)}"


def _check_feeds_config(settings) -> tuple[bool, str]:
    """Check feed list."""
    try:
        feeds = settings.get_feed_configs()
    except FeedRelayError as e:
        return False, str(e)
    if not feeds:
        return False, "No feeds configured"
    enabled = sum(1 for feed in feeds if feed.enabled)
    return True, f"{len(feeds)} feeds ({enabled} enabled)"


if __name__ == "__main__":
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]👋 FeedRelay interrupted by user[/yellow]")
        sys.exit(130)
