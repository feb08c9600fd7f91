"""
Command-line interface for the job ETL pipeline.

This module provides the ``job-etl`` entry point: ``run`` drives the
pipeline over a recorded listings file, ``invocations`` browses the
extraction audit log.
"""

import asyncio
import dataclasses
import signal
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from job_etl.config import get_settings
from job_etl.enrichment import EnrichmentStage, OpenAIEmbedder
from job_etl.extraction import ExtractionClient, JsonInvocationLog, LiveCaller, ReplayCaller
from job_etl.models import PipelineMetrics, PipelineResult, PipelineRunOptions, PipelineStatus
from job_etl.pipeline import PipelineOrchestrator
from job_etl.sources import JsonFixtureSource, load_capabilities, load_taxonomies
from job_etl.storage import LocalJsonStore
from job_etl.utils.errors import ConfigurationError, MissingConfigurationError
from job_etl.utils.logging import setup_logging

# Initialize Typer app and Rich console
app = typer.Typer(
    name="job-etl",
    help="Job listing ETL: acquisition, capability enrichment and storage",
    add_completion=False,
)
console = Console()

DATE_FORMATS = ["%Y-%m-%d"]
MAX_ERRORS_SHOWN = 10


def _metrics_table(metrics: PipelineMetrics, status: PipelineStatus) -> Table:
    table = Table(title=f"Pipeline {status.value}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Batches", str(metrics.batches_completed))
    table.add_row("Scraped", str(metrics.scraped))
    table.add_row("Processed", str(metrics.processed))
    table.add_row("Stored", str(metrics.stored))
    table.add_row("Migrated to live", str(metrics.migrated_to_live))
    table.add_row("Failed scrapes", str(metrics.failed_scrapes))
    table.add_row("Failed processing", str(metrics.failed_processes))
    table.add_row("Failed storage", str(metrics.failed_storage))
    table.add_row("Failed migrations", str(metrics.failed_migrations))
    table.add_row("Errors", str(len(metrics.errors)))
    if metrics.total_duration is not None:
        table.add_row("Duration", f"{metrics.total_duration:.2f}s")
    return table


def _errors_table(metrics: PipelineMetrics) -> Table:
    table = Table(title=f"Errors ({len(metrics.errors)})")
    table.add_column("Stage", style="yellow")
    table.add_column("Item", style="dim")
    table.add_column("Error")
    for error in metrics.errors[:MAX_ERRORS_SHOWN]:
        table.add_row(error.stage.value, error.item_id or "-", error.error)
    return table


def _print_report(metrics: PipelineMetrics, status: PipelineStatus) -> None:
    console.print(_metrics_table(metrics, status))
    if metrics.errors:
        console.print(_errors_table(metrics))


def _install_stop_handlers(orchestrator: PipelineOrchestrator) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.stop)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            pass


@app.command()
def run(
    listings: Path = typer.Argument(..., help="JSON file of recorded listings"),
    capabilities: Optional[Path] = typer.Option(
        None, "--capabilities", "-c", help="JSON file with the capability framework"
    ),
    taxonomies: Optional[Path] = typer.Option(
        None, "--taxonomies", "-t", help="JSON file with taxonomy groups"
    ),
    store_dir: Path = typer.Option(Path("data"), "--store-dir", help="Directory of the local store"),
    max_records: Optional[int] = typer.Option(
        None, "--max-records", "-n", help="Maximum listings to process (<= 0 for unlimited)"
    ),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", min=1, help="Listings per batch"),
    skip_processing: bool = typer.Option(False, "--skip-processing", help="Skip enrichment"),
    skip_storage: bool = typer.Option(False, "--skip-storage", help="Skip storage"),
    migrate_to_live: bool = typer.Option(False, "--migrate-to-live", help="Promote stored batches to live"),
    continue_on_error: bool = typer.Option(
        False,
        "--continue-on-error/--fail-fast",
        help="Isolate per-listing failures instead of aborting",
    ),
    scrape_only: bool = typer.Option(False, "--scrape-only", help="Store raw listings without enrichment"),
    start_date: Optional[datetime] = typer.Option(None, "--start-date", formats=DATE_FORMATS),
    end_date: Optional[datetime] = typer.Option(None, "--end-date", formats=DATE_FORMATS),
    organizations: Optional[List[str]] = typer.Option(
        None, "--organization", "-o", help="Only listings from this organization (repeatable)"
    ),
    locations: Optional[List[str]] = typer.Option(
        None, "--location", "-l", help="Only listings in this location (repeatable)"
    ),
    replay: Optional[bool] = typer.Option(
        None, "--replay/--no-replay", help="Serve model answers from the invocation log"
    ),
):
    """Run the ETL pipeline."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file, dev_mode=settings.dev_mode)

    try:
        options = PipelineRunOptions(
            max_records=max_records,
            skip_processing=skip_processing,
            skip_storage=skip_storage,
            migrate_to_live=migrate_to_live,
            continue_on_error=continue_on_error,
            scrape_only=scrape_only,
            start_date=start_date.date() if start_date else None,
            end_date=end_date.date() if end_date else None,
            organizations=organizations or [],
            locations=locations or [],
        )
        options.validate_combination()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        raise typer.Exit(1)

    async def _run() -> PipelineResult:
        source = JsonFixtureSource(listings)
        store = None if options.skip_storage else LocalJsonStore(store_dir)

        enricher = None
        if not (options.skip_processing or options.scrape_only):
            if capabilities is None or taxonomies is None:
                raise ConfigurationError("Enrichment needs --capabilities and --taxonomies")
            reference_capabilities = load_capabilities(capabilities)
            reference_taxonomies = load_taxonomies(taxonomies)

            use_replay = settings.replay_invocations if replay is None else replay
            log = JsonInvocationLog(settings.invocation_log_dir)
            live = LiveCaller(api_key=settings.openai_api_key) if settings.openai_api_key else None
            if use_replay:
                caller = ReplayCaller(log, fallback=live)
            elif live is None:
                raise MissingConfigurationError("OPENAI_API_KEY")
            else:
                caller = live

            embedder = (
                OpenAIEmbedder(settings.embedding_model, api_key=settings.openai_api_key)
                if settings.openai_api_key
                else None
            )
            client = ExtractionClient(
                caller,
                log=log,
                policy=settings.retry_policy(),
                model=settings.openai_model,
                temperature=settings.openai_temperature,
                max_tokens=settings.openai_max_tokens,
            )
            enricher = EnrichmentStage(client, role_resolver=store, similar_roles=store, embedder=embedder)
            enricher.load_reference_sets(reference_capabilities, reference_taxonomies)

        config = settings.orchestrator_config()
        if batch_size:
            config = dataclasses.replace(config, batch_size=batch_size)

        orchestrator = PipelineOrchestrator(
            config,
            source,
            enricher=enricher,
            sink=store,
            migrator=store if options.migrate_to_live else None,
        )
        _install_stop_handlers(orchestrator)
        try:
            return await orchestrator.run(options)
        except ConfigurationError:
            raise
        except Exception:
            _print_report(orchestrator.get_metrics(), orchestrator.status)
            raise

    try:
        result = asyncio.run(_run())
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"[red]✗[/red] Pipeline failed: {e}")
        raise typer.Exit(1)

    _print_report(result.metrics, result.status)
    if result.status == PipelineStatus.FAILED:
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Pipeline {result.status.value}")


@app.command()
def invocations(
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Invocation log directory"),
    limit: int = typer.Option(20, "--limit", help="Maximum entries to show"),
):
    """List recorded extraction invocations."""
    settings = get_settings()
    log_dir = directory or settings.invocation_log_dir
    if not log_dir.exists():
        console.print(f"No invocation log at {log_dir}")
        return

    index = JsonInvocationLog(log_dir).load_index()
    if not index:
        console.print("No invocations recorded")
        return

    entries = sorted(index.items(), key=lambda item: item[1].get("timestamp", ""), reverse=True)

    table = Table(title=f"Invocations ({len(index)} requests)")
    table.add_column("Key", style="cyan")
    table.add_column("Action")
    table.add_column("Model", style="dim")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="right")
    table.add_column("Timestamp", style="dim")
    table.add_column("Prompt")

    for key, entry in entries[:limit]:
        status = entry.get("status", "")
        table.add_row(
            key,
            entry.get("action", ""),
            entry.get("model", ""),
            "[green]✓[/green]" if status == "success" else "[red]✗[/red]",
            str(entry.get("attempts", 1)),
            entry.get("timestamp", "")[:19],
            entry.get("prompt_preview", "")[:40],
        )

    console.print(table)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
