"""Command Line Interface for Clinport.

This module provides a Typer CLI for detecting, analyzing and importing
clinical data files into the configured DuckDB store.

Commands:
    detect       Print the detected format of a file
    analyze      Preview counts and the recommended import strategy
    import       Import a file (optionally into an existing patient/visit)
    add-concept  Register a concept code in the concept dictionary
    info         Display configuration
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from clinport import __version__
from clinport.domain.enums import DuplicateStrategy
from clinport.domain.report import ImportIssue
from clinport.domain.ports import StorageError
from clinport.infrastructure.logging_config import setup_logging
from clinport.infrastructure.settings import settings
from clinport.main import ImportOptions, ImportService, create_storage_adapter

app = typer.Typer(
    name="clinport",
    help="Clinport: clinical data import pipeline",
    add_completion=False
)
console = Console()


def create_storage_adapter_cli():
    """Create storage adapter based on configuration (CLI wrapper)."""
    try:
        return create_storage_adapter(settings.db_config)
    except (StorageError, ValueError) as e:
        console.print(f"[red]✗[/red] Failed to create storage adapter: {str(e)}")
        raise typer.Exit(code=1)


def _print_issues(title: str, issues: list[ImportIssue], style: str) -> None:
    if not issues:
        return
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Code", style=style)
    table.add_column("Message")
    table.add_column("Context", style="dim")
    for issue in issues:
        context = ", ".join(f"{key}={value}" for key, value in issue.context.items())
        table.add_row(issue.code, issue.message, context)
    console.print(table)


@app.command()
def detect(
    input_file: Path = typer.Argument(..., help="Input file path", exists=True, dir_okay=False),
) -> None:
    """Print the detected format of a file."""
    service = ImportService(create_storage_adapter_cli(), config=settings.import_config)
    try:
        detected = service.detect_format(input_file.read_bytes(), input_file.name)
    finally:
        service.store.close()
    console.print(detected.value)


@app.command()
def analyze(
    input_file: Path = typer.Argument(..., help="Input file path", exists=True, dir_okay=False),
) -> None:
    """Preview a file without importing it.

    Examples:
        clinport analyze exports/study.csv
    """
    service = ImportService(create_storage_adapter_cli(), config=settings.import_config)
    try:
        analysis = service.analyze(input_file.read_bytes(), input_file.name)
    finally:
        service.store.close()

    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Format:", analysis.format.value)
    for name, count in analysis.counts.items():
        summary_table.add_row(f"{name.capitalize()}:", f"{count:,}")
    if analysis.recommended_strategy:
        summary_table.add_row("Recommended strategy:", analysis.recommended_strategy.value)
    console.print(summary_table)

    _print_issues("Errors", analysis.errors, "red")
    _print_issues("Warnings", analysis.warnings, "yellow")
    if analysis.errors and not analysis.counts:
        raise typer.Exit(code=1)


@app.command("import")
def import_file(
    input_file: Path = typer.Argument(..., help="Input file path (CSV, JSON, clinical document or survey HTML)", exists=True, dir_okay=False),
    duplicate_strategy: Optional[DuplicateStrategy] = typer.Option(None, "--duplicate-strategy", "-d", help="Policy for patients that already exist"),
    target_patient: Optional[int] = typer.Option(None, "--target-patient", help="Existing PATIENT_NUM to import into (requires --target-visit)"),
    target_visit: Optional[int] = typer.Option(None, "--target-visit", help="Existing ENCOUNTER_NUM to import into (requires --target-patient)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Import a clinical data file.

    With --target-patient and --target-visit every patient and visit in the
    file is merged into that existing pair.

    Examples:
        clinport import exports/study.csv
        clinport import exports/study.json --duplicate-strategy update
        clinport import survey.html --target-patient 12 --target-visit 40
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        console.print("[dim]Verbose logging enabled[/dim]")

    if (target_patient is None) != (target_visit is None):
        console.print("[red]✗[/red] --target-patient and --target-visit must be given together")
        raise typer.Exit(code=1)

    console.print(f"\n[bold blue]Clinport Import[/bold blue]")
    console.print(f"[dim]Input file:[/dim] {input_file}")
    console.print(f"[dim]Database path:[/dim] {settings.get_db_path()}")
    console.print()

    import_config = settings.import_config
    options = ImportOptions(duplicate_strategy=duplicate_strategy or import_config.duplicate_strategy)
    service = ImportService(create_storage_adapter_cli(), config=import_config)
    try:
        with console.status("[bold green]Importing..."):
            if target_patient is not None:
                result = asyncio.run(service.import_for_target(
                    input_file.read_bytes(), input_file.name, target_patient, target_visit, options
                ))
            else:
                result = asyncio.run(service.import_content(input_file.read_bytes(), input_file.name, options))
    finally:
        service.store.close()

    if result.persistence is not None:
        persistence = result.persistence
        console.print("[bold]Import Summary:[/bold]")
        summary_table = Table(show_header=True, header_style="bold")
        summary_table.add_column("Entity", style="cyan")
        for column in ("Created", "Updated", "Duplicates", "Skipped", "Failed"):
            summary_table.add_column(column, justify="right")
        for name, counts in (
            ("Patients", persistence.patients),
            ("Visits", persistence.visits),
            ("Observations", persistence.observations),
        ):
            summary_table.add_row(
                name,
                f"{counts.created:,}",
                f"{counts.updated:,}",
                f"{counts.duplicates:,}",
                f"{counts.skipped:,}",
                f"[red]{counts.failed:,}[/red]" if counts.failed else f"{counts.failed:,}",
            )
        console.print(summary_table)
        if persistence.default_visits_created:
            console.print(f"[dim]Default visits created:[/dim] {persistence.default_visits_created}")

    _print_issues("Errors", result.errors, "red")
    _print_issues("Warnings", result.warnings, "yellow")

    if not result.success:
        console.print(f"\n[red]✗[/red] Import failed with {len(result.errors)} errors")
        raise typer.Exit(code=1)
    console.print(f"\n[green]✓[/green] Import completed successfully")


@app.command("add-concept")
def add_concept(
    concept_cd: str = typer.Argument(..., help="Concept code, e.g. 'LID: 8302-2'"),
    name: Optional[str] = typer.Argument(None, help="Display name"),
) -> None:
    """Register a concept code so observations using it are imported."""
    storage = create_storage_adapter_cli()
    try:
        result = storage.register_concept(concept_cd, name)
    finally:
        storage.close()

    if not result.is_success():
        console.print(f"[red]✗[/red] Failed to register concept: {result.error}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Registered concept {concept_cd}")


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    import_config = settings.import_config
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Version:", __version__)
    info_table.add_row("Database Type:", settings.db_config.db_type)
    info_table.add_row("Database Path:", settings.get_db_path())
    info_table.add_row("Max Input Size:", import_config.max_input_size)
    info_table.add_row("Duplicate Strategy:", import_config.duplicate_strategy.value)
    info_table.add_row("Default Visit Location:", import_config.default_location_cd)
    info_table.add_row("Log Level:", settings.log_level)

    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information"),
) -> None:
    """Clinport: clinical data import pipeline."""
    setup_logging(use_json=settings.log_json, log_level=settings.log_level)
    if version:
        console.print(f"Clinport v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
