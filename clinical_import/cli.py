"""Command Line Interface for the Clinical-Import engine.

Runs the import pipeline on a single file and prints a summary table, or
detects a file's format without importing it.

Examples:
    clinical-import import data/export.csv
    clinical-import import data/bundle.json --db-path data/import.duckdb --duplicate-handling update
    clinical-import import survey.html --patient-cd P001 --json
    clinical-import detect data/export.csv
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from clinical_import.adapters.detectors import detect
from clinical_import.adapters.storage import DuckDBStorageAdapter
from clinical_import.domain.enums import DuplicateHandling, TransactionMode
from clinical_import.domain.ports import StorageError
from clinical_import.domain.results import ImportResult
from clinical_import.infrastructure.config_manager import DatabaseConfig
from clinical_import.infrastructure.logging_config import setup_logging
from clinical_import.infrastructure.settings import settings
from clinical_import.services.orchestrator import ImportOptions, ImportOrchestrator

app = typer.Typer(
    name="clinical-import",
    help="Clinical-Import: multi-format clinical data import engine",
    add_completion=False,
)
console = Console()


async def run_import(
    raw: bytes,
    filename: str,
    options: ImportOptions,
    db_path: Optional[str],
    store: bool,
) -> ImportResult:
    """Import one file, persisting to DuckDB when ``store`` is set."""
    storage: Optional[DuckDBStorageAdapter] = None
    if store:
        db_config = DatabaseConfig(db_path=db_path) if db_path else settings.db_config
        storage = DuckDBStorageAdapter(db_config=db_config)
        schema = await storage.initialize_schema()
        if schema.is_failure():
            raise StorageError(schema.error or "schema initialization failed", operation="initialize_schema")
    try:
        orchestrator = ImportOrchestrator(config=settings.import_config, storage=storage)
        return await orchestrator.import_file(raw, filename, options)
    finally:
        if storage is not None:
            await storage.close()


def print_result(result: ImportResult) -> None:
    status = "[green]✓ Import succeeded[/green]" if result.success else "[red]✗ Import failed[/red]"
    console.print(f"\n{status} [dim]({result.format.value})[/dim]")

    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Patients:", f"{result.statistics.get('patientCount', 0):,}")
    summary_table.add_row("Visits:", f"{result.statistics.get('visitCount', 0):,}")
    summary_table.add_row("Observations:", f"{result.statistics.get('observationCount', 0):,}")
    summary_table.add_row("Errors:", f"[red]{len(result.errors)}[/red]" if result.errors else "0")
    summary_table.add_row("Warnings:", f"[yellow]{len(result.warnings)}[/yellow]" if result.warnings else "0")
    if result.persistence is not None:
        p = result.persistence
        summary_table.add_row(
            "Stored:",
            f"{p.patients.inserted} patients, {p.visits.inserted} visits, {p.observations.inserted} observations",
        )
        summary_table.add_row("Duplicates:", f"{p.duplicates:,}")
    console.print(summary_table)

    issues = [("error", i) for i in result.errors] + [("warning", i) for i in result.warnings]
    if issues:
        issue_table = Table(show_header=True, header_style="bold")
        issue_table.add_column("Level")
        issue_table.add_column("Code", style="cyan")
        issue_table.add_column("Row", justify="right")
        issue_table.add_column("Field")
        issue_table.add_column("Message")
        for level, issue in issues:
            issue_table.add_row(
                f"[red]{level}[/red]" if level == "error" else f"[yellow]{level}[/yellow]",
                issue.code,
                str(issue.row) if issue.row is not None else "",
                issue.field or "",
                issue.message,
            )
        console.print(issue_table)


@app.command("import")
def import_file(
    input_file: Path = typer.Argument(..., help="File to import (CSV, JSON, HL7 or HTML)", exists=True, dir_okay=False),
    store: bool = typer.Option(True, "--store/--no-store", help="Persist the import to DuckDB"),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="DuckDB file (defaults to CI_DB_PATH or in-memory)"),
    duplicate_handling: Optional[DuplicateHandling] = typer.Option(None, "--duplicate-handling", "-d", help="skip, update or error"),
    transaction_mode: Optional[TransactionMode] = typer.Option(None, "--transaction-mode", "-t", help="single, batch or none"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Commands per transaction in batch mode"),
    no_validate: bool = typer.Option(False, "--no-validate", help="Skip business-rule validation"),
    patient_cd: Optional[str] = typer.Option(None, "--patient-cd", help="Patient code for surveys without identity"),
    as_json: bool = typer.Option(False, "--json", help="Print the result envelope as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_json: bool = typer.Option(False, "--log-json", help="Emit JSON log lines"),
) -> None:
    """Import a clinical data file.

    Examples:
        clinical-import import data/export.csv
        clinical-import import data/bundle.json --duplicate-handling update
        clinical-import import survey.html --patient-cd P001 --no-store
    """
    setup_logging(use_json=log_json or settings.log_json, log_level="DEBUG" if verbose else settings.log_level)

    options = ImportOptions(
        duplicate_handling=duplicate_handling,
        transaction_mode=transaction_mode,
        batch_size=batch_size,
        validate_data=False if no_validate else None,
        patient_cd=patient_cd,
    )

    if not as_json:
        console.print(f"\n[bold blue]{settings.app_name}[/bold blue]")
        console.print(f"[dim]Input file:[/dim] {input_file}")
        if store:
            console.print(f"[dim]Database path:[/dim] {db_path or settings.get_db_path()}")

    try:
        raw = input_file.read_bytes()
        result = asyncio.run(run_import(raw, input_file.name, options, db_path, store))
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠[/yellow] Import interrupted by user")
        raise typer.Exit(code=130)
    except (OSError, StorageError, ValueError) as e:
        console.print(f"\n[red]✗[/red] Import failed: {str(e)}")
        if verbose:
            console.print_exception()
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print_result(result)

    raise typer.Exit(code=0 if result.success else 1)


@app.command("detect")
def detect_format(
    input_file: Path = typer.Argument(..., help="File to inspect", exists=True, dir_okay=False),
) -> None:
    """Detect a file's import format without importing it."""
    detection = detect(input_file.read_bytes(), input_file.name)

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Format:", detection.format.value)
    if detection.delimiter:
        info_table.add_row("Delimiter:", repr(detection.delimiter))
    if detection.csv_variant:
        info_table.add_row("CSV variant:", detection.csv_variant.value)
    info_table.add_row("Reason:", detection.reason)
    console.print(info_table)

    if not detection.is_known:
        raise typer.Exit(code=1)


@app.command()
def info() -> None:
    """Display configuration in effect."""
    console.print("[bold blue]System Information[/bold blue]\n")
    import_config = settings.import_config

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", f"{settings.app_name} v{settings.app_version}")
    info_table.add_row("Database Type:", settings.db_config.db_type)
    info_table.add_row("Database Path:", settings.get_db_path())
    info_table.add_row("Max File Size:", f"{import_config.max_file_size / (1024 * 1024):.0f} MB")
    info_table.add_row("Duplicate Handling:", import_config.duplicate_handling.value)
    info_table.add_row("Transaction Mode:", import_config.transaction_mode.value)
    info_table.add_row("Batch Size:", str(import_config.batch_size))
    info_table.add_row("Retry Attempts:", str(import_config.retry_max_attempts))
    info_table.add_row("HL7 Assignment:", import_config.hl7_assignment.value)
    info_table.add_row("Formats:", ", ".join(f.value for f in import_config.supported_formats))
    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information"),
) -> None:
    """Clinical-Import: multi-format clinical data import engine."""
    if version:
        console.print(f"{settings.app_name} v{settings.app_version}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
