"""Command-line interface for the Mafia Data Platform."""

import json
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import ImportConfig, load_import_config
from .database import DatabaseConfig, create_db_and_tables, get_engine
from .models import SkippedStatus
from .pipeline.control import ImportControl
from .pipeline.errors import ImportConflictError, InvalidPhaseError, NoImportRunningError

app = typer.Typer(
    name="mafia-etl",
    help="Mafia Rating Data Platform - Import CLI",
    add_completion=False,
)
import_app = typer.Typer(help="Run and manage imports", add_completion=False)
app.add_typer(import_app, name="import")

console = Console()

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Configure logging for every command."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _build_control(config_path: Optional[str]) -> ImportControl:
    base = load_import_config(config_path) if config_path else None
    engine = get_engine(DatabaseConfig.from_env())
    return ImportControl(engine, config=ImportConfig.from_env(base))


ConfigOption = typer.Option(None, "--config", "-c", help="Path to import configuration YAML")


# ==============================================================================
# Database
# ==============================================================================


@app.command("init-db")
def init_db():
    """Create all tables."""
    config = DatabaseConfig.from_env()
    console.print(f"[bold green]Creating tables on[/bold green] {config!r}")
    create_db_and_tables(get_engine(config))
    console.print("[green]✓ Tables created[/green]")


# ==============================================================================
# Import
# ==============================================================================


@import_app.command("start")
def import_start(
    force_restart: bool = typer.Option(False, "--force-restart", help="Discard any stored checkpoint"),
    wait: bool = typer.Option(
        False, "--wait", help="Print the per-phase report and exit non-zero unless the import completed"
    ),
    config: Optional[str] = ConfigOption,
):
    """Start a full import.

    The worker thread lives in this process, so the command stays in the
    foreground until the run ends. Ctrl+C cancels and saves a checkpoint.
    """
    control = _build_control(config)

    try:
        response = control.start(force_restart=force_restart)
    except ImportConflictError as e:
        console.print(f"[red]{e}[/red]")
        if e.progress:
            console.print(f"  Progress: {e.progress.get('progress')}%  {e.progress.get('currentOperation') or ''}")
        raise typer.Exit(1)

    console.print(f"[bold green]✓ Import started:[/bold green] {response['syncLogId']}")
    console.print(f"  Estimated duration: {response['estimatedDuration']}")

    try:
        result = control.wait(response["syncLogId"])
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelling import... (saving checkpoint)[/yellow]")
        control.shutdown()
        result = control.wait(response["syncLogId"])

    if result is None:
        return

    status = result.status.value if result.status else "UNKNOWN"
    style = "green" if status == "COMPLETED" else "yellow" if status == "CANCELLED" else "red"
    console.print(f"\n[{style}]Import {status}[/{style}] after {result.duration_seconds:.0f}s")
    console.print(f"  Records processed: {result.records_processed}")
    if result.error:
        console.print(f"  [red]{result.error}[/red]")

    if not wait:
        return

    phases = Table(title="Phases")
    phases.add_column("Phase", style="cyan")
    phases.add_column("Units", justify="right")
    phases.add_column("Processed", justify="right")
    phases.add_column("Skipped", justify="right")
    phases.add_column("Records", justify="right")
    for phase in result.phases:
        phases.add_row(
            phase.phase.value,
            str(phase.units_total),
            str(phase.units_processed),
            str(phase.units_skipped),
            str(phase.records_written),
        )
    console.print(phases)

    if status != "COMPLETED":
        raise typer.Exit(1)


@import_app.command("status")
def import_status(
    as_json: bool = typer.Option(False, "--json", help="Print the raw status document"),
):
    """Show import status."""
    status = _build_control(None).status()

    if as_json:
        console.print_json(json.dumps(status))
        return

    running = "[green]running[/green]" if status["isRunning"] else "[dim]idle[/dim]"
    validation = status["validation"]
    panel = Panel(
        f"""[bold]State:[/bold] {running}
[bold]Progress:[/bold] {status['progress']}%
[bold]Operation:[/bold] {status['currentOperation'] or 'N/A'}
[bold]Sync log:[/bold] {status['syncLogId'] or 'N/A'}
[bold]Last sync:[/bold] {status['lastSyncTime'] or 'never'} ({status['lastSyncType'] or 'N/A'})
[bold]Last error:[/bold] {status['lastError'] or 'none'}
[bold]Validation:[/bold] {validation['validRecords']} valid / {validation['invalidRecords']} invalid ({validation['validationRate'] or 0:.1f}%)
""",
        title="Import Status",
        expand=False,
    )
    console.print(panel)

    summary = Table(title="Imported Entities")
    summary.add_column("Entity", style="cyan")
    summary.add_column("Count", justify="right")
    for name, count in status["summary"].items():
        summary.add_row(name, str(count))
    console.print(summary)


@import_app.command("cancel")
def import_cancel():
    """Request cancellation of the running import."""
    try:
        response = _build_control(None).cancel()
    except NoImportRunningError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✓ {response['message']}[/green]")


@import_app.command("retry")
def import_retry(
    phase: str = typer.Option(..., "--phase", "-p", help="Phase whose units to retry"),
    ids: list[int] = typer.Option([], "--id", help="Skipped entity row id (repeatable)"),
    entity_ids: list[str] = typer.Option([], "--entity-id", help="External entity id (repeatable)"),
    pages: list[int] = typer.Option([], "--page", help="Listing page number (repeatable)"),
    config: Optional[str] = ConfigOption,
):
    """Retry skipped units of one phase."""
    control = _build_control(config)
    try:
        response = control.retry(phase, skipped_entity_ids=ids, entity_ids=entity_ids, page_numbers=pages)
    except (InvalidPhaseError, ImportConflictError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    style = "green" if response["success"] else "yellow"
    console.print(f"[{style}]{response['message']}[/{style}]")
    for error in response.get("errors", []):
        console.print(f"  [red]✗ {error}[/red]")


@import_app.command("skipped")
def import_skipped(
    phase: Optional[str] = typer.Option(None, "--phase", "-p", help="Only this phase"),
    status: Optional[SkippedStatus] = typer.Option(None, "--status", "-s", help="Only this status"),
):
    """List skipped units."""
    try:
        response = _build_control(None).list_skipped(phase=phase, status=status)
    except InvalidPhaseError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if "summary" in response and response["summary"]:
        summary = Table(title="Skipped Units by Phase")
        summary.add_column("Phase", style="cyan")
        for column in ("total", "pending", "retrying", "completed", "failed"):
            summary.add_column(column.title(), justify="right")
        for name, counts in response["summary"].items():
            summary.add_row(
                name,
                *(str(counts[c]) for c in ("total", "pending", "retrying", "completed", "failed")),
            )
        console.print(summary)

    entities = Table(title="Skipped Units")
    entities.add_column("ID", justify="right")
    entities.add_column("Phase", style="cyan")
    entities.add_column("Unit", style="magenta")
    entities.add_column("Code", style="yellow")
    entities.add_column("Status")
    entities.add_column("Retries", justify="right")
    entities.add_column("Error")
    for row in response["entities"]:
        unit = row["entityId"] if row["entityId"] is not None else f"page {row['pageNumber']}"
        entities.add_row(
            str(row["id"]),
            row["phase"],
            unit,
            row["errorCode"] or "",
            row["status"],
            str(row["retryCount"]),
            (row["errorMessage"] or "")[:60],
        )
    console.print(entities)


# ==============================================================================
# Server
# ==============================================================================


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Bind port"),
    config: Optional[str] = ConfigOption,
):
    """Serve the import control API."""
    import uvicorn

    from .api import create_app

    console.print(f"[bold green]Serving import API on[/bold green] http://{host}:{port}")
    uvicorn.run(create_app(_build_control(config)), host=host, port=port, log_config=None)


if __name__ == "__main__":
    app()
