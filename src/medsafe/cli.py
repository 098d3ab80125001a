"""medsafe CLI."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, time
from typing import AsyncGenerator, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from medsafe.adherence import AdherenceService
from medsafe.clients import TableInteractionLookup, TesseractExtractor
from medsafe.config import settings
from medsafe.errors import MedsafeError
from medsafe.models import DocumentRun, DoseStatus, Medication, Schedule
from medsafe.pipeline import DocumentPipeline, PipelineCoordinator, upload_from_path
from medsafe.resilience import ResilientClient
from medsafe.safety import INTERACTION_DEPENDENCY, MedicationSafetyEngine, MedicationService
from medsafe.storage import (
    RecordCipher,
    close_db,
    create_engine_for,
    create_session_factory,
    create_sql_stores,
    init_db as create_tables,
)

app = typer.Typer(
    name="medsafe",
    help="Medical document pipeline with medication safety and adherence tracking",
    add_completion=False,
)
console = Console()


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, help="Logging level"),
) -> None:
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@asynccontextmanager
async def _stores() -> AsyncGenerator[tuple, None]:
    engine = create_engine_for(settings.database_url, settings)
    try:
        yield create_sql_stores(create_session_factory(engine), RecordCipher.from_settings(settings))
    finally:
        await close_db(engine)


def _lookup() -> TableInteractionLookup:
    if settings.interaction_table_path:
        return TableInteractionLookup.from_file(settings.interaction_table_path)
    return TableInteractionLookup()


def _run(coro):
    try:
        return asyncio.run(coro)
    except (MedsafeError, ValueError) as e:
        code = getattr(e, "code", None)
        prefix = f"[{code.value}] " if code is not None else ""
        console.print(f"[bold red]Error:[/bold red] {prefix}{e}")
        raise typer.Exit(1)


def _print_run(run: DocumentRun) -> None:
    style = "green" if run.is_committed else ("red" if run.state.is_failed else "yellow")
    console.print(f"[bold]Run:[/bold] {run.id}")
    console.print(f"[bold]State:[/bold] [{style}]{run.state.value}[/{style}] (v{run.version})")
    if run.error_code is not None:
        console.print(f"[bold]Error:[/bold] {run.error_code.value} - {run.error_detail}")
    if run.extraction_confidence is not None:
        console.print(f"[dim]Extraction confidence: {run.extraction_confidence:.2f}[/dim]")
    if run.medical_data is not None:
        data = run.medical_data
        console.print(
            f"[dim]Entities: {len(data.medications)} medications, "
            f"{len(data.lab_results)} lab results, {len(data.diagnoses)} diagnoses, "
            f"{len(data.instructions)} instructions[/dim]"
        )
    report = run.interaction_report
    if report is not None:
        for warning in report.warnings:
            a, b = warning.medication_names
            console.print(f"[magenta]{warning.severity.value}[/magenta] {a} + {b}: {warning.description}")
        if report.consult_message:
            console.print(f"[bold red]{report.consult_message}[/bold red]")
        if report.incomplete:
            console.print(
                f"[yellow]Interaction check incomplete ({report.error_code.value}): "
                f"{len(report.unresolved_pairs)} pair(s) unresolved[/yellow]"
            )


@app.command("init-db")
def init_db() -> None:
    """Create database tables."""

    async def _init() -> None:
        engine = create_engine_for(settings.database_url, settings)
        try:
            await create_tables(engine)
        finally:
            await close_db(engine)

    _run(_init())
    console.print("[green]Database initialized[/green]")


@app.command("generate-key")
def generate_key() -> None:
    """Print a new encryption key for MEDSAFE_ENCRYPTION_KEY."""
    console.print(RecordCipher.generate_key())


@app.command()
def process(
    image_path: str = typer.Argument(..., help="Path to the document image"),
    user: UUID = typer.Option(..., help="Owning user id"),
    content_type: Optional[str] = typer.Option(None, help="Override detected content type"),
) -> None:
    """Process a single document image."""
    console.print(f"[bold blue]Processing:[/bold blue] {image_path}")

    async def _process() -> DocumentRun:
        async with _stores() as (runs, records):
            pipeline = DocumentPipeline.from_settings(
                runs,
                records,
                TesseractExtractor(language=settings.tesseract_language),
                _lookup(),
                settings,
            )
            coordinator = PipelineCoordinator(pipeline)
            return await coordinator.submit(upload_from_path(user, image_path, content_type))

    _print_run(_run(_process()))


@app.command("retry-commit")
def retry_commit(
    run_id: UUID = typer.Argument(..., help="Run left in commit_failed"),
    user: UUID = typer.Option(..., help="Owning user id"),
) -> None:
    """Retry the commit of a run whose commit failed."""

    async def _retry() -> DocumentRun:
        async with _stores() as (runs, records):
            pipeline = DocumentPipeline.from_settings(
                runs, records, TesseractExtractor(settings.tesseract_language), _lookup(), settings
            )
            return await PipelineCoordinator(pipeline).retry_commit(user, run_id)

    _print_run(_run(_retry()))


@app.command("add-medication")
def add_medication(
    name: str = typer.Argument(..., help="Medication name"),
    user: UUID = typer.Option(..., help="Owning user id"),
    dosage: str = typer.Option("", help="Dosage, e.g. '500 mg'"),
    generic_name: Optional[str] = typer.Option(None, help="Generic name"),
    at: list[str] = typer.Option(["08:00"], "--at", help="Dose time HH:MM, repeatable"),
    timezone: str = typer.Option("UTC", help="IANA timezone of dose times"),
    require_complete: bool = typer.Option(
        False, help="Refuse to add if any interaction pair cannot be checked"
    ),
) -> None:
    """Add a medication after checking it for interactions."""
    medication = Medication(
        user_id=user,
        name=name,
        generic_name=generic_name,
        dosage=dosage,
        schedule=Schedule(times=[time.fromisoformat(t) for t in at], timezone=timezone),
    )

    async def _add():
        async with _stores() as (_, records):
            client = ResilientClient.from_settings(
                INTERACTION_DEPENDENCY, settings.lookup_timeout_seconds, settings
            )
            engine = MedicationSafetyEngine(_lookup(), client=client, config=settings)
            return await MedicationService(engine, records).add_medication(
                user, medication, require_complete=require_complete
            )

    added = _run(_add())
    console.print(f"[green]Added[/green] {added.medication.name} ({added.medication.id})")
    report = added.report
    if not report.warnings and not report.incomplete:
        console.print("[dim]No known interactions with active medications[/dim]")
    for warning in report.warnings:
        a, b = warning.medication_names
        console.print(f"[magenta]{warning.severity.value}[/magenta] {a} + {b}: {warning.recommendation}")
    if report.consult_message:
        console.print(f"[bold red]{report.consult_message}[/bold red]")
    if report.incomplete:
        console.print(f"[yellow]Check incomplete ({report.error_code.value})[/yellow]")


@app.command("record-dose")
def record_dose(
    medication_id: UUID = typer.Argument(..., help="Medication id"),
    scheduled: datetime = typer.Argument(..., help="Scheduled time (ISO 8601, UTC if naive)"),
    user: UUID = typer.Option(..., help="Owning user id"),
    status: DoseStatus = typer.Option(DoseStatus.TAKEN, help="taken, missed or skipped"),
) -> None:
    """Record a dose event and show updated adherence."""

    async def _record():
        async with _stores() as (_, records):
            service = AdherenceService.from_settings(records, settings)
            return await service.record_dose(user, medication_id, scheduled, status)

    report = _run(_record())
    console.print(f"Adherence {report.rate:.1f}% over {report.total} doses, streak {report.streak}")


@app.command()
def adherence(
    medication_id: UUID = typer.Argument(..., help="Medication id"),
    user: UUID = typer.Option(..., help="Owning user id"),
    start: Optional[datetime] = typer.Option(None, formats=["%Y-%m-%d"], help="First day"),
    end: Optional[datetime] = typer.Option(None, formats=["%Y-%m-%d"], help="Last day"),
) -> None:
    """Show adherence rate and streak for a medication."""

    async def _report():
        async with _stores() as (_, records):
            service = AdherenceService.from_settings(records, settings)
            return await service.report(
                user,
                medication_id,
                start.date() if start else None,
                end.date() if end else None,
            )

    report = _run(_report())
    table = Table(title=f"Adherence {report.start} to {report.end}")
    for column in ("Total", "Taken", "Missed", "Skipped", "Pending", "Rate", "Streak"):
        table.add_column(column, justify="right")
    table.add_row(
        str(report.total),
        str(report.taken),
        str(report.missed),
        str(report.skipped),
        str(report.pending),
        f"{report.rate:.1f}%",
        str(report.streak),
    )
    console.print(table)


@app.command()
def reap(
    timeout: Optional[float] = typer.Option(None, help="Stage timeout in seconds"),
) -> None:
    """Fail runs stuck in extraction or interaction checking."""

    async def _reap() -> list[DocumentRun]:
        async with _stores() as (runs, records):
            pipeline = DocumentPipeline.from_settings(
                runs, records, TesseractExtractor(settings.tesseract_language), _lookup(), settings
            )
            return await PipelineCoordinator(pipeline).reap_stuck(timeout)

    reaped = _run(_reap())
    console.print(f"[bold blue]Reaped {len(reaped)} stuck runs[/bold blue]")
    for run in reaped:
        console.print(f"  {run.id}: {run.state.value} ({run.error_code.value})")


if __name__ == "__main__":
    app()
