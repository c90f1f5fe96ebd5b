"""ObraCalc CLI.

Commands:
- init: Initialize database schema
- ingest-catalog: Ingest a PDF price book (inline or via the worker queue)
- job-status: Show progress and log of an ingestion job
- search: Search the catalog
- resolve: Price a single task description
- budget: Decompose a request into a priced budget
- delete-catalog: Delete all catalog records of a year
- split-pdf: Extract pages of a PDF into a new file
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from obracalc.bootstrap import build_services
from obracalc.config import AppConfig, IngestionConfig
from obracalc.core.logging import configure_logging
from obracalc.db.catalog_repository import CatalogRepository
from obracalc.db.connection import Database
from obracalc.db.job_repository import JobRepository
from obracalc.ingestion.splitter import chunk_ranges, page_count, split_pages
from obracalc.matching.aggregator import ProgressEvent, ProgressSink
from obracalc.models import DecomposeDescription, IngestionJob, JobStatus, LogLevel, ResolvedLineItem
from obracalc.services.ports import SearchFilters

app = typer.Typer(
    name="obracalc",
    help="ObraCalc - price book ingestion and hybrid pricing resolution",
    no_args_is_help=True,
)

console = Console()

_STATUS_STYLE = {
    JobStatus.PENDING: "yellow",
    JobStatus.PROCESSING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
}
_LEVEL_STYLE = {
    LogLevel.INFO: "white",
    LogLevel.SUCCESS: "green",
    LogLevel.WARNING: "yellow",
    LogLevel.ERROR: "red",
}


def _load_config() -> AppConfig:
    config = AppConfig.from_env()
    configure_logging(config.log_level, config.json_logs)
    return config


class ConsoleProgressSink(ProgressSink):
    """Prints budget progress events as they arrive."""

    async def emit(self, event: ProgressEvent) -> None:
        payload = event.payload
        if event.type == "decomposition_start":
            console.print("[bold]Decomposing request...[/bold]")
        elif event.type == "item_resolving":
            console.print(f"  [{payload['current']}/{payload['total']}] {payload['description']}")
        elif event.type == "item_resolved":
            style = "green" if payload["status"] == "success" else "yellow"
            console.print(f"    -> [{style}]{payload.get('code') or 'REVIEW'}[/{style}]")


def _print_items(items: list[ResolvedLineItem]) -> None:
    table = Table(title="Budget")
    table.add_column("#", justify="right")
    table.add_column("Code")
    table.add_column("Description")
    table.add_column("Qty", justify="right")
    table.add_column("Unit")
    table.add_column("Unit €", justify="right")
    table.add_column("Total €", justify="right")
    table.add_column("Type")
    table.add_column("Conf.", justify="right")

    for item in items:
        type_style = "yellow" if item.is_estimate else "green"
        table.add_row(
            str(item.order),
            item.code or "-",
            item.description[:70],
            f"{item.quantity}",
            item.unit,
            f"{item.unit_price:.2f}",
            f"{item.total_price:.2f}",
            f"[{type_style}]{item.match_type.value}[/{type_style}]",
            f"{item.match_confidence:.0f}",
        )
    console.print(table)
    total = sum((i.total_price for i in items), Decimal("0"))
    console.print(f"[bold]Total:[/bold] {total:.2f} €")


def _print_job(job: IngestionJob, log_lines: int) -> None:
    style = _STATUS_STYLE[job.status]
    console.print(f"[bold]Job {job.id}[/bold] ({job.source_document}, {job.year})")
    console.print(f"Status: [{style}]{job.status.value}[/{style}]")
    console.print(
        f"Pages: {job.processed_pages}/{job.total_pages} "
        f"({job.skipped_pages} skipped, {job.failed_pages} failed)"
    )
    console.print(f"Items: {job.total_items}")
    console.print(
        f"Tokens: {job.usage.total_tokens} "
        f"(extraction {job.usage.extraction_tokens}, embedding {job.usage.embedding_tokens})"
    )
    if job.current_activity:
        console.print(f"Activity: {job.current_activity}")
    if job.error:
        console.print(f"[red]Error:[/red] {job.error}")

    if log_lines and job.logs:
        console.print("\n[bold]Log[/bold]")
        for entry in job.logs[-log_lines:]:
            level_style = _LEVEL_STYLE[entry.level]
            console.print(
                f"  {entry.timestamp:%H:%M:%S} [{level_style}]{entry.level.value:<7}[/{level_style}] "
                f"{entry.message}"
            )


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = _load_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        db = Database(config.db)
        try:
            if drop:
                console.print("[yellow]Dropping existing tables...[/yellow]")
                await db.drop_all()
            console.print("[green]Creating tables...[/green]")
            await db.create_all()
        finally:
            await db.dispose()

    asyncio.run(_init())
    console.print("[bold green]✓ Database initialized[/bold green]")


@app.command(name="ingest-catalog")
def ingest_catalog(
    pdf: Path = typer.Argument(..., exists=True, dir_okay=False, help="PDF price book"),
    year: int = typer.Option(..., "--year", "-y", help="Catalog year"),
    start_page: int = typer.Option(1, "--start-page", help="First page (1-based)"),
    max_pages: int | None = typer.Option(None, "--max-pages", help="Process at most N pages"),
    queue: bool = typer.Option(False, "--queue", help="Enqueue for the background worker"),
):
    """Ingest a PDF price book into the catalog."""
    config = _load_config()

    async def _ingest():
        if queue:
            from obracalc.core.queue import get_queue
            from obracalc.worker import enqueue_ingestion

            db = Database(config.db)
            redis = await get_queue()
            try:
                job = await enqueue_ingestion(
                    redis, JobRepository(db), str(pdf.resolve()), year, start_page, max_pages
                )
            finally:
                await redis.aclose()
                await db.dispose()
            console.print(f"[green]✓ Enqueued job {job.id}[/green]")
            return

        services = build_services(config)
        try:
            job = IngestionJob(source_document=pdf.name, year=year)
            await services.jobs.create(job)
            console.print(f"[bold]Ingesting[/bold] {pdf.name} as job {job.id}")
            job = await services.orchestrator().run(
                job, pdf.read_bytes(), start_page=start_page, max_pages=max_pages
            )
            _print_job(job, log_lines=0)
        finally:
            await services.close()

        if job.status is JobStatus.FAILED:
            raise typer.Exit(code=1)

    asyncio.run(_ingest())


@app.command(name="job-status")
def job_status(
    job_id: str = typer.Argument(..., help="Ingestion job id"),
    log_lines: int = typer.Option(20, "--log", "-n", help="Show last N log entries"),
):
    """Show progress of an ingestion job."""
    config = _load_config()

    async def _status():
        db = Database(config.db)
        try:
            return await JobRepository(db).get(job_id)
        finally:
            await db.dispose()

    job = asyncio.run(_status())
    if job is None:
        console.print(f"[red]Job {job_id} not found[/red]")
        raise typer.Exit(code=1)
    _print_job(job, log_lines)


@app.command()
def search(
    query: str = typer.Argument(..., help="Code, SKU or description"),
    limit: int = typer.Option(10, "--limit", "-l"),
    year: int | None = typer.Option(None, "--year", "-y"),
    kind: str | None = typer.Option(None, "--kind", help="work or material"),
    chapter: str | None = typer.Option(None, "--chapter"),
):
    """Search the catalog."""
    config = _load_config()

    async def _search():
        services = build_services(config)
        try:
            return await services.search().search(
                query, limit, SearchFilters(year=year, kind=kind, chapter=chapter)
            )
        finally:
            await services.close()

    response = asyncio.run(_search())
    table = Table(title=f"Results ({response.strategy.value})")
    table.add_column("Score", justify="right")
    table.add_column("Code")
    table.add_column("Description")
    table.add_column("Unit")
    table.add_column("Price €", justify="right")
    table.add_column("Year", justify="right")
    for candidate in response.results:
        record = candidate.record
        table.add_row(
            f"{candidate.score:.2f}",
            record.code,
            record.description[:80],
            record.unit,
            f"{record.price_total:.2f}",
            str(record.year),
        )
    console.print(table)
    if response.error:
        console.print(f"[yellow]Vector search unavailable:[/yellow] {response.error}")


@app.command()
def resolve(
    description: str = typer.Argument(..., help="Task description"),
    unit: str = typer.Option("ud", "--unit", "-u"),
    quantity: float = typer.Option(1.0, "--quantity", "-q"),
    context: str | None = typer.Option(None, "--context", help="Project context"),
):
    """Price a single task description."""
    config = _load_config()

    async def _resolve():
        services = build_services(config)
        try:
            return await services.resolver().resolve_text(
                description, unit=unit, quantity=Decimal(str(quantity)), project_context=context
            )
        finally:
            await services.close()

    item = asyncio.run(_resolve())
    item = item.model_copy(update={"order": 1})
    _print_items([item])
    console.print(f"[dim]{item.reason}[/dim]")


@app.command()
def budget(
    description: str = typer.Argument(..., help="Free-text work request"),
    context: str | None = typer.Option(None, "--context", help="Project context"),
):
    """Decompose a request into a priced budget."""
    config = _load_config()

    async def _budget():
        services = build_services(config)
        try:
            request = DecomposeDescription(description=description, project_context=context)
            return await services.aggregator().handle(request, ConsoleProgressSink())
        finally:
            await services.close()

    _print_items(asyncio.run(_budget()))


@app.command(name="delete-catalog")
def delete_catalog(
    year: int = typer.Argument(..., help="Catalog year to delete"),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation"),
):
    """Delete all catalog records of a year."""
    config = _load_config()

    async def _count():
        db = Database(config.db)
        try:
            return await CatalogRepository(db).count_by_year(year)
        finally:
            await db.dispose()

    async def _delete():
        db = Database(config.db)
        try:
            return await CatalogRepository(db).delete_by_year(year)
        finally:
            await db.dispose()

    count = asyncio.run(_count())
    if count == 0:
        console.print(f"[yellow]No catalog records for {year}[/yellow]")
        return
    if not yes:
        typer.confirm(f"Delete {count} catalog records for {year}?", abort=True)

    deleted = asyncio.run(_delete())
    console.print(f"[green]✓ Deleted {deleted} records[/green]")


@app.command(name="split-pdf")
def split_pdf(
    pdf: Path = typer.Argument(..., exists=True, dir_okay=False),
    output: Path = typer.Argument(..., help="Output PDF, or a directory with --chunks"),
    pages: str | None = typer.Option(None, "--pages", "-p", help="1-based pages, e.g. '1-5' or '2,4,7'"),
    chunks: bool = typer.Option(False, "--chunks", help="Write overlapping page-range chunks"),
    chunk_size: int = typer.Option(IngestionConfig.chunk_size, "--chunk-size"),
    overlap: int = typer.Option(IngestionConfig.chunk_overlap, "--overlap"),
):
    """Write selected pages of a PDF to a new file, or split it into chunks."""
    document = pdf.read_bytes()
    total = page_count(document)

    if chunks:
        output.mkdir(parents=True, exist_ok=True)
        plan = chunk_ranges(total, chunk_size=chunk_size, overlap=overlap)
        for chunk in plan:
            target = output / f"{pdf.stem}_p{chunk.start + 1}-{chunk.stop}.pdf"
            target.write_bytes(split_pages(document, chunk))
        console.print(f"[green]✓ Wrote {len(plan)} chunks of {total} pages to {output}[/green]")
        return

    if not pages:
        console.print("[red]Either --pages or --chunks is required[/red]")
        raise typer.Exit(code=2)

    indices: list[int] = []
    for part in pages.split(","):
        part = part.strip()
        if "-" in part:
            first, last = part.split("-", 1)
            indices.extend(range(int(first) - 1, int(last)))
        elif part:
            indices.append(int(part) - 1)

    output.write_bytes(split_pages(document, indices))
    console.print(f"[green]✓ Wrote {len(indices)} of {total} pages to {output}[/green]")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
