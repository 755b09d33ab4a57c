"""Operator CLI for the cycleflow ingestion pipeline.

Runs the same pipeline code as the API: process stored webhook events,
run Strava bulk imports and backfills, and check infrastructure.
"""

from datetime import datetime

import redis
import typer
import uvicorn
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from sqlalchemy import select

from cycleflow.config.settings import settings
from cycleflow.core.errors import PipelineError
from cycleflow.core.logger import setup_logger
from cycleflow.db.models import IngestEvent
from cycleflow.db.session import check_database_connection, get_session, init_db
from cycleflow.integrations.garmin.backfill import request_garmin_backfill
from cycleflow.integrations.garmin.jobs import EventProcessor
from cycleflow.integrations.strava.bulk_import import import_strava_activities
from cycleflow.integrations.strava.gps_backfill import backfill_gps

console = Console()

app = typer.Typer(
    name="cycleflow",
    help="cycleflow - activity ingestion pipeline CLI",
    add_completion=False,
)


@app.callback()
def main(debug: bool = typer.Option(False, "--debug", help="Enable debug logging")) -> None:
    setup_logger(level="DEBUG" if debug else settings.log_level, log_file=settings.log_file or None)


def exit_with_error(message: str, code: int = 1) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(code)


def _counts_table(title: str, counts: dict) -> Table:
    table = Table(title=title, show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in counts.items():
        if isinstance(value, (int, float, str)):
            table.add_row(key, str(value))
    return table


@app.command()
def server(
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
) -> None:
    """Run the FastAPI server."""
    logger.info(f"Starting FastAPI server on {host}:{port} (reload={reload})")
    uvicorn.run("cycleflow.main:app", host=host, port=port, reload=reload)


@app.command(name="init-db")
def init_database() -> None:
    """Create any missing database tables."""
    init_db()
    console.print("[green]✓ Database tables verified[/green]")


@app.command()
def check_db() -> None:
    """Verify Redis and database connections."""
    results: list[tuple[str, bool, str]] = []

    try:
        redis.from_url(settings.redis_url, decode_responses=True).ping()
        results.append(("Redis", True, f"Connected to {settings.redis_url}"))
    except Exception as e:
        results.append(("Redis", False, f"Connection failed: {e!s}"))

    try:
        check_database_connection()
        results.append(("Database", True, "Connected to database"))
    except Exception as e:
        results.append(("Database", False, f"Connection failed: {e!s}"))

    all_ok = all(ok for _, ok, _ in results)
    details = "\n".join(f"  {'✓' if ok else '✗'} {name}: {message}" for name, ok, message in results)
    console.print(
        Panel(
            Text(
                "All connections OK" if all_ok else "Some connections failed",
                style="bold green" if all_ok else "bold red",
            ),
            subtitle=details,
            border_style="green" if all_ok else "red",
        )
    )
    if not all_ok:
        raise typer.Exit(1)


@app.command()
def process_event(event_id: str = typer.Argument(..., help="Ingest event id")) -> None:
    """Process one stored webhook event now (e.g. after a dispatch failure)."""
    with get_session() as session:
        event = session.get(IngestEvent, event_id)
        if event is None:
            exit_with_error(f"Ingest event not found: {event_id}")
        if event.processed:
            console.print(f"[yellow]Event {event_id} is already processed ({event.process_error or 'ok'})[/yellow]")
            return
        outcome = EventProcessor(session).process(event_id)
        session.refresh(event)
        console.print(f"[bold]Outcome:[/bold] {outcome}")
        if event.activity_id:
            console.print(f"  Activity: {event.activity_id}")
        if event.process_error:
            console.print(f"  Reason: {event.process_error}")


@app.command()
def pending_events(limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows to show")) -> None:
    """List webhook events that were stored but never processed."""
    with get_session() as session:
        events = session.execute(
            select(IngestEvent)
            .where(IngestEvent.processed.is_(False))
            .order_by(IngestEvent.received_at)
            .limit(limit)
        ).scalars()

        table = Table(title="Unprocessed ingest events")
        table.add_column("Event id")
        table.add_column("Garmin user")
        table.add_column("Activity")
        table.add_column("Received")
        for event in events:
            table.add_row(
                event.id,
                event.provider_user_id,
                event.provider_activity_id or "-",
                f"{event.received_at:%Y-%m-%d %H:%M}",
            )
        console.print(table)


@app.command()
def bulk_import(
    user_id: str = typer.Argument(..., help="Internal user id"),
    start: datetime = typer.Option(None, "--start", help="Only activities after this date"),
    end: datetime = typer.Option(None, "--end", help="Only activities before this date"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip duplicate checks"),
) -> None:
    """Import a user's Strava cycling history."""
    console.print(f"[bold cyan]Starting Strava bulk import for user_id={user_id}...[/bold cyan]")
    try:
        with get_session() as session:
            result = import_strava_activities(session, user_id, start_date=start, end_date=end, force=force)
    except PipelineError as e:
        exit_with_error(str(e))

    console.print(_counts_table("Strava bulk import", result.to_dict()))
    for sample in result.error_samples:
        console.print(f"  [red]✗[/red] {sample}")
    if result.errors:
        exit_with_error(f"Import completed with {result.errors} errors")


@app.command()
def gps_backfill(user_id: str = typer.Argument(..., help="Internal user id")) -> None:
    """Fetch GPS tracks for Strava activities imported without one."""
    try:
        with get_session() as session:
            result = backfill_gps(session, user_id)
    except PipelineError as e:
        exit_with_error(str(e))
    console.print(_counts_table("GPS backfill", result))


@app.command()
def garmin_backfill(
    user_id: str = typer.Argument(..., help="Internal user id"),
    start: datetime = typer.Option(None, "--start", help="Start of the history window"),
    end: datetime = typer.Option(None, "--end", help="End of the history window"),
) -> None:
    """Ask Garmin to push a user's history to the webhook."""
    try:
        with get_session() as session:
            result = request_garmin_backfill(session, user_id, start_date=start, end_date=end)
    except PipelineError as e:
        exit_with_error(str(e))

    console.print(_counts_table("Garmin backfill", result))
    if result["error_count"]:
        exit_with_error(f"{result['error_count']} backfill request(s) failed")


if __name__ == "__main__":
    app()
