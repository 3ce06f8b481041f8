"""CLI entry point for the wallpaper ingestor.

Provides commands:
  - init-db: Create the SQLite schema
  - status: Upload record counts by state
  - history: State transitions logged for one record
  - reconcile: Run every reconciliation pass once
  - run: Run the reconciliation scheduler until interrupted
  - health: Check the database, blob store and event channel
  - upload: Ingest a local file through the intake path
  - config: Manage secrets (S3 secret key)
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import signal
from dataclasses import replace
from pathlib import Path
from typing import Annotated

import keyring
import typer
from keyring.errors import KeyringError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ingestor.app import IngestorApp
from ingestor.config import KEY_NAME, SERVICE_NAME, load_config
from ingestor.database import Database
from ingestor.models import IngestorConfig, UploadState
from ingestor.reconciliation.scheduler import CycleReport

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="Wallpaper ingestor - upload intake and background reconciliation",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Manage secrets and settings")
app.add_typer(config_app, name="config")

_STATE_STYLES = {
    UploadState.INITIATED.value: "dim",
    UploadState.UPLOADING.value: "blue",
    UploadState.STORED.value: "yellow",
    UploadState.PROCESSING.value: "cyan",
    UploadState.COMPLETED.value: "green",
    UploadState.FAILED.value: "red",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


@app.callback()
def app_callback(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to ingestor_config.json"),
    ] = None,
    db_path: Annotated[
        Path | None,
        typer.Option("--db", "-d", help="Path to SQLite database (overrides config)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration shared by all commands."""
    _setup_logging(verbose)
    try:
        config = load_config(config_path)
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=1)
    if db_path is not None:
        config = replace(config, db_path=str(db_path))
    ctx.obj = config


def get_config(ctx: typer.Context) -> IngestorConfig:
    return ctx.obj if ctx.obj is not None else load_config()


def _require_db(config: IngestorConfig) -> None:
    if not Path(config.db_path).exists():
        console.print(
            f"[yellow]Database not found:[/yellow] {config.db_path}\n"
            "Run [bold]ingestor init-db[/bold] first."
        )
        raise typer.Exit(code=1)


def _styled(state: str, text: str) -> str:
    style = _STATE_STYLES.get(state, "")
    return f"[{style}]{text}[/{style}]" if style else text


@app.command("init-db")
def init_db(ctx: typer.Context) -> None:
    """Create the database schema (safe to run repeatedly)."""
    config = get_config(ctx)
    Database(config.db_path).close()
    console.print(f"[green]✓[/green] Schema ready at [bold]{config.db_path}[/bold]")


@app.command()
def status(ctx: typer.Context) -> None:
    """Display upload record counts by state."""
    config = get_config(ctx)
    _require_db(config)

    with Database(config.db_path) as db:
        counts = db.get_state_counts()

    console.print(Panel(f"Database: [bold]{config.db_path}[/bold]", title="Ingestor Status"))
    table = Table(title="Uploads by State")
    table.add_column("State", style="bold")
    table.add_column("Count", justify="right")
    for state in UploadState:
        table.add_row(state.value, _styled(state.value, str(counts.get(state.value, 0))))
    console.print(table)
    console.print(f"\n[bold]Total records:[/bold] {sum(counts.values())}")


@app.command()
def history(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Upload record id (wlpr_...)")],
) -> None:
    """Show the state transitions logged for one upload record."""
    config = get_config(ctx)
    _require_db(config)

    with Database(config.db_path) as db:
        transitions = db.get_state_history(record_id)

    if not transitions:
        console.print(f"[yellow]No transitions logged for {record_id}[/yellow]")
        raise typer.Exit(code=1)

    table = Table(title=f"History of {record_id}")
    table.add_column("From")
    table.add_column("To")
    for old, new in transitions:
        table.add_row(old or "-", _styled(new, new))
    console.print(table)


def _print_report(report: CycleReport) -> None:
    table = Table(title="Reconciliation")
    table.add_column("Pass", style="bold")
    for column in ("Examined", "Advanced", "Retried", "Failed", "Deleted", "Skipped", "Errors"):
        table.add_column(column, justify="right")
    table.add_column("Time", justify="right")
    for r in report.results:
        table.add_row(
            r.name,
            str(r.examined),
            str(r.advanced),
            str(r.retried),
            str(r.failed),
            str(r.deleted),
            str(r.skipped),
            f"[red]{len(r.errors)}[/red]" if r.errors else "0",
            f"{r.duration_seconds:.2f}s",
        )
    console.print(table)
    for r in report.results:
        for error in r.errors:
            console.print(f"  [red]{r.name}[/red] {error}")
    for error in report.errors:
        console.print(f"[red]Pass crashed:[/red] {error}")


@app.command()
def reconcile(ctx: typer.Context) -> None:
    """Run all four reconciliation passes once and print their results."""
    config = get_config(ctx)

    async def _run() -> CycleReport:
        async with IngestorApp(config) as services:
            return await services.scheduler.trigger_now(raise_errors=False)

    report = asyncio.run(_run())
    _print_report(report)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def run(
    ctx: typer.Context,
    shutdown_timeout: Annotated[
        float,
        typer.Option("--shutdown-timeout", help="Seconds to let an in-flight cycle finish on exit"),
    ] = 30.0,
) -> None:
    """Run the reconciliation scheduler until SIGINT or SIGTERM."""
    config = get_config(ctx)

    async def _run() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        async with IngestorApp(config) as services:
            await services.scheduler.start()
            console.print(
                f"[green]Scheduler running[/green] "
                f"(every {config.reconciliation.reconciliation_interval:.0f}s). "
                "Press Ctrl+C to stop."
            )
            await stop.wait()
            console.print("Stopping scheduler...")
            await services.scheduler.stop(timeout=shutdown_timeout)

    asyncio.run(_run())
    console.print("[green]✓[/green] Scheduler stopped")


@app.command()
def health(ctx: typer.Context) -> None:
    """Check connectivity to the database, blob store and event channel."""
    config = get_config(ctx)

    async def _run() -> dict[str, bool]:
        async with IngestorApp(config) as services:
            return await services.check_health()

    checks = asyncio.run(_run())
    table = Table(title="Health")
    table.add_column("Component", style="bold")
    table.add_column("Status")
    for name, ok in checks.items():
        table.add_row(name, "[green]ok[/green]" if ok else "[red]unavailable[/red]")
    console.print(table)
    if not all(checks.values()):
        raise typer.Exit(code=1)


@app.command()
def upload(
    ctx: typer.Context,
    file: Annotated[
        Path,
        typer.Argument(exists=True, dir_okay=False, readable=True, help="File to ingest"),
    ],
    user_id: Annotated[str, typer.Option("--user", "-u", help="Owning user id")],
    width: Annotated[int, typer.Option("--width", help="Width in pixels")],
    height: Annotated[int, typer.Option("--height", help="Height in pixels")],
    mime_type: Annotated[
        str | None,
        typer.Option("--mime", help="Media type (guessed from the file name if omitted)"),
    ] = None,
) -> None:
    """Ingest a local file: store the blob and publish wallpaper.uploaded."""
    config = get_config(ctx)
    mime = mime_type or mimetypes.guess_type(file.name)[0]
    if mime is None:
        console.print(f"[red]Error:[/red] Cannot guess media type of {file.name}; pass --mime")
        raise typer.Exit(code=1)

    async def _run():
        async with IngestorApp(config) as services:
            return await services.intake.ingest(
                file.read_bytes(),
                user_id=user_id,
                filename=file.name,
                mime_type=mime,
                width=width,
                height=height,
            )

    try:
        result = asyncio.run(_run())
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    label = "duplicate of" if result.is_duplicate else "stored as"
    console.print(f"[green]✓[/green] {file.name} {label} [bold]{result.id}[/bold] ({result.status})")


@config_app.command("set-s3-secret")
def set_s3_secret(
    secret: Annotated[str, typer.Argument(help="S3 secret access key to store in the system keyring")],
) -> None:
    """Store the S3 secret key in the system keyring (service: wallpaper-ingestor)."""
    if not secret.strip():
        console.print("[red]Error:[/red] Secret cannot be empty")
        raise typer.Exit(code=1)
    try:
        keyring.set_password(SERVICE_NAME, KEY_NAME, secret)
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to store secret: {e}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] S3 secret stored in system keyring (service: {SERVICE_NAME})")


@config_app.command("remove-s3-secret")
def remove_s3_secret() -> None:
    """Delete the stored S3 secret key from the system keyring."""
    if not keyring.get_password(SERVICE_NAME, KEY_NAME):
        console.print("[yellow]Warning:[/yellow] No S3 secret found in keyring.\nNothing to remove.")
        return
    keyring.delete_password(SERVICE_NAME, KEY_NAME)
    console.print(f"[green]✓[/green] S3 secret removed from system keyring (service: {SERVICE_NAME})")
