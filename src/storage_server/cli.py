"""CLI for storage-server.

Commands:
    serve              - Run the HTTP server
    init-db            - Create tables and apply migrations
    stats              - Show object count and storage usage
    sweep              - Run one retention pass (expiry, orphans, hash backfill)
    audit              - List files on disk that no index row references
    show <id>          - Show the index record of one object
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from storage_server import __version__
from storage_server.config import settings
from storage_server.db import async_session_factory, init_db
from storage_server.errors import StorageError
from storage_server.identifiers import sanitize_object_id
from storage_server.index import BlobIndex
from storage_server.logging_setup import configure_logging
from storage_server.services import RetentionSweeper, RetrievalService
from storage_server.store import ContentStore

app = typer.Typer(
    name="storage-server",
    help="storage-server: single-tenant blob storage with dedup and retention",
    no_args_is_help=True,
)
console = Console()


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


def _format_ms(value: int | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat(timespec="seconds")


def _format_bytes(value: int | None) -> str:
    if value is None:
        return "unlimited"
    return f"{value:,} bytes"


def _store() -> ContentStore:
    store = ContentStore(settings.storage_path)
    store.ensure_root()
    return store


@app.command()
def serve(
    host: Annotated[str | None, typer.Option(help="Bind address")] = None,
    port: Annotated[int | None, typer.Option(help="Bind port")] = None,
):
    """Run the HTTP server with uvicorn."""
    import uvicorn

    configure_logging(settings.log_level, settings.log_file)
    uvicorn.run(
        "storage_server.app:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


@app.command("init-db")
def init_db_command():
    """Create tables and apply pending migrations."""
    async def _init():
        applied = await init_db()
        console.print(f"[green]Database ready.[/green] {applied} migration(s) applied.")

    run_async(_init())


@app.command()
def stats():
    """Show object count and storage usage."""
    async def _stats():
        await init_db()
        info = await RetrievalService(async_session_factory, _store(), settings).aggregate()
        console.print(Panel(
            f"[bold]Name:[/bold] {info.name}\n"
            f"[bold]Version:[/bold] {info.version}\n"
            f"[bold]Objects:[/bold] {info.object_count}\n"
            f"[bold]Stored:[/bold] {_format_bytes(info.total_size_bytes)}\n"
            f"[bold]Max upload:[/bold] {_format_bytes(info.max_upload_bytes)}\n"
            f"[bold]Max storage:[/bold] {_format_bytes(info.max_storage_bytes)}",
            title="storage-server statistics",
        ))

    run_async(_stats())


@app.command()
def sweep():
    """Run one retention pass and print what it removed."""
    async def _sweep():
        configure_logging(settings.log_level, settings.log_file)
        await init_db()
        report = await RetentionSweeper(async_session_factory, _store(), settings).run_once()

        table = Table(title="Retention sweep")
        table.add_column("Sweep")
        table.add_column("Rows", justify="right")
        table.add_row("Expired / inactive", str(report.expired))
        table.add_row("Orphaned rows", str(report.orphans))
        table.add_row("Hashes backfilled", str(report.backfilled))
        console.print(table)

    run_async(_sweep())


@app.command()
def audit():
    """List files in the content store with no index row."""
    async def _audit():
        await init_db()
        strays = await RetentionSweeper(async_session_factory, _store(), settings).stray_files()
        if not strays:
            console.print("[green]No stray files.[/green]")
            return
        for name in strays:
            console.print(f"  • {name}")
        console.print(f"\n[yellow]{len(strays)} stray file(s)[/yellow] in {settings.storage_path}")

    run_async(_audit())


@app.command()
def show(
    object_id: Annotated[str, typer.Argument(help="Object ID (UUID v4)")],
):
    """Show the index record for one object."""
    async def _show():
        try:
            oid = sanitize_object_id(object_id)
        except StorageError as e:
            console.print(f"[red]Error:[/red] {e.cause}")
            raise typer.Exit(1) from None

        await init_db()
        async with async_session_factory() as session:
            record = await BlobIndex(session).get(oid)

        if record is None:
            console.print(f"[red]Error:[/red] Object not found: {oid}")
            raise typer.Exit(1)

        on_disk = await _store().exists(oid)
        panel_content = [
            f"[bold]ID:[/bold] {record.id}",
            f"[bold]Content hash:[/bold] {record.content_hash or '-'}",
            f"[bold]Stored hash:[/bold] {record.stored_hash or '-'}",
            f"[bold]Size:[/bold] {record.size_bytes:,} bytes",
            f"[bold]Compression:[/bold] {record.compression_algorithm.value}",
            f"[bold]Encrypted:[/bold] {'yes' if record.encrypted else 'no'}",
            f"[bold]Expires:[/bold] {_format_ms(record.expires_at)}",
            f"[bold]Last accessed:[/bold] {_format_ms(record.last_accessed_at)}",
            f"[bold]Created:[/bold] {_format_ms(record.created_at)}",
            f"[bold]On disk:[/bold] {'yes' if on_disk else '[red]missing[/red]'}",
        ]
        console.print(Panel("\n".join(panel_content), title="Object Details"))

    run_async(_show())


@app.command()
def version():
    """Print the version."""
    console.print(__version__)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
