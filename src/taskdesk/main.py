"""
Taskdesk - CLI Entry Point.

Usage:
    taskdesk health            Check configuration
    taskdesk db                Check collection reachability and row counts
    taskdesk schedule          Run all scheduler jobs once
    taskdesk --help            Show help
"""

import asyncio
import logging
import sys

import typer
from rich.console import Console
from rich.live import Live
from rich.spinner import Spinner

app = typer.Typer(
    name="taskdesk",
    help="Taskdesk - Appwrite backend adapter and scheduler.",
    add_completion=False,
)
console = Console()


def setup_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Log to stderr; the console owns stdout."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    # Quiet down noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


@app.command()
def health() -> None:
    """Check system health and configuration."""
    from taskdesk.company_policy import company_policy_summary
    from taskdesk.config import get_settings

    console.print("\n[bold]Taskdesk Health Check[/bold]\n")

    try:
        settings = get_settings()
        console.print("✅ Configuration loaded")
        console.print(f"   Environment: {settings.taskdesk_env}")
        console.print(f"   Log level: {settings.log_level}")

        if settings.has_auth_config:
            console.print(f"✅ Appwrite endpoint configured: {settings.endpoint_with_version}")
        else:
            console.print("❌ APPWRITE_ENDPOINT or APPWRITE_PROJECT_ID missing")
            raise typer.Exit(1)

        if settings.has_database_config:
            console.print(f"✅ Database configured ({len(settings.collections)} collections mapped)")
        else:
            console.print("❌ APPWRITE_DATABASE_ID missing")

        if settings.appwrite_api_key:
            console.print("✅ Server API key configured")
        else:
            console.print("ℹ️  No server API key (scheduler disabled)")

        if settings.realtime_enabled:
            console.print("✅ Realtime enabled")
        else:
            console.print(f"ℹ️  Realtime disabled, polling every {settings.sync_poll_ms} ms")

        console.print(f"ℹ️  {company_policy_summary(settings)}")
        console.print("\n[green]All checks passed![/green]")

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"\n[red]❌ Configuration error: {e}[/red]")
        console.print("[dim]Make sure you have a .env file with required variables.[/dim]")
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from taskdesk import __version__

    console.print(f"Taskdesk version {__version__}")


async def _table_counts(tables: list[str]) -> list[tuple[str, int | None, str | None]]:
    from taskdesk.db.client import BackendClient

    rows = []
    async with BackendClient() as client:
        for table in tables:
            result = await client.table(table).select("id", count="exact").limit(0).execute()
            if result.error is not None:
                rows.append((table, None, result.error.message))
            else:
                rows.append((table, result.count, None))
    return rows


@app.command()
def db() -> None:
    """Check collection reachability and row counts."""
    from taskdesk.config import get_settings

    console.print("\n[bold]Database Connection Check[/bold]\n")

    settings = get_settings()
    if not settings.has_database_config:
        console.print("[red]❌ Appwrite database is not configured.[/red]")
        raise typer.Exit(1)

    try:
        with Live(Spinner("dots", text="Counting rows..."), console=console, transient=True):
            results = asyncio.run(_table_counts(sorted(settings.collections)))
    except Exception as e:
        console.print(f"\n[red]❌ Database connection failed: {e}[/red]")
        raise typer.Exit(1)

    console.print("[bold]Table Status:[/bold]")
    for table, count, error in results:
        if error is None:
            console.print(f"  ✅ {table}: {count} rows")
        else:
            console.print(f"  ❌ {table}: {error}")

    console.print("\n[green]Database check complete![/green]")


async def _run_schedulers():
    from taskdesk.config import get_settings
    from taskdesk.db.client import BackendClient
    from taskdesk.scheduler import run_schedulers

    settings = get_settings()
    async with BackendClient(settings) as client:
        return await run_schedulers(client, settings)


@app.command()
def schedule(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Run recurring tasks, approval escalations and digests once."""
    from taskdesk.config import get_settings
    from taskdesk.db.errors import BackendError

    setup_logging(verbose, get_settings().log_level)

    try:
        summary = asyncio.run(_run_schedulers())
    except BackendError as e:
        console.print(f"[red]❌ Scheduler failed: {e.message}[/red]")
        raise typer.Exit(1)

    console.print("\n[bold]Scheduler Summary[/bold]")
    for key, value in summary.as_dict().items():
        console.print(f"  {key}: {value}")


if __name__ == "__main__":
    app()
