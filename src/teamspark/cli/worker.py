"""
CLI: ``teamspark-jobs worker`` - run the job process.
"""

from __future__ import annotations

import typer

from teamspark.cli.utils import console, err_console, load_settings, run
from teamspark.core.errors import ConfigError

app = typer.Typer(no_args_is_help=True)


@app.command("start")
def start() -> None:
    """Start every worker pool, register schedules, and run until SIGTERM/SIGINT.

    Configuration comes from ``TEAMSPARK_*`` environment variables (see
    ``JobSettings``); ``TEAMSPARK_DATASTORE`` and ``RESEND_API_KEY`` are
    required.

    Example::

        TEAMSPARK_DATASTORE=teamspark_web.store:create_store teamspark-jobs worker start
    """
    from teamspark.app import JobSystem

    settings = load_settings()
    try:
        system = JobSystem.from_settings(settings)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=2) from exc

    console.print(
        f"[bold green]Starting teamspark-jobs worker[/bold green] "
        f"({len(system.pools)} pools, backend={settings.redis_url.split('://', 1)[0]})"
    )
    try:
        run(system.run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped by user[/yellow]")
