"""
Root Typer application for the teamspark-jobs CLI.
"""

from __future__ import annotations

import typer

from teamspark import __version__
from teamspark.cli import queues, schedule, worker
from teamspark.cli.utils import load_settings
from teamspark.core.logging import configure_logging

app = typer.Typer(
    name="teamspark-jobs",
    help="teamspark-jobs - background job queues, workers and schedules.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"teamspark-jobs {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override TEAMSPARK_LOG_LEVEL"),
) -> None:
    """Manage TeamSpark background jobs."""
    settings = load_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=settings.json_logs,
        service=settings.service_name,
    )


app.add_typer(worker.app, name="worker", help="Run worker pools.")
app.add_typer(queues.app, name="queues", help="Inspect and maintain queues.")
app.add_typer(schedule.app, name="schedule", help="Recurring rules and one-off jobs.")


if __name__ == "__main__":
    app()
