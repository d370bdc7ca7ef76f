"""
CLI: ``teamspark-jobs queues`` - inspect and maintain queues.
"""

from __future__ import annotations

import json

import typer
from rich.table import Table

from teamspark.cli.utils import console, err_console, open_queues, parse_kind, run
from teamspark.core.logging import get_logger
from teamspark.execution.maintenance import (
    DEFAULT_CLEAN_LIMIT,
    DEFAULT_COMPLETED_GRACE_MS,
    DEFAULT_FAILED_GRACE_MS,
    CleanupReport,
    clean_queues,
)
from teamspark.execution.metrics import get_all_queue_metrics
from teamspark.execution.models import JobKind, QueueMetrics

app = typer.Typer(no_args_is_help=True)
log = get_logger(__name__)


async def _clean(completed_grace_ms: int, failed_grace_ms: int, limit: int) -> CleanupReport:
    async with open_queues() as queues:
        await queues.backend.ping()
        return await clean_queues(
            queues.values(),
            completed_grace_ms=completed_grace_ms,
            failed_grace_ms=failed_grace_ms,
            limit=limit,
        )


@app.command("clean")
def clean(
    completed_grace_ms: int = typer.Option(
        DEFAULT_COMPLETED_GRACE_MS, "--completed-grace-ms", min=0, help="Keep completed jobs younger than this"
    ),
    failed_grace_ms: int = typer.Option(
        DEFAULT_FAILED_GRACE_MS, "--failed-grace-ms", min=0, help="Keep failed jobs younger than this"
    ),
    limit: int = typer.Option(DEFAULT_CLEAN_LIMIT, "--limit", min=0, help="Max jobs removed per state, 0 = all"),
) -> None:
    """Remove old completed and failed jobs from every queue.

    A queue that errors is reported and skipped; the command still exits 0.
    It exits 1 only when it cannot get as far as cleaning (bad URL,
    unreachable backend before the first queue).

    Example::

        teamspark-jobs queues clean
        teamspark-jobs queues clean --failed-grace-ms 3600000 --limit 0
    """
    try:
        report = run(_clean(completed_grace_ms, failed_grace_ms, limit))
    except Exception as exc:
        log.error("queue_cleanup_aborted", error=str(exc), error_type=type(exc).__name__)
        err_console.print(f"[red]Cleanup failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc

    for result in report.results:
        console.print(f"[bold]{result.name}[/bold]")
        if result.error is not None:
            err_console.print(f"  [red]error: {result.error}[/red]")
            continue
        console.print(f"  cleaned {result.completed} completed")
        console.print(f"  cleaned {result.failed} failed")
        if result.counts is not None:
            c = result.counts
            console.print(f"  waiting={c.waiting} active={c.active} completed={c.completed} failed={c.failed}")
    console.print(f"Removed {report.total_removed} jobs")


async def _metrics() -> list[QueueMetrics]:
    async with open_queues() as queues:
        return await get_all_queue_metrics(queues.values())


@app.command("metrics")
def metrics(json_out: bool = typer.Option(False, "--json", help="Print JSON instead of a table")) -> None:
    """Show job counts per queue."""
    snapshots = run(_metrics())
    if json_out:
        console.print_json(json.dumps([snapshot.to_dict() for snapshot in snapshots]))
        return

    table = Table(title="Queues")
    for column in ("queue", "waiting", "active", "delayed", "paused", "completed", "failed", "total"):
        table.add_column(column, justify="left" if column == "queue" else "right")
    for snapshot in snapshots:
        if snapshot.counts is None:
            table.add_row(snapshot.name, *["-"] * 6, f"[red]{snapshot.error}[/red]")
            continue
        c = snapshot.counts
        table.add_row(
            snapshot.name,
            str(c.waiting),
            str(c.active),
            str(c.delayed),
            str(c.paused),
            str(c.completed),
            str(c.failed),
            str(snapshot.total),
        )
    console.print(table)


async def _set_paused(kind: JobKind, paused: bool) -> None:
    async with open_queues() as queues:
        queue = queues[kind]
        if paused:
            await queue.pause()
        else:
            await queue.resume()


@app.command("pause")
def pause(kind: str = typer.Argument(..., help="Job kind, e.g. send-email")) -> None:
    """Stop workers from picking up jobs of KIND."""
    run(_set_paused(parse_kind(kind), True))
    console.print(f"[yellow]Paused {kind}[/yellow]")


@app.command("resume")
def resume(kind: str = typer.Argument(..., help="Job kind, e.g. send-email")) -> None:
    """Resume a paused queue."""
    run(_set_paused(parse_kind(kind), False))
    console.print(f"[green]Resumed {kind}[/green]")
