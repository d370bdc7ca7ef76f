"""
CLI: ``teamspark-jobs schedule`` - recurring rules and one-off jobs.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import typer
from rich.table import Table

from teamspark.cli.utils import console, err_console, load_settings, open_queues, parse_kind, run
from teamspark.core.errors import ConfigError, TeamSparkError
from teamspark.execution.models import JobHandle, RepeatRule
from teamspark.jobs.datastore import load_datastore
from teamspark.scheduling.definitions import default_schedule
from teamspark.scheduling.scheduler import RECURRING_KINDS, ScheduleReport, Scheduler

app = typer.Typer(no_args_is_help=True)


def _fmt_ms(value: int | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")


async def _list() -> list[RepeatRule]:
    async with open_queues() as queues:
        rules: list[RepeatRule] = []
        for queue in queues.values():
            rules.extend(await queue.get_repeatable_jobs())
        return rules


@app.command("list")
def list_rules(json_out: bool = typer.Option(False, "--json")) -> None:
    """List registered repeat rules on every queue."""
    rules = run(_list())
    if json_out:
        console.print_json(json.dumps([rule.to_dict() for rule in rules], default=str))
        return
    if not rules:
        console.print("[yellow]No repeat rules registered[/yellow]")
        return
    table = Table(title="Repeat rules")
    for column in ("queue", "name", "schedule", "next run (UTC)", "runs"):
        table.add_column(column)
    for rule in rules:
        schedule = rule.pattern if rule.pattern is not None else f"every {rule.every_ms}ms"
        table.add_row(rule.queue, rule.name, schedule, _fmt_ms(rule.next_at), str(rule.count))
    console.print(table)


async def _apply() -> ScheduleReport:
    settings = load_settings()
    if not settings.datastore:
        raise ConfigError("TEAMSPARK_DATASTORE must name the data store factory (module:attr)")
    datastore = load_datastore(settings.datastore)
    async with open_queues(settings) as queues:
        return await Scheduler(queues, default_schedule(datastore)).schedule_jobs()


@app.command("apply")
def apply() -> None:
    """Register the recurring schedule. Safe to run repeatedly."""
    try:
        report = run(_apply())
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=2) from exc
    console.print(f"[green]Registered {len(report.registered)} rules[/green]")
    for name, error in report.failed.items():
        err_console.print(f"  [red]{name}: {error}[/red]")
    if report.failed:
        raise typer.Exit(code=1)


async def _clear() -> int:
    async with open_queues() as queues:
        return await Scheduler(queues).unschedule_jobs(RECURRING_KINDS)


@app.command("clear")
def clear() -> None:
    """Remove every recurring rule."""
    removed = run(_clear())
    console.print(f"Removed {removed} rules")


async def _once(kind: str, payload: dict[str, Any], delay_ms: int) -> JobHandle:
    async with open_queues() as queues:
        return await Scheduler(queues).schedule_one_time_job(kind, payload, delay_ms)


@app.command("once")
def once(
    kind: str = typer.Argument(..., help="Job kind, e.g. send-notification"),
    payload: str = typer.Option(..., "--payload", "-p", help="Payload as a JSON object"),
    delay_ms: int = typer.Option(0, "--delay-ms", min=0, help="Delay before the job becomes ready"),
) -> None:
    """Enqueue a single job.

    Example::

        teamspark-jobs schedule once send-email \\
            --payload '{"to": "a@b.com", "subject": "hi", "template": "welcome"}' --delay-ms 300000
    """
    parse_kind(kind)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        err_console.print(f"[red]--payload is not valid JSON: {exc}[/red]")
        raise typer.Exit(code=2) from exc
    if not isinstance(data, dict):
        err_console.print("[red]--payload must be a JSON object[/red]")
        raise typer.Exit(code=2)

    try:
        handle = run(_once(kind, data, delay_ms))
    except TeamSparkError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]Enqueued {handle.queue} job {handle.id}[/green] ({handle.state.value})")
