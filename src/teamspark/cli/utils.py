"""
CLI helpers: consoles, settings, and a scoped queue connection.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import typer
from rich.console import Console

from teamspark.core.connection import create_backend
from teamspark.core.errors import UnknownJobKindError
from teamspark.core.settings import JobSettings, get_settings
from teamspark.execution.models import JobKind
from teamspark.execution.queue import QueueSet

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


def load_settings() -> JobSettings:
    return get_settings()


def run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


@asynccontextmanager
async def open_queues(settings: JobSettings | None = None) -> AsyncIterator[QueueSet]:
    """Connect, yield a QueueSet, then close the queues and the backend."""
    backend = create_backend(settings or load_settings())
    queues = QueueSet(backend)
    try:
        yield queues
    finally:
        await queues.close()
        await backend.close()


def parse_kind(value: str) -> JobKind:
    try:
        return JobKind(value)
    except ValueError:
        err_console.print(f"[red]{UnknownJobKindError(value)}[/red]")
        err_console.print("Known kinds: " + ", ".join(kind.value for kind in JobKind))
        raise typer.Exit(code=2) from None
