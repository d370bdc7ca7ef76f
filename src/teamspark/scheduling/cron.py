"""
Next-fire computation for repeat rules.

Cron patterns are evaluated in UTC with croniter. Interval rules fire on
multiples of the interval since the epoch, so two processes registering
the same interval rule agree on the next fire time.
"""

from __future__ import annotations

from datetime import UTC, datetime

from croniter import croniter

from teamspark.core.errors import ValidationError


def validate_pattern(pattern: str) -> str:
    """Return ``pattern`` unchanged, or raise ValidationError if croniter rejects it."""
    if not croniter.is_valid(pattern):
        raise ValidationError(f"Invalid cron pattern: {pattern!r}", field="pattern", value=pattern)
    return pattern


def next_cron_fire(pattern: str, after_ms: int) -> int:
    """First fire strictly after ``after_ms`` (epoch ms, UTC)."""
    after = datetime.fromtimestamp(after_ms / 1000, tz=UTC)
    next_run = croniter(validate_pattern(pattern), after).get_next(datetime)
    if next_run.tzinfo is None:
        next_run = next_run.replace(tzinfo=UTC)
    return int(next_run.astimezone(UTC).timestamp() * 1000)


def next_interval_fire(every_ms: int, after_ms: int) -> int:
    """Next multiple of ``every_ms`` strictly after ``after_ms``."""
    return (after_ms // every_ms + 1) * every_ms


def next_fire(pattern: str | None, every_ms: int | None, after_ms: int) -> int:
    """Next fire of a cron pattern or, when ``pattern`` is None, of an interval."""
    if pattern is not None:
        return next_cron_fire(pattern, after_ms)
    if every_ms is None:
        raise ValueError("next_fire needs a pattern or an interval")
    return next_interval_fire(every_ms, after_ms)


__all__ = ["validate_pattern", "next_cron_fire", "next_interval_fire", "next_fire"]
